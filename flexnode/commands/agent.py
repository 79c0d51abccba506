import logging

import typer

from .. import __version__
from ..errors import BootstrapError
from ..modules.bootstrapper import handle_execution_result
from ..modules.bootstrapper.bootstrapper import Bootstrapper
from ..modules.daemon import DaemonLoop
from ..utils import CancelToken, OperationCancelled
from . import load_agent_config

logger = logging.getLogger(__name__)


def run_agent(config_path: str, token: CancelToken, debug: bool = False) -> None:
    """Bootstrap the node once, then keep it healthy until cancelled."""
    config = load_agent_config(config_path, debug)

    try:
        result = Bootstrapper(config, token).bootstrap()
        handle_execution_result(result, "bootstrap")
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        raise typer.Exit(code=1)
    except OperationCancelled:
        logger.warning("⚠️ Bootstrap cancelled")
        raise typer.Exit(code=1)

    logger.info("Bootstrap completed successfully, transitioning to daemon mode...")
    DaemonLoop(config, token, agent_version=__version__).run()
