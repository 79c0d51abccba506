import logging

import typer

from ..modules.bootstrapper import handle_execution_result
from ..modules.bootstrapper.bootstrapper import Bootstrapper
from ..utils import CancelToken, OperationCancelled
from . import load_agent_config

logger = logging.getLogger(__name__)


def run_unbootstrap(config_path: str, token: CancelToken, debug: bool = False) -> None:
    """Remove the node components and the Arc registration.

    Cleanup is best-effort: partial failures are logged and the command still
    succeeds.
    """
    config = load_agent_config(config_path, debug)

    try:
        result = Bootstrapper(config, token).unbootstrap()
    except OperationCancelled:
        logger.warning("⚠️ Unbootstrap cancelled")
        raise typer.Exit(code=1)
    handle_execution_result(result, "unbootstrap")
