"""CLI command implementations."""
import logging
from typing import Optional

import typer

from ..config import Config, load_config
from ..errors import ConfigurationError
from ..logging import setup_logging
from ..utils import redact_sensitive_data

logger = logging.getLogger(__name__)


def load_agent_config(config_path: Optional[str], debug: bool = False) -> Config:
    """Load the configuration and switch logging to its level and directory.

    Exits with status 1 when the configuration cannot be loaded.
    """
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.echo(f"❌ Failed to load config from {config_path}: {e}", err=True)
        raise typer.Exit(code=1)

    setup_logging("debug" if debug else config.agent.log_level, config.agent.log_dir)
    logger.debug(f"Configuration: {redact_sensitive_data(config.model_dump(by_alias=True))}")
    return config
