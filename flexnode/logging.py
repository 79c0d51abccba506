"""Logging configuration for the flexnode package."""
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "flexnode.log"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
JOURNAL_FORMAT = '%(name)s - %(levelname)s - %(message)s'

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def parse_log_level(level: str) -> int:
    """Map a configured level name to a logging level.

    Raises:
        ValueError: If the level is not one of debug, info, warning, error
    """
    normalized = (level or "").strip().lower()
    if normalized not in LOG_LEVELS:
        raise ValueError(
            f"invalid log level '{level}'. Valid levels are: debug, info, warning, error"
        )
    return LOG_LEVELS[normalized]


def is_running_under_systemd() -> bool:
    """Detect a systemd service context, where journald adds its own timestamps."""
    if os.getenv("JOURNAL_STREAM"):
        return True
    try:
        return Path("/proc/1/comm").read_text().strip() == "systemd"
    except OSError:
        return False


def setup_logging(level: str = "info", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``flexnode`` logger.

    Logs go to stdout and, when ``log_dir`` can be created, to a rotating
    ``flexnode.log`` file in that directory.

    Args:
        level: One of debug, info, warning, error
        log_dir: Directory for the log file (optional)

    Returns:
        The configured package logger
    """
    try:
        log_level = parse_log_level(level)
    except ValueError as e:
        print(f"Warning: {e}. Using 'info' level as default.", file=sys.stderr)
        log_level = logging.INFO

    logger = logging.getLogger("flexnode")
    logger.setLevel(log_level)

    # Reconfiguring (e.g. after the config is loaded) replaces earlier handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    fmt = JOURNAL_FORMAT if is_running_under_systemd() else LOG_FORMAT
    formatter = logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        try:
            log_path = Path(log_dir).expanduser()
            log_path.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_path / LOG_FILE_NAME,
                maxBytes=100 * 1024 * 1024,
                backupCount=5,
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
            logger.addHandler(file_handler)
        except OSError as e:
            print(
                f"Warning: Failed to setup log file in directory '{log_dir}': {e}. Logging to console.",
                file=sys.stderr,
            )

    # Keep HTTP client noise out of the agent log unless debugging
    if log_level > logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("kubernetes").setLevel(logging.WARNING)

    logger.propagate = False
    return logger
