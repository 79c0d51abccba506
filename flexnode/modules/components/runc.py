"""Low-level OCI runtime (runc) installation."""
import logging
import os
import tempfile

from ...config import Config
from ...errors import CommandError
from ...utils import CancelToken
from ...utils.system import download_file, remove_path, run_command
from ..bootstrapper.executor import Step, ValidatingStep

logger = logging.getLogger(__name__)

RUNC_BINARY_PATH = "/usr/bin/runc"
RUNC_BINARY_PATHS = (RUNC_BINARY_PATH, "/usr/local/bin/runc", "/usr/sbin/runc")


def installed_runc_version() -> str:
    """Return the version reported by ``runc --version`` or "unknown"."""
    try:
        output = run_command([RUNC_BINARY_PATH, "--version"], sudo=False).stdout or ""
    except CommandError:
        return "unknown"
    for line in output.splitlines():
        parts = line.split()
        if "version" in parts:
            index = parts.index("version")
            if index + 1 < len(parts):
                return parts[index + 1]
    return "unknown"


class RuncInstaller(ValidatingStep):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "RuncInstaller"

    def validate(self, token: CancelToken) -> None:
        if not self.config.runc.url:
            raise ValueError("runc download URL is not configured")

    def is_completed(self, token: CancelToken) -> bool:
        return installed_runc_version() == self.config.runc.version

    def execute(self, token: CancelToken) -> None:
        logger.info(f"Installing runc {self.config.runc.version}")
        with tempfile.TemporaryDirectory(prefix="flexnode-runc-") as tmp:
            binary = os.path.join(tmp, "runc")
            download_file(self.config.runc.url, binary)
            run_command(["install", "-m", "0555", binary, RUNC_BINARY_PATH], sudo=True)
        logger.info(f"runc installed at {RUNC_BINARY_PATH}")


class RuncUninstaller(Step):

    def __init__(self, config: Config):
        self.config = config

    @property
    def name(self) -> str:
        return "RuncUninstaller"

    def is_completed(self, token: CancelToken) -> bool:
        return not any(os.path.exists(path) for path in RUNC_BINARY_PATHS)

    def execute(self, token: CancelToken) -> None:
        for path in RUNC_BINARY_PATHS:
            remove_path(path)
