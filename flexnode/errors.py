"""Exception hierarchy for the flexnode agent."""
from typing import Optional, Sequence

from .utils import redact_command


class FlexNodeError(Exception):
    """Base class for all flexnode errors."""


class ConfigurationError(FlexNodeError):
    """Configuration is malformed, incomplete, or the target is misconfigured."""


class AuthenticationError(FlexNodeError):
    """No usable credential could be obtained."""


class AuthorizationError(FlexNodeError):
    """The caller lacks the privilege required for a control plane operation."""


class CommandError(FlexNodeError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout or "").strip()
        message = f"command '{redact_command(self.command)}' exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BootstrapError(FlexNodeError):
    """A build-up run failed. The partial execution result is attached."""

    def __init__(self, message: str, result: Optional[object] = None):
        super().__init__(message)
        self.result = result
