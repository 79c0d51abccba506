"""Utility functions and helpers for the flexnode agent."""
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)

REDACT_KEYS: tuple = ("secret", "password", "token", "access_key")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key in str(k).lower()
                for redact_key in REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def redact_command(cmd) -> str:
    """Render a command line with the values of credential flags masked."""
    masked = []
    hide_next = False
    for arg in (str(a) for a in cmd):
        if hide_next:
            masked.append("[REDACTED]")
            hide_next = False
            continue
        masked.append(arg)
        if arg.startswith("--") and any(key in arg.lower() for key in REDACT_KEYS):
            hide_next = True
    return " ".join(masked)


class RetryError(Exception):
    """Raised when a retry bound or a polling deadline is exhausted."""
    pass


class OperationCancelled(Exception):
    """Raised when the ambient cancellation signal fires during a wait."""
    pass


class CancelToken:
    """Process-wide cancellation signal.

    Every blocking wait in the agent goes through :meth:`wait`, so setting the
    token wakes up backoff sleeps, permission polling and the daemon's timer
    wait immediately.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")

    def wait(self, seconds: float) -> None:
        """Block for up to ``seconds``.

        Raises:
            OperationCancelled: If the token is cancelled before or during the wait
        """
        if self._event.wait(max(seconds, 0)):
            raise OperationCancelled("operation cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters.

    The delay after failed attempt ``n`` (0-based) is
    ``min(base_delay * 2**n, max_delay)``, scaled by a random factor in
    ``[1 - jitter, 1 + jitter]``.
    """
    base_delay: float = 5.0
    max_delay: float = 30.0
    max_attempts: int = 5
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return delay


def retry_with_backoff(
    operation: Callable[[], T],
    policy: RetryPolicy,
    token: Optional[CancelToken] = None,
    retryable: Callable[[Exception], bool] = lambda e: True,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, retrying retryable failures.

    Args:
        operation: Zero-argument callable to run
        policy: Backoff parameters
        token: Cancellation token observed between attempts
        retryable: Predicate deciding whether an exception is worth retrying
        description: Human readable name used in log and error messages

    Returns:
        Whatever ``operation`` returns on its first successful attempt

    Raises:
        RetryError: If every attempt failed with a retryable error
        OperationCancelled: If the token fires while waiting
        Exception: The first non-retryable error, unchanged
    """
    token = token or CancelToken()
    last_exception = None

    for attempt in range(policy.max_attempts):
        token.raise_if_cancelled()
        try:
            return operation()
        except OperationCancelled:
            raise
        except Exception as e:
            if not retryable(e):
                raise
            last_exception = e
            if attempt == policy.max_attempts - 1:
                break
            wait_time = policy.delay(attempt)
            logger.warning(
                f"{description}: attempt {attempt + 1}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {wait_time:.2f}s..."
            )
            token.wait(wait_time)

    raise RetryError(
        f"{description} failed after {policy.max_attempts} attempts. Last error: {last_exception}"
    ) from last_exception


def poll_until(
    check: Callable[[], bool],
    interval: float,
    timeout: float,
    token: Optional[CancelToken] = None,
    description: str = "condition",
) -> None:
    """Poll ``check`` every ``interval`` seconds until it returns True.

    The first check happens after one interval.

    Raises:
        RetryError: If ``timeout`` seconds pass without ``check`` succeeding
        OperationCancelled: If the token fires while waiting
    """
    token = token or CancelToken()
    deadline = time.monotonic() + timeout

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RetryError(f"timeout after {timeout:.0f}s waiting for {description}")
        token.wait(min(interval, remaining))
        if check():
            return
