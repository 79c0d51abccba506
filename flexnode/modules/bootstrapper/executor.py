"""Step execution engine.

Runs an ordered list of steps either fail-fast (build-up) or best-effort
(tear-down) and reports one StepResult per attempted step.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ...errors import BootstrapError
from ...utils import CancelToken, OperationCancelled
from .models import ExecutionResult, Mode, StepResult

logger = logging.getLogger(__name__)


class Step(ABC):
    """A unit of provisioning or cleanup work.

    Steps hold no state between runs; whatever they create lives on the
    filesystem or in Azure, which is what makes re-running them safe.
    """

    validating = False

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def execute(self, token: CancelToken) -> None:
        """Perform the work, raising on failure."""

    @abstractmethod
    def is_completed(self, token: CancelToken) -> bool:
        """Return True when the work is already done and execute can be skipped."""


class ValidatingStep(Step):
    """A build-up step with a precondition check run before execute."""

    validating = True

    @abstractmethod
    def validate(self, token: CancelToken) -> None:
        """Raise if the step cannot run on this host."""


class StepExecutor:
    """Runs steps in order under a build-up or tear-down policy."""

    def __init__(self, token: Optional[CancelToken] = None):
        self.token = token or CancelToken()

    def run_steps(self, steps: Sequence[Step], mode: Mode) -> ExecutionResult:
        """Run ``steps`` in list order.

        Args:
            steps: Ordered steps
            mode: BUILD_UP stops at the first failure, TEAR_DOWN runs every step

        Returns:
            The aggregate result. In tear-down mode this is returned even when
            steps failed.

        Raises:
            BootstrapError: In build-up mode, when a step fails. ``.result``
                holds the partial ExecutionResult.
            OperationCancelled: When the cancel token fires, in either mode
        """
        start = time.monotonic()
        results: List[StepResult] = []
        total = len(steps)

        logger.info(f"🚀 Starting {mode.value} with {total} steps")

        for index, step in enumerate(steps, start=1):
            self.token.raise_if_cancelled()
            logger.info(f"[{index}/{total}] {step.name}")

            try:
                result = self._run_step(step, mode)
            except OperationCancelled as e:
                results.append(StepResult(name=step.name, success=False, error=str(e)))
                logger.warning(f"⚠️ Step {step.name} cancelled")
                raise
            results.append(result)

            if result.success:
                continue

            if mode is Mode.BUILD_UP:
                message = f"bootstrap failed at step {step.name}: {result.error}"
                logger.error(f"❌ {message}")
                partial = ExecutionResult(
                    success=False,
                    step_count=len(results),
                    duration=time.monotonic() - start,
                    step_results=tuple(results),
                    error=message,
                )
                raise BootstrapError(message, result=partial)

            logger.warning(f"⚠️ Step {step.name} failed, continuing cleanup: {result.error}")

        failed = sum(1 for r in results if not r.success)
        error = None
        if failed:
            error = f"completed with {failed} failed steps out of {total} total steps"
        duration = time.monotonic() - start
        logger.info(f"Finished {mode.value} in {duration:.1f}s")
        return ExecutionResult(
            success=failed == 0,
            step_count=len(results),
            duration=duration,
            step_results=tuple(results),
            error=error,
        )

    def _run_step(self, step: Step, mode: Mode) -> StepResult:
        try:
            completed = step.is_completed(self.token)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.debug(f"Completion check for {step.name} failed, running step: {e}")
            completed = False
        if completed:
            logger.info(f"✅ {step.name} already completed, skipping")
            return StepResult(name=step.name, success=True)

        if mode is Mode.BUILD_UP and step.validating:
            try:
                step.validate(self.token)
            except OperationCancelled:
                raise
            except Exception as e:
                return StepResult(name=step.name, success=False, error=f"validation failed: {e}")

        step_start = time.monotonic()
        try:
            step.execute(self.token)
        except OperationCancelled:
            raise
        except Exception as e:
            return StepResult(
                name=step.name,
                success=False,
                duration=time.monotonic() - step_start,
                error=str(e),
            )
        duration = time.monotonic() - step_start
        logger.info(f"✅ {step.name} completed in {duration:.1f}s")
        return StepResult(name=step.name, success=True, duration=duration)


def handle_execution_result(result: ExecutionResult, operation: str) -> None:
    """Translate an engine result into the outcome of a CLI operation.

    A failed ``unbootstrap`` is only a warning since cleanup is best-effort.

    Raises:
        BootstrapError: When any other operation failed
    """
    if result.success:
        logger.info(f"✅ {operation} completed successfully ({result.step_count} steps, {result.duration:.1f}s)")
        return

    if operation == "unbootstrap":
        logger.warning(f"⚠️ {operation} finished with errors: {result.error}")
        for step_result in result.failed_steps:
            logger.warning(f"  - {step_result.name}: {step_result.error}")
        return

    raise BootstrapError(f"{operation} failed: {result.error}", result=result)
