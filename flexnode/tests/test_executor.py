import pytest

from conftest import RecordingStep, RecordingValidatingStep
from flexnode.errors import BootstrapError
from flexnode.modules.bootstrapper import ExecutionResult, Mode, StepExecutor, StepResult, handle_execution_result
from flexnode.utils import CancelToken, OperationCancelled


def test_empty_build_up_succeeds():
    result = StepExecutor().run_steps([], Mode.BUILD_UP)

    assert result.success is True
    assert result.step_count == 0
    assert result.step_results == ()
    assert result.error is None


def test_build_up_stops_at_first_failure():
    log = []
    steps = [
        RecordingStep("first", log),
        RecordingStep("second", log, fail=RuntimeError("disk full")),
        RecordingStep("third", log),
    ]

    with pytest.raises(BootstrapError) as exc_info:
        StepExecutor().run_steps(steps, Mode.BUILD_UP)

    assert log == ["first", "second"]
    assert "second" in str(exc_info.value)
    assert "disk full" in str(exc_info.value)

    partial = exc_info.value.result
    assert partial.success is False
    assert partial.step_count == 2
    assert [r.name for r in partial.step_results] == ["first", "second"]
    assert partial.step_results[1].error == "disk full"


def test_tear_down_runs_every_step_once():
    log = []
    steps = [
        RecordingStep("a", log, fail=RuntimeError("boom")),
        RecordingStep("b", log),
        RecordingStep("c", log, fail=RuntimeError("again")),
    ]

    result = StepExecutor().run_steps(steps, Mode.TEAR_DOWN)

    assert log == ["a", "b", "c"]
    assert all(step.executions == 1 for step in steps)
    assert result.success is False
    assert result.step_count == 3
    assert result.error == "completed with 2 failed steps out of 3 total steps"
    assert [r.name for r in result.failed_steps] == ["a", "c"]


def test_tear_down_success_when_all_steps_succeed():
    log = []
    result = StepExecutor().run_steps([RecordingStep("a", log), RecordingStep("b", log)], Mode.TEAR_DOWN)

    assert result.success is True
    assert result.error is None


def test_completed_step_is_not_executed():
    log = []
    step = RecordingValidatingStep("done", log, completed=True)

    result = StepExecutor().run_steps([step], Mode.BUILD_UP)

    assert result.success is True
    assert step.executions == 0
    assert step.validations == 0


def test_validation_failure_skips_execute():
    log = []
    step = RecordingValidatingStep("checked", log, validation_error=ValueError("missing binary"))

    with pytest.raises(BootstrapError) as exc_info:
        StepExecutor().run_steps([step], Mode.BUILD_UP)

    assert step.executions == 0
    assert exc_info.value.result.step_results[0].error == "validation failed: missing binary"


def test_validation_not_run_during_tear_down():
    log = []
    step = RecordingValidatingStep("cleanup", log, validation_error=ValueError("should not run"))

    result = StepExecutor().run_steps([step], Mode.TEAR_DOWN)

    assert result.success is True
    assert step.validations == 0
    assert step.executions == 1


def test_failing_completion_check_runs_step():
    log = []

    class BrokenCheck(RecordingStep):
        def is_completed(self, token):
            raise RuntimeError("cannot tell")

    result = StepExecutor().run_steps([BrokenCheck("health-check", log)], Mode.BUILD_UP)

    assert result.success is True
    assert log == ["health-check"]


@pytest.mark.parametrize("mode", [Mode.BUILD_UP, Mode.TEAR_DOWN])
def test_cancellation_inside_step_propagates(mode):
    log = []
    steps = [RecordingStep("a", log, fail=OperationCancelled("operation cancelled")), RecordingStep("b", log)]

    with pytest.raises(OperationCancelled):
        StepExecutor().run_steps(steps, mode)

    assert log == ["a"]


def test_cancelled_token_stops_before_next_step():
    log = []
    token = CancelToken()

    class CancellingStep(RecordingStep):
        def execute(self, token):
            super().execute(token)
            token.cancel()

    with pytest.raises(OperationCancelled):
        StepExecutor(token).run_steps([CancellingStep("a", log), RecordingStep("b", log)], Mode.TEAR_DOWN)

    assert log == ["a"]


def test_rerun_after_completion_is_idempotent():
    log = []
    step = RecordingStep("once", log)
    executor = StepExecutor()

    executor.run_steps([step], Mode.BUILD_UP)
    step.completed = True
    executor.run_steps([step], Mode.BUILD_UP)

    assert step.executions == 1


def test_handle_result_tolerates_failed_unbootstrap():
    result = ExecutionResult(
        success=False,
        step_count=1,
        step_results=(StepResult(name="a", success=False, error="boom"),),
        error="completed with 1 failed steps out of 1 total steps",
    )

    handle_execution_result(result, "unbootstrap")

    with pytest.raises(BootstrapError) as exc_info:
        handle_execution_result(result, "bootstrap")
    assert exc_info.value.result is result
