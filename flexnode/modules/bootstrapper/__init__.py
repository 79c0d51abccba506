"""Step execution engine and result types.

The ``Bootstrapper`` lives in ``flexnode.modules.bootstrapper.bootstrapper``;
it is not re-exported here because the component steps import this package.
"""
from .executor import Step, StepExecutor, ValidatingStep, handle_execution_result
from .models import ExecutionResult, Mode, StepResult

__all__ = [
    'ExecutionResult',
    'Mode',
    'Step',
    'StepExecutor',
    'StepResult',
    'ValidatingStep',
    'handle_execution_result',
]
