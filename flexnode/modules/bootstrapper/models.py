"""
Data models for step execution.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class Mode(str, Enum):
    """Direction of a provisioning run."""
    BUILD_UP = "build-up"
    TEAR_DOWN = "tear-down"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one attempted step."""
    name: str
    success: bool
    duration: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Aggregate outcome of one engine run."""
    success: bool
    step_count: int
    duration: float = 0.0
    step_results: Tuple[StepResult, ...] = field(default_factory=tuple)
    error: Optional[str] = None

    @property
    def failed_steps(self) -> Tuple[StepResult, ...]:
        return tuple(r for r in self.step_results if not r.success)
