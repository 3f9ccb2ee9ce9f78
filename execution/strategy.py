"""Step strategy interface: decides the outcome of a single test step."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .context import ExecutionContext, PageSnapshot, StepDescriptor


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    NEEDS_INTERVENTION = "needs-intervention"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StepResult:
    outcome: StepOutcome
    output: str
    reason: Optional[str] = None
    snapshot_update: Optional[Mapping[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)
    notes: tuple[str, ...] = ()

    @classmethod
    def completed(cls, output: str, **kwargs: Any) -> "StepResult":
        return cls(StepOutcome.COMPLETED, output, **kwargs)

    @classmethod
    def intervention(cls, output: str, reason: str, **kwargs: Any) -> "StepResult":
        return cls(StepOutcome.NEEDS_INTERVENTION, output, reason=reason, **kwargs)

    @classmethod
    def failed(cls, output: str, **kwargs: Any) -> "StepResult":
        return cls(StepOutcome.FAILED, output, **kwargs)


class StepStrategy(ABC):
    """Pluggable evaluator used by the engine for every step.

    Implementations must not raise: any problem is reported as a
    ``needs-intervention`` or ``failed`` outcome.
    """

    name = "base"

    async def prepare(self, context: ExecutionContext) -> Optional[PageSnapshot]:
        """Called once per execution before the first step."""
        return None

    @abstractmethod
    async def evaluate(self, context: ExecutionContext, step: StepDescriptor) -> StepResult:
        """Return the outcome of *step* given the current *context*."""
