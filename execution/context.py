"""Per-execution state shared between the engine loop and incoming commands."""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from .errors import ExecutionError, InvalidTestCaseError


def _now() -> float:
    return time.time()


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


FALLBACK_STEPS: tuple[str, ...] = (
    "Navigate to application",
    "Perform test actions",
    "Verify expected results",
)


@dataclass(frozen=True, slots=True)
class StepDescriptor:
    index: int
    description: str
    expected_result: str = ""

    @property
    def step_number(self) -> int:
        return self.index + 1


@dataclass(frozen=True, slots=True)
class PageSnapshot:
    """Last observed page state captured by a step strategy."""

    url: str
    title: str
    raw_content: str = ""
    is_fallback: bool = False
    fetched_at: float = field(default_factory=_now)

    def merge(self, update: Mapping[str, Any]) -> "PageSnapshot":
        allowed = {"url", "title", "raw_content", "is_fallback"}
        changes = {key: value for key, value in update.items() if key in allowed}
        if not changes:
            return self
        return PageSnapshot(
            url=changes.get("url", self.url),
            title=changes.get("title", self.title),
            raw_content=changes.get("raw_content", self.raw_content),
            is_fallback=changes.get("is_fallback", self.is_fallback),
        )


@dataclass(frozen=True, slots=True)
class CaseSnapshot:
    """Read-only copy of the test case taken when an execution starts."""

    id: Any
    title: str
    steps: Any = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CaseSnapshot":
        if not isinstance(data, Mapping):
            raise InvalidTestCaseError("test case must be a mapping")
        title = str(data.get("title") or "").strip()
        if not title:
            raise InvalidTestCaseError("test case title must not be empty")
        return cls(
            id=data.get("id"),
            title=title,
            steps=copy.deepcopy(data.get("steps")),
        )


@dataclass(frozen=True, slots=True)
class StepLogEntry:
    index: int
    description: str
    status: str
    output: str
    evidence_ref: Optional[str] = None
    timestamp: float = field(default_factory=_now)
    page_url: Optional[str] = None
    page_title: Optional[str] = None
    intervention_note: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "stepNumber": self.index + 1,
            "description": self.description,
            "status": self.status,
            "aiOutput": self.output,
            "evidenceRef": self.evidence_ref,
            "timestamp": self.timestamp,
            "pageUrl": self.page_url,
            "pageTitle": self.page_title,
            "interventionNote": self.intervention_note,
        }


@dataclass(slots=True)
class PendingIntervention:
    """A step that paused for a human and is not yet in the step log."""

    step: StepDescriptor
    output: str
    reason: str
    note: Optional[str] = None


def _describe_item(item: Any) -> tuple[str, str]:
    if isinstance(item, Mapping):
        description = item.get("description") or item.get("step") or item.get("action") or ""
        expected = item.get("expectedResult") or item.get("expected") or ""
        return str(description).strip(), str(expected).strip()
    if item is None:
        return "", ""
    return str(item).strip(), ""


def parse_test_steps(raw_steps: Any) -> tuple[StepDescriptor, ...]:
    """Derive the ordered step list for an execution.

    A non-empty sequence is used as-is (order preserved), a string is split
    into non-empty lines, and anything else yields the generic three-step
    skeleton.
    """

    if isinstance(raw_steps, str):
        lines = [line.strip() for line in raw_steps.splitlines() if line.strip()]
        if lines:
            return tuple(StepDescriptor(i, line) for i, line in enumerate(lines))
    elif isinstance(raw_steps, Sequence) and raw_steps:
        steps = []
        for i, item in enumerate(raw_steps):
            description, expected = _describe_item(item)
            steps.append(StepDescriptor(i, description, expected))
        return tuple(steps)

    return tuple(StepDescriptor(i, text) for i, text in enumerate(FALLBACK_STEPS))


@dataclass
class ExecutionContext:
    execution_id: str
    test_case: CaseSnapshot
    target_url: str
    steps: tuple[StepDescriptor, ...]
    test_data: Dict[str, Any] = field(default_factory=dict)
    cursor: int = 0
    status: ExecutionStatus = ExecutionStatus.IDLE
    intervention_required: bool = False
    page_snapshot: Optional[PageSnapshot] = None
    step_log: list[StepLogEntry] = field(default_factory=list)
    pending_intervention: Optional[PendingIntervention] = None
    intervention_notes: list[str] = field(default_factory=list)
    evidence: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    terminal_event_sent: bool = False
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    condition: asyncio.Condition = field(
        default_factory=asyncio.Condition, init=False, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> Optional[StepDescriptor]:
        if self.cursor < len(self.steps):
            return self.steps[self.cursor]
        return None

    def set_status(self, status: ExecutionStatus) -> None:
        if self.status.is_terminal:
            raise ExecutionError(
                f"execution {self.execution_id} is already {self.status.value}"
            )
        self.status = status
        self.updated_at = _now()

    def append_log(self, entry: StepLogEntry) -> None:
        if entry.index != self.cursor or len(self.step_log) != self.cursor:
            raise ExecutionError(
                f"step {entry.index} logged out of order (cursor={self.cursor})"
            )
        self.step_log.append(entry)
        self.cursor += 1
        self.updated_at = _now()

    def snapshot(self) -> Dict[str, Any]:
        page = self.page_snapshot
        pending = self.pending_intervention
        return {
            "executionId": self.execution_id,
            "testCaseId": self.test_case.id,
            "title": self.test_case.title,
            "targetUrl": self.target_url,
            "status": self.status.value,
            "cursor": self.cursor,
            "totalSteps": self.total_steps,
            "interventionRequired": self.intervention_required,
            "pendingIntervention": (
                {"stepNumber": pending.step.step_number, "reason": pending.reason}
                if pending
                else None
            ),
            "page": (
                {"url": page.url, "title": page.title, "isFallback": page.is_fallback}
                if page
                else None
            ),
            "stepLog": [entry.to_dict() for entry in self.step_log],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
