"""AI-assisted test execution core."""

from .channel import BufferedEventChannel, ChannelCommand, EventChannel, ExecutionEvent
from .context import ExecutionContext, ExecutionStatus, StepDescriptor
from .engine import ExecutionEngine
from .page_analysis import PageAnalysisStrategy
from .registry import ExecutionRegistry
from .report import ExecutionReport, build_report
from .strategy import StepOutcome, StepResult, StepStrategy

__all__ = [
    "BufferedEventChannel",
    "ChannelCommand",
    "EventChannel",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionRegistry",
    "ExecutionReport",
    "ExecutionStatus",
    "PageAnalysisStrategy",
    "StepDescriptor",
    "StepOutcome",
    "StepResult",
    "StepStrategy",
    "build_report",
]
