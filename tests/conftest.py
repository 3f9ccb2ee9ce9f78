"""Pytest configuration ensuring local packages are importable."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from execution.channel import BufferedEventChannel  # noqa: E402
from execution.context import ExecutionContext, PageSnapshot, StepDescriptor  # noqa: E402
from execution.engine import ExecutionEngine  # noqa: E402
from execution.registry import ExecutionRegistry  # noqa: E402
from execution.strategy import StepResult, StepStrategy  # noqa: E402


class ScriptedStrategy(StepStrategy):
    """Returns pre-programmed results per step index; completes everything else."""

    name = "scripted"

    def __init__(
        self,
        script: Optional[Dict[int, Any]] = None,
        *,
        snapshot: Optional[PageSnapshot] = None,
    ) -> None:
        self.script = dict(script or {})
        self.snapshot = snapshot
        self.calls: list[int] = []
        self.gates: Dict[int, asyncio.Event] = {}

    def hold(self, index: int) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[index] = gate
        return gate

    async def prepare(self, context: ExecutionContext) -> Optional[PageSnapshot]:
        return self.snapshot

    async def evaluate(self, context: ExecutionContext, step: StepDescriptor) -> StepResult:
        self.calls.append(step.index)
        gate = self.gates.get(step.index)
        if gate is not None:
            await gate.wait()
        result = self.script.get(step.index)
        if callable(result):
            result = result(context, step)
        if isinstance(result, BaseException):
            raise result
        return result or StepResult.completed(f"did {step.description}")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def event_types(channel: BufferedEventChannel) -> list[str]:
    return [event.type for event in channel.events()]


@pytest.fixture
def registry() -> ExecutionRegistry:
    return ExecutionRegistry()


@pytest.fixture
def scripted() -> type[ScriptedStrategy]:
    return ScriptedStrategy


@pytest.fixture
def helpers():
    class _Helpers:
        wait_until = staticmethod(wait_until)
        event_types = staticmethod(event_types)

    return _Helpers


@pytest.fixture
def make_engine(registry: ExecutionRegistry):
    def _make(strategy: StepStrategy, **kwargs: Any) -> ExecutionEngine:
        kwargs.setdefault("step_delay", 0.0)
        return ExecutionEngine(registry, strategy, **kwargs)

    return _make
