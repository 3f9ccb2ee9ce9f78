"""Typed event/command messages and the channel abstraction that carries them."""

from __future__ import annotations

import asyncio
import collections
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Deque, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .errors import UnknownCommandError

log = logging.getLogger(__name__)

EventType = Literal[
    "execution_started",
    "step_started",
    "ai_thinking",
    "step_completed",
    "step_failed",
    "browser_state_update",
    "user_intervention_required",
    "execution_paused",
    "execution_resumed",
    "execution_completed",
    "execution_failed",
]

TERMINAL_EVENTS = frozenset({"execution_completed", "execution_failed"})

CommandType = Literal["pause", "resume", "stop", "takeover", "intervention_complete"]

_COMMAND_ALIASES: Dict[str, str] = {
    "pause_execution": "pause",
    "resume_execution": "resume",
    "continue": "resume",
    "stop_execution": "stop",
    "cancel": "stop",
    "user_takeover": "takeover",
    "user_intervention_complete": "intervention_complete",
}


class ExecutionEvent(BaseModel):
    """A single engine -> observer message."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: EventType
    execution_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": self.type}
        message.update(self.payload)
        message["sequence"] = self.sequence
        message["timestamp"] = self.timestamp
        return message


class ChannelCommand(BaseModel):
    """A single observer -> engine message."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: CommandType
    note: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("note", "userNotes", "notes"),
    )

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().lower()
            return _COMMAND_ALIASES.get(key, key)
        return value

    @classmethod
    def parse(cls, data: Any) -> "ChannelCommand":
        if isinstance(data, ChannelCommand):
            return data
        if isinstance(data, str):
            data = {"type": data}
        if not isinstance(data, dict):
            raise UnknownCommandError(f"unsupported command payload: {data!r}")
        return cls.model_validate(data)


class EventChannel(ABC):
    """Bidirectional link between one execution and whoever observes it."""

    @abstractmethod
    async def send(self, event: ExecutionEvent) -> Optional[ExecutionEvent]:
        """Deliver *event* to the observer, returning the event as delivered."""

    async def receive(self) -> Optional[ChannelCommand]:
        """Return the next command, or ``None`` once no more will arrive."""
        return None

    async def close(self) -> None:
        return None


class BufferedEventChannel(EventChannel):
    """In-memory channel readable from other threads.

    Outgoing events are kept in a bounded buffer; when it is full the oldest
    event is dropped.  Readers poll with :meth:`events_since` using the last
    sequence number they saw.  Incoming commands are queued with
    :meth:`push_command`, which must run on the engine's event loop.
    """

    def __init__(self, max_events: int = 500) -> None:
        self._events: Deque[ExecutionEvent] = collections.deque(maxlen=max(1, max_events))
        self._cond = threading.Condition()
        self._next_sequence = 1
        self._closed = False
        self.dropped = 0
        self._commands: asyncio.Queue[Optional[ChannelCommand]] = asyncio.Queue()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    async def send(self, event: ExecutionEvent) -> Optional[ExecutionEvent]:
        with self._cond:
            if self._closed:
                log.debug("Dropping %s event on closed channel", event.type)
                return None
            if len(self._events) == self._events.maxlen:
                self.dropped += 1
            sequenced = event.model_copy(update={"sequence": self._next_sequence})
            self._next_sequence += 1
            self._events.append(sequenced)
            self._cond.notify_all()
        return sequenced

    def push_command(self, command: ChannelCommand) -> None:
        if self.closed:
            log.debug("Ignoring %s command on closed channel", command.type)
            return
        self._commands.put_nowait(command)

    async def receive(self) -> Optional[ChannelCommand]:
        if self.closed and self._commands.empty():
            return None
        return await self._commands.get()

    async def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._commands.put_nowait(None)

    def events(self) -> List[ExecutionEvent]:
        with self._cond:
            return list(self._events)

    def messages(self) -> List[Dict[str, Any]]:
        return [event.to_message() for event in self.events()]

    def events_since(
        self, sequence: int = 0, timeout: float | None = None
    ) -> tuple[List[ExecutionEvent], bool]:
        """Return events newer than *sequence* and whether the channel is closed.

        Blocks up to *timeout* seconds when nothing new is available yet.
        """

        def _pending() -> List[ExecutionEvent]:
            return [event for event in self._events if event.sequence > sequence]

        with self._cond:
            fresh = _pending()
            if not fresh and not self._closed and timeout:
                self._cond.wait_for(lambda: bool(_pending()) or self._closed, timeout=timeout)
                fresh = _pending()
            return fresh, self._closed
