"""JSONL journal of execution events."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional

from .channel import ChannelCommand, EventChannel, ExecutionEvent

log = logging.getLogger(__name__)

_OMITTED_KEYS = ("screenshot",)


def _strip_heavy_fields(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {
            key: ("<omitted>" if key in _OMITTED_KEYS and value else _strip_heavy_fields(value))
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [_strip_heavy_fields(item) for item in payload]
    return payload


class EventJournal:
    """Writes one JSON line per event to ``<root>/<execution_id>/events.jsonl``."""

    def __init__(self, execution_id: str, base_dir: Path) -> None:
        self.execution_id = execution_id
        base_dir.mkdir(parents=True, exist_ok=True)
        self.path = base_dir / "events.jsonl"
        self._lock = threading.Lock()
        self._events_file = self.path.open("a", encoding="utf-8")

    @classmethod
    def for_execution(cls, execution_id: str, log_root: Path | str) -> "EventJournal":
        return cls(execution_id, Path(log_root) / execution_id)

    def record(self, event: ExecutionEvent) -> None:
        line = {
            "ts": time.time(),
            "execution_id": self.execution_id,
            "sequence": event.sequence,
            "type": event.type,
            "payload": _strip_heavy_fields(event.payload),
        }
        with self._lock:
            if self._events_file.closed:
                return
            self._events_file.write(json.dumps(line, ensure_ascii=False, default=str) + "\n")
            self._events_file.flush()

    def close(self) -> None:
        with self._lock:
            try:
                self._events_file.close()
            except OSError as exc:
                log.warning("Closing event journal %s failed: %s", self.path, exc)


class JournalingChannel(EventChannel):
    """Forwards to *inner* and records every delivered event in *journal*."""

    def __init__(self, inner: EventChannel, journal: EventJournal) -> None:
        self.inner = inner
        self.journal = journal

    async def send(self, event: ExecutionEvent) -> Optional[ExecutionEvent]:
        delivered = await self.inner.send(event)
        try:
            self.journal.record(delivered if isinstance(delivered, ExecutionEvent) else event)
        except (OSError, ValueError, TypeError) as exc:
            log.warning("Failed to journal %s event: %s", event.type, exc)
        return delivered

    async def receive(self) -> Optional[ChannelCommand]:
        return await self.inner.receive()

    async def close(self) -> None:
        try:
            await self.inner.close()
        finally:
            self.journal.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self.inner, name)
