"""Process-wide registry of in-flight executions."""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .context import ExecutionContext
from .errors import ExecutionError

log = logging.getLogger(__name__)


class ExecutionRegistry:
    """Maps execution ids to their contexts.

    One instance is created per process and handed to the engine.  The map is
    guarded by a thread lock so status snapshots may be taken from other
    threads; mutations of a single context go through :meth:`acquire`, which
    holds that context's condition lock so commands for the same id are
    applied one at a time.
    """

    def __init__(self) -> None:
        self._contexts: Dict[str, ExecutionContext] = {}
        self._lock = threading.Lock()

    def register(self, context: ExecutionContext) -> None:
        with self._lock:
            if context.execution_id in self._contexts:
                raise ExecutionError(
                    f"execution {context.execution_id} is already registered"
                )
            self._contexts[context.execution_id] = context
        log.debug("Registered execution %s", context.execution_id)

    def get(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._lock:
            return self._contexts.get(execution_id)

    def remove(self, execution_id: str) -> Optional[ExecutionContext]:
        with self._lock:
            context = self._contexts.pop(execution_id, None)
        if context is not None:
            log.debug("Removed execution %s", execution_id)
        return context

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._contexts)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    @asynccontextmanager
    async def acquire(self, execution_id: str) -> AsyncIterator[Optional[ExecutionContext]]:
        """Hold the per-execution lock; yields ``None`` for unknown ids."""

        context = self.get(execution_id)
        if context is None:
            yield None
            return
        async with context.condition:
            yield context
