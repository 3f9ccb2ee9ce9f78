"""Thread-safe facade that runs the execution engine on a background loop."""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional

import requests

from .channel import BufferedEventChannel, ChannelCommand, EventChannel, ExecutionEvent
from .config import EngineConfig, load_config
from .context import ExecutionContext
from .engine import ExecutionEngine
from .errors import ExecutionNotFoundError, InvalidTestCaseError
from .event_log import EventJournal, JournalingChannel
from .page_analysis import PageAnalysisStrategy
from .registry import ExecutionRegistry
from .report import ExecutionReport
from .store import JsonFileStore
from .strategy import StepStrategy

log = logging.getLogger(__name__)


class ExecutionManager:
    """Owns one engine, its registry and an event loop running in a thread.

    Flask handlers call the synchronous methods; work is scheduled on the
    loop with :func:`asyncio.run_coroutine_threadsafe`.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: JsonFileStore | None = None,
        strategy: StepStrategy | None = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or JsonFileStore(self.config.data_dir)
        self.registry = ExecutionRegistry()
        if strategy is None:
            strategy = PageAnalysisStrategy(
                fetch_real_content=self.config.fetch_real_content,
                fetch_timeout=self.config.fetch_timeout,
                intervention_probability=self.config.intervention_probability,
                intervention_step_index=self.config.intervention_step_index,
            )
        self.engine = ExecutionEngine(
            self.registry, strategy, step_delay=self.config.step_delay
        )
        self.engine.add_report_listener(self._on_finished)

        self._channels: Dict[str, BufferedEventChannel] = {}
        self._finished: collections.OrderedDict[str, Dict[str, Any]] = (
            collections.OrderedDict()
        )
        self._lock = threading.Lock()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="execution-loop"
        )
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _call(self, coro, timeout: float = 10.0):
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=timeout)

    # ------------------------------------------------------------------

    def start_execution(
        self,
        *,
        target_url: str,
        test_case_id: Any = None,
        test_case: Mapping[str, Any] | None = None,
        cycle_id: Any = None,
        test_data: Mapping[str, Any] | None = None,
    ) -> str:
        if test_case is None:
            if test_case_id is None:
                raise InvalidTestCaseError("testCaseId or testCase is required")
            test_case = self.store.get_test_case(test_case_id)
            if test_case is None:
                raise InvalidTestCaseError(f"test case not found: {test_case_id}")
        url = (target_url or "").strip()
        if not url:
            raise InvalidTestCaseError("target url is required")

        data: Dict[str, Any] = {}
        if cycle_id is not None:
            data.update(self.store.cycle_test_data(cycle_id))
        if test_data:
            data.update(test_data)

        execution_id = uuid.uuid4().hex
        self._call(self._start(dict(test_case), url, execution_id, data))
        log.info("Started execution %s against %s", execution_id, url)
        return execution_id

    async def _start(
        self, test_case: Dict[str, Any], url: str, execution_id: str, data: Dict[str, Any]
    ) -> str:
        channel = BufferedEventChannel(self.config.event_buffer_size)
        outbound: EventChannel = channel
        if self.config.journal_events:
            journal = EventJournal.for_execution(execution_id, self.config.log_root)
            outbound = JournalingChannel(channel, journal)
        with self._lock:
            self._channels[execution_id] = channel
        try:
            return await self.engine.start(
                test_case, url, outbound, execution_id=execution_id, test_data=data
            )
        except Exception:
            with self._lock:
                self._channels.pop(execution_id, None)
            await outbound.close()
            raise

    def send_command(self, execution_id: str, command: Any) -> bool:
        """Queue *command* on the execution's channel.

        Returns ``False`` when the execution is no longer active.  Malformed
        commands raise ``pydantic.ValidationError`` or ``UnknownCommandError``.
        """

        parsed = ChannelCommand.parse(command)
        with self._lock:
            channel = self._channels.get(execution_id)
        if channel is None or channel.closed or execution_id not in self.registry:
            return False
        self._loop.call_soon_threadsafe(channel.push_command, parsed)
        log.info("Queued %s command for execution %s", parsed.type, execution_id)
        return True

    def get_status(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self._call(self._snapshot(execution_id))

    async def _snapshot(self, execution_id: str) -> Optional[Dict[str, Any]]:
        context = self.registry.get(execution_id)
        if context is not None:
            return context.snapshot()
        with self._lock:
            return self._finished.get(execution_id)

    def events_since(
        self, execution_id: str, sequence: int = 0, timeout: float | None = None
    ) -> tuple[List[ExecutionEvent], bool]:
        with self._lock:
            channel = self._channels.get(execution_id)
        if channel is None:
            raise ExecutionNotFoundError(execution_id)
        return channel.events_since(sequence, timeout=timeout)

    def list_active(self) -> List[str]:
        return self.registry.ids()

    def list_runs(self, test_case_id: Any) -> List[Dict[str, Any]]:
        return self.store.runs_for(test_case_id)

    def cleanup_finished(self, execution_id: str) -> bool:
        """Forget the buffered events and final status of an ended execution."""

        if execution_id in self.registry:
            return False
        with self._lock:
            channel = self._channels.pop(execution_id, None)
            final = self._finished.pop(execution_id, None)
        return channel is not None or final is not None

    def _on_finished(
        self, context: ExecutionContext, report: Optional[ExecutionReport]
    ) -> None:
        final = context.snapshot()
        final["cancelled"] = context.cancelled
        final["report"] = report.to_payload() if report else None
        with self._lock:
            self._finished[context.execution_id] = final
            self._prune_finished_locked()

        if report is not None:
            status, notes = report.status, report.notes
        elif context.cancelled:
            status, notes = "stopped", "Execution stopped by user"
        else:
            status, notes = "failed", "Execution ended without a report"
        try:
            self.store.record_run(
                context.test_case.id,
                context.execution_id,
                status,
                notes=notes,
                report=report.to_payload() if report else None,
            )
        except (OSError, ValueError) as exc:
            log.error("Failed to record run %s: %s", context.execution_id, exc)

    def _prune_finished_locked(self) -> None:
        # Oldest ended executions go first; their buffered events go with them.
        while len(self._finished) > self.config.retain_finished:
            execution_id, _ = self._finished.popitem(last=False)
            self._channels.pop(execution_id, None)
            log.debug("Evicted finished execution %s", execution_id)

    def shutdown(self) -> None:
        try:
            self._call(self.engine.shutdown(), timeout=15)
        except Exception as exc:  # pragma: no cover - best effort
            log.debug("Engine shutdown failed: %s", exc)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)


class RemoteExecutionManager:
    """Proxy ``ExecutionManager`` calls to another instance of the web API."""

    _BASE_TIMEOUT = (5.0, 30.0)

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | tuple[float, float] | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return requests.request(
                method,
                url,
                json=json_payload,
                params=params,
                timeout=timeout or self._BASE_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"execution server request failed: {exc}") from exc

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            return payload["error"]
        text = response.text.strip()
        return text or f"execution server returned unexpected status {response.status_code}"

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RuntimeError("execution server returned malformed response") from exc

    def start_execution(
        self,
        *,
        target_url: str,
        test_case_id: Any = None,
        test_case: Mapping[str, Any] | None = None,
        cycle_id: Any = None,
        test_data: Mapping[str, Any] | None = None,
    ) -> str:
        payload: Dict[str, Any] = {"deploymentUrl": target_url}
        if test_case_id is not None:
            payload["testCaseId"] = test_case_id
        if test_case is not None:
            payload["testCase"] = dict(test_case)
        if cycle_id is not None:
            payload["cycleId"] = cycle_id
        if test_data:
            payload["testData"] = dict(test_data)
        response = self._request("post", "/executions", json_payload=payload)
        if response.status_code == 200:
            execution_id = self._json(response).get("executionId")
            if not isinstance(execution_id, str) or not execution_id:
                raise RuntimeError("execution server response missing executionId")
            return execution_id
        message = self._error_message(response)
        if response.status_code == 400:
            raise InvalidTestCaseError(message)
        raise RuntimeError(message)

    def send_command(self, execution_id: str, command: Any) -> bool:
        parsed = ChannelCommand.parse(command)
        response = self._request(
            "post",
            f"/executions/{execution_id}/commands",
            json_payload={"type": parsed.type, "note": parsed.note},
        )
        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise RuntimeError(self._error_message(response))

    def get_status(self, execution_id: str) -> Optional[Dict[str, Any]]:
        response = self._request("get", f"/executions/{execution_id}", timeout=15.0)
        if response.status_code == 200:
            return self._json(response)
        if response.status_code == 404:
            return None
        raise RuntimeError(self._error_message(response))

    def events_since(
        self, execution_id: str, sequence: int = 0, timeout: float | None = None
    ) -> tuple[List[ExecutionEvent], bool]:
        params: Dict[str, Any] = {"after": sequence}
        if timeout:
            params["timeout"] = timeout
        response = self._request(
            "get",
            f"/executions/{execution_id}/events/poll",
            params=params,
            timeout=(5.0, (timeout or 0) + 15.0),
        )
        if response.status_code == 404:
            raise ExecutionNotFoundError(execution_id)
        if response.status_code != 200:
            raise RuntimeError(self._error_message(response))
        data = self._json(response)
        events = []
        for message in data.get("events", []):
            message = dict(message)
            events.append(
                ExecutionEvent(
                    type=message.pop("type"),
                    execution_id=execution_id,
                    sequence=message.pop("sequence", 0),
                    timestamp=message.pop("timestamp", 0.0),
                    payload=message,
                )
            )
        return events, bool(data.get("closed"))

    def list_active(self) -> List[str]:
        response = self._request("get", "/executions", timeout=15.0)
        if response.status_code != 200:
            raise RuntimeError(self._error_message(response))
        return list(self._json(response).get("executions", []))

    def list_runs(self, test_case_id: Any) -> List[Dict[str, Any]]:
        response = self._request("get", f"/runs/{test_case_id}", timeout=15.0)
        if response.status_code != 200:
            raise RuntimeError(self._error_message(response))
        return list(self._json(response).get("runs", []))

    def cleanup_finished(self, execution_id: str) -> bool:
        return False

    def shutdown(self) -> None:  # pragma: no cover - remote manager has no local resources
        return None


_execution_manager: ExecutionManager | None = None
_remote_execution_manager: RemoteExecutionManager | None = None


def get_execution_manager() -> ExecutionManager | RemoteExecutionManager:
    remote_url = os.getenv("EXECUTION_REMOTE_API", "").strip()
    if remote_url:
        global _remote_execution_manager
        if _remote_execution_manager is None:
            _remote_execution_manager = RemoteExecutionManager(remote_url)
        return _remote_execution_manager

    global _execution_manager
    if _execution_manager is None:
        _execution_manager = ExecutionManager()
    return _execution_manager


def shutdown_execution_manager() -> None:
    """Shut down the process-wide manager if one was created."""

    global _execution_manager
    manager, _execution_manager = _execution_manager, None
    if manager is not None:
        manager.shutdown()
