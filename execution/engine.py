"""Execution engine: drives a test case step by step and applies commands.

Every status transition for an execution happens while holding that
execution's condition lock, and events whose meaning depends on the status
are emitted under the same lock.  That keeps events for one execution in
step order and guarantees nothing follows its terminal event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from .channel import ChannelCommand, EventChannel, ExecutionEvent
from .context import (
    CaseSnapshot,
    ExecutionContext,
    ExecutionStatus,
    PageSnapshot,
    PendingIntervention,
    StepDescriptor,
    StepLogEntry,
    parse_test_steps,
)
from .evidence import evidence_ref, render_snapshot, to_data_uri
from .registry import ExecutionRegistry
from .report import ExecutionReport, build_report
from .strategy import StepOutcome, StepResult, StepStrategy

log = logging.getLogger(__name__)

ReportListener = Callable[[ExecutionContext, Optional[ExecutionReport]], Any]

STOPPED_MESSAGE = "Execution stopped by user"


class ExecutionEngine:
    """Runs executions registered in *registry* using *strategy* for each step."""

    def __init__(
        self,
        registry: ExecutionRegistry,
        strategy: StepStrategy,
        *,
        step_delay: float = 0.0,
        capture_evidence: bool = True,
    ) -> None:
        self.registry = registry
        self.strategy = strategy
        self.step_delay = max(0.0, step_delay)
        self.capture_evidence = capture_evidence
        self._channels: Dict[str, EventChannel] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._command_tasks: Dict[str, asyncio.Task] = {}
        self._report_listeners: list[ReportListener] = []

    def add_report_listener(self, listener: ReportListener) -> None:
        """Call *listener(context, report)* once an execution ends.

        *report* is ``None`` for executions ended by an explicit stop.
        """
        self._report_listeners.append(listener)

    # ------------------------------------------------------------------
    # lifecycle

    async def start(
        self,
        test_case: Mapping[str, Any],
        target_url: str,
        channel: EventChannel,
        *,
        execution_id: str | None = None,
        test_data: Mapping[str, Any] | None = None,
    ) -> str:
        case = CaseSnapshot.from_mapping(test_case)
        execution_id = execution_id or uuid.uuid4().hex
        context = ExecutionContext(
            execution_id=execution_id,
            test_case=case,
            target_url=str(target_url or ""),
            steps=parse_test_steps(case.steps),
            test_data=dict(test_data or {}),
        )
        context.set_status(ExecutionStatus.RUNNING)
        self.registry.register(context)
        self._channels[execution_id] = channel

        log.info(
            "Starting execution %s for test case %s: %s (%d steps)",
            execution_id,
            case.id,
            case.title,
            context.total_steps,
        )
        await self._emit(
            context,
            "execution_started",
            {
                "executionId": execution_id,
                "totalSteps": context.total_steps,
                "title": case.title,
                "targetUrl": context.target_url,
                "steps": [
                    {"index": step.index, "stepNumber": step.step_number, "description": step.description}
                    for step in context.steps
                ],
            },
        )
        self._tasks[execution_id] = asyncio.create_task(
            self._run(context), name=f"execution-{execution_id}"
        )
        self._command_tasks[execution_id] = asyncio.create_task(
            self._listen(context, channel), name=f"execution-commands-{execution_id}"
        )
        return execution_id

    async def wait(self, execution_id: str, timeout: float | None = None) -> bool:
        """Wait for the run loop of *execution_id* to exit."""

        task = self._tasks.get(execution_id)
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    def get_context(self, execution_id: str) -> Optional[ExecutionContext]:
        return self.registry.get(execution_id)

    def active_ids(self) -> list[str]:
        return self.registry.ids()

    async def shutdown(self) -> None:
        for execution_id in self.registry.ids():
            await self.stop(execution_id)
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=5)

    # ------------------------------------------------------------------
    # run loop

    async def _run(self, context: ExecutionContext) -> None:
        report: Optional[ExecutionReport] = None
        try:
            await self._prepare(context)
            while True:
                async with context.condition:
                    await context.condition.wait_for(
                        lambda: context.status is not ExecutionStatus.PAUSED
                    )
                    if context.status is not ExecutionStatus.RUNNING:
                        return
                    step = context.current_step
                    if step is None:
                        report = await self._finish_locked(context, ExecutionStatus.COMPLETED)
                        break
                    await self._emit(
                        context,
                        "step_started",
                        {
                            "index": step.index,
                            "stepNumber": step.step_number,
                            "description": step.description,
                        },
                    )

                if self.step_delay:
                    await asyncio.sleep(self.step_delay)
                    if context.is_terminal:
                        return
                result = await self._evaluate(context, step)

                async with context.condition:
                    if context.is_terminal:
                        return
                    report = await self._apply_result_locked(context, step, result)
                if report is not None:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("Execution %s crashed", context.execution_id)
            report = await self._crash(context, exc)
            if report is None and context.cancelled:
                # stop() already tore the execution down
                return
        finally:
            self._tasks.pop(context.execution_id, None)

        await self._teardown(context, report)

    async def _prepare(self, context: ExecutionContext) -> None:
        try:
            snapshot = await self.strategy.prepare(context)
        except Exception as exc:
            log.warning(
                "Strategy preparation failed for execution %s: %s", context.execution_id, exc
            )
            snapshot = None
        if snapshot is None:
            return
        async with context.condition:
            if context.is_terminal:
                return
            context.page_snapshot = snapshot
            await self._emit(context, "browser_state_update", self._browser_state(context))

    async def _evaluate(self, context: ExecutionContext, step: StepDescriptor) -> StepResult:
        log.info(
            "Execution %s: evaluating step %d: %s",
            context.execution_id,
            step.step_number,
            step.description,
        )
        try:
            result = await self.strategy.evaluate(context, step)
        except Exception as exc:
            log.exception(
                "Strategy raised while evaluating step %d of %s",
                step.step_number,
                context.execution_id,
            )
            return StepResult.failed(f"Step evaluation raised {type(exc).__name__}: {exc}")
        if not isinstance(result, StepResult):
            return StepResult.failed("Step strategy returned no result")
        return result

    async def _apply_result_locked(
        self, context: ExecutionContext, step: StepDescriptor, result: StepResult
    ) -> Optional[ExecutionReport]:
        if result.snapshot_update:
            self._merge_snapshot(context, result.snapshot_update)
        for note in result.notes:
            await self._emit(
                context,
                "ai_thinking",
                {"index": step.index, "stepNumber": step.step_number, "message": note},
            )

        if result.outcome is StepOutcome.COMPLETED:
            await self._log_step(context, step, "completed", result.output, details=result.details)
            return None

        if result.outcome is StepOutcome.FAILED:
            await self._log_step(context, step, "failed", result.output, details=result.details)
            return await self._finish_locked(
                context, ExecutionStatus.FAILED, error=result.output, step=step
            )

        reason = result.reason or "Manual intervention required"
        context.pending_intervention = PendingIntervention(step, result.output, reason)
        if context.status is ExecutionStatus.RUNNING:
            context.set_status(ExecutionStatus.PAUSED)
        context.intervention_required = True
        screenshot, _ = self._capture(context, step.step_number, "Waiting for user")
        await self._emit(
            context,
            "user_intervention_required",
            {
                "index": step.index,
                "stepNumber": step.step_number,
                "reason": reason,
                "aiOutput": result.output,
                "screenshot": screenshot,
            },
        )
        log.info(
            "Execution %s paused for intervention at step %d: %s",
            context.execution_id,
            step.step_number,
            reason,
        )
        return None

    def _merge_snapshot(self, context: ExecutionContext, update: Mapping[str, Any]) -> None:
        current = context.page_snapshot
        if current is None:
            current = PageSnapshot(url=context.target_url, title="")
        context.page_snapshot = current.merge(update)

    async def _log_step(
        self,
        context: ExecutionContext,
        step: StepDescriptor,
        status: str,
        output: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        intervened: bool = False,
    ) -> StepLogEntry:
        screenshot, ref = self._capture(context, step.step_number, step.description)
        page = context.page_snapshot
        entry = StepLogEntry(
            index=step.index,
            description=step.description,
            status=status,
            output=output,
            evidence_ref=ref,
            page_url=page.url if page else context.target_url,
            page_title=page.title if page else None,
            intervention_note=note,
        )
        context.append_log(entry)
        if ref and screenshot:
            context.evidence[ref] = screenshot

        if status == "failed":
            await self._emit(
                context,
                "step_failed",
                {"index": step.index, "stepNumber": step.step_number, "error": output},
            )
            return entry

        payload: Dict[str, Any] = {
            "index": step.index,
            "stepNumber": step.step_number,
            "description": step.description,
            "aiOutput": output,
            "screenshot": screenshot,
            "evidenceRef": ref,
        }
        if details:
            payload["pageAnalysis"] = details
        if intervened:
            payload["intervened"] = True
            payload["interventionNote"] = note
        await self._emit(context, "step_completed", payload)
        await self._emit(
            context,
            "browser_state_update",
            self._browser_state(context, step_number=step.step_number, screenshot=screenshot),
        )
        return entry

    async def _finish_locked(
        self,
        context: ExecutionContext,
        status: ExecutionStatus,
        *,
        error: Optional[str] = None,
        step: Optional[StepDescriptor] = None,
    ) -> ExecutionReport:
        context.set_status(status)
        context.intervention_required = False
        final_screenshot, _ = self._capture(context, len(context.step_log), "Final state")
        report = build_report(context, final_screenshot=final_screenshot)

        if status is ExecutionStatus.COMPLETED:
            await self._emit(
                context,
                "execution_completed",
                {
                    "executionId": context.execution_id,
                    "totalSteps": context.total_steps,
                    "status": report.status,
                    "results": report.to_payload(),
                },
            )
        else:
            await self._emit(
                context,
                "execution_failed",
                {
                    "executionId": context.execution_id,
                    "error": error,
                    "stepNumber": step.step_number if step else None,
                    "cancelled": False,
                    "results": report.to_payload(),
                },
            )
        context.terminal_event_sent = True
        self.registry.remove(context.execution_id)
        context.condition.notify_all()
        log.info(
            "Execution %s finished with status %s (%s)",
            context.execution_id,
            status.value,
            report.status,
        )
        return report

    async def _crash(self, context: ExecutionContext, exc: Exception) -> Optional[ExecutionReport]:
        message = f"Execution error: {exc}"
        async with context.condition:
            if context.is_terminal:
                # Either stopped, or _finish_locked broke after the status change.
                if not context.cancelled:
                    await self._abandon_locked(context, message)
                return None
            step = context.current_step
            if step is not None and context.pending_intervention is None:
                try:
                    await self._log_step(context, step, "failed", message)
                except Exception:
                    log.exception("Could not record failed step for %s", context.execution_id)
            try:
                return await self._finish_locked(
                    context, ExecutionStatus.FAILED, error=message, step=step
                )
            except Exception:
                log.exception("Could not finish execution %s", context.execution_id)
                await self._abandon_locked(context, message, step)
                return None

    async def _abandon_locked(
        self,
        context: ExecutionContext,
        message: str,
        step: Optional[StepDescriptor] = None,
    ) -> None:
        """End an execution whose report could not be produced."""

        if not context.terminal_event_sent:
            await self._emit(
                context,
                "execution_failed",
                {
                    "executionId": context.execution_id,
                    "error": message,
                    "stepNumber": step.step_number if step else None,
                    "cancelled": False,
                    "results": None,
                },
            )
            context.terminal_event_sent = True
        self.registry.remove(context.execution_id)
        context.condition.notify_all()

    async def _teardown(
        self, context: ExecutionContext, report: Optional[ExecutionReport]
    ) -> None:
        execution_id = context.execution_id
        channel = self._channels.pop(execution_id, None)
        command_task = self._command_tasks.pop(execution_id, None)
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                log.warning("Closing channel for %s failed: %s", execution_id, exc)
        if (
            command_task is not None
            and command_task is not asyncio.current_task()
            and not command_task.done()
        ):
            command_task.cancel()

        for listener in list(self._report_listeners):
            try:
                outcome = listener(context, report)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                log.exception("Report listener failed for execution %s", execution_id)

    # ------------------------------------------------------------------
    # commands

    async def pause(self, execution_id: str) -> bool:
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.status is not ExecutionStatus.RUNNING:
                return False
            context.set_status(ExecutionStatus.PAUSED)
            await self._emit(
                context,
                "execution_paused",
                {
                    "executionId": execution_id,
                    "stepNumber": context.cursor + 1,
                    "interventionRequired": False,
                    "reason": "Paused by operator",
                },
            )
        log.info("Execution %s paused", execution_id)
        return True

    async def resume(self, execution_id: str) -> bool:
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.status is not ExecutionStatus.PAUSED:
                return False
            await self._resume_locked(context)
        log.info("Execution %s resumed", execution_id)
        return True

    async def _resume_locked(self, context: ExecutionContext) -> None:
        context.set_status(ExecutionStatus.RUNNING)
        context.intervention_required = False
        pending = context.pending_intervention
        if pending is not None:
            context.pending_intervention = None
            output = f"{pending.output} Step completed by user intervention."
            if pending.note:
                output += f" Note: {pending.note}"
            await self._log_step(
                context, pending.step, "completed", output, note=pending.note, intervened=True
            )
        await self._emit(
            context,
            "execution_resumed",
            {"executionId": context.execution_id, "stepNumber": context.cursor + 1},
        )
        context.condition.notify_all()

    async def takeover(self, execution_id: str) -> bool:
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.is_terminal:
                return False
            context.intervention_required = True
            if context.status is ExecutionStatus.RUNNING:
                context.set_status(ExecutionStatus.PAUSED)
            await self._emit(
                context,
                "execution_paused",
                {
                    "executionId": execution_id,
                    "stepNumber": context.cursor + 1,
                    "interventionRequired": True,
                    "reason": "User takeover",
                },
            )
        log.info("Execution %s taken over by user", execution_id)
        return True

    def _note_locked(self, context: ExecutionContext, note: str) -> None:
        pending = context.pending_intervention
        if pending is not None:
            pending.note = f"{pending.note}\n{note}" if pending.note else note
        else:
            context.intervention_notes.append(note)
        context.updated_at = time.time()

    async def record_intervention_note(self, execution_id: str, note: str | None) -> bool:
        note = (note or "").strip()
        if not note:
            return False
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.is_terminal:
                return False
            self._note_locked(context, note)
        return True

    async def complete_intervention(self, execution_id: str, note: str | None = None) -> bool:
        note = (note or "").strip()
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.is_terminal:
                return False
            applied = False
            if note:
                self._note_locked(context, note)
                applied = True
            if context.status is ExecutionStatus.PAUSED:
                await self._resume_locked(context)
                applied = True
        if note:
            log.info("User intervention completed for %s: %s", execution_id, note)
        return applied

    async def stop(self, execution_id: str) -> bool:
        async with self.registry.acquire(execution_id) as context:
            if context is None or context.is_terminal:
                return False
            pending = context.pending_intervention
            step = pending.step if pending is not None else context.current_step
            context.set_status(ExecutionStatus.FAILED)
            context.cancelled = True
            context.intervention_required = False
            await self._emit(
                context,
                "execution_failed",
                {
                    "executionId": execution_id,
                    "error": STOPPED_MESSAGE,
                    "stepNumber": step.step_number if step else None,
                    "cancelled": True,
                },
            )
            context.terminal_event_sent = True
            self.registry.remove(execution_id)
            context.condition.notify_all()
        log.info("Execution %s stopped", execution_id)
        await self._teardown(context, None)
        return True

    async def handle_command(self, execution_id: str, command: Any) -> bool:
        """Apply a channel command; unknown ids and invalid states are no-ops."""

        command = ChannelCommand.parse(command)
        if command.type == "pause":
            return await self.pause(execution_id)
        if command.type == "resume":
            return await self.resume(execution_id)
        if command.type == "stop":
            return await self.stop(execution_id)
        if command.type == "takeover":
            return await self.takeover(execution_id)
        return await self.complete_intervention(execution_id, command.note)

    async def _listen(self, context: ExecutionContext, channel: EventChannel) -> None:
        while True:
            try:
                command = await channel.receive()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning(
                    "Command channel for execution %s failed: %s", context.execution_id, exc
                )
                return
            if command is None:
                return
            try:
                await self.handle_command(context.execution_id, command)
            except Exception:
                log.exception(
                    "Failed to apply command to execution %s", context.execution_id
                )

    # ------------------------------------------------------------------
    # helpers

    async def _emit(self, context: ExecutionContext, event_type: str, payload: Dict[str, Any]) -> None:
        channel = self._channels.get(context.execution_id)
        if channel is None:
            return
        event = ExecutionEvent(type=event_type, execution_id=context.execution_id, payload=payload)
        try:
            await channel.send(event)
        except Exception as exc:
            log.warning(
                "Failed to deliver %s for execution %s: %s",
                event_type,
                context.execution_id,
                exc,
            )

    def _capture(
        self, context: ExecutionContext, step_number: int, caption: str
    ) -> tuple[Optional[str], Optional[str]]:
        if not self.capture_evidence:
            return None, None
        try:
            png = render_snapshot(
                context.page_snapshot,
                step_number=step_number,
                total_steps=context.total_steps,
                caption=caption,
            )
        except Exception as exc:
            log.warning("Evidence rendering failed for %s: %s", context.execution_id, exc)
            return None, None
        return to_data_uri(png), evidence_ref(png)

    def _browser_state(
        self,
        context: ExecutionContext,
        *,
        step_number: Optional[int] = None,
        screenshot: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = context.page_snapshot
        title = page.title if page else ""
        if step_number is not None and title:
            title = f"{title} - Step {step_number}"
        state: Dict[str, Any] = {
            "url": page.url if page else context.target_url,
            "title": title,
            "isLoading": False,
            "realPageData": bool(page and not page.is_fallback),
        }
        if step_number is not None:
            state["stepNumber"] = step_number
        if screenshot:
            state["screenshot"] = screenshot
        return state
