from __future__ import annotations

import atexit
import json
import logging
import os
from typing import Any

from flask import Flask, Response, jsonify, request, stream_with_context
from pydantic import ValidationError

from execution.errors import ExecutionNotFoundError, InvalidTestCaseError, UnknownCommandError
from execution.manager import get_execution_manager, shutdown_execution_manager

app = Flask(__name__)
log = logging.getLogger("execution")
log.setLevel(logging.INFO)

DEFAULT_TARGET_URL = os.getenv("DEFAULT_TARGET_URL", "https://example.com")
SSE_POLL_TIMEOUT = max(1.0, float(os.getenv("SSE_POLL_TIMEOUT", "15")))
MAX_POLL_TIMEOUT = 30.0


def _sse_message(message: dict[str, Any], sequence: int | None = None) -> str:
    """Format one Server-Sent Events frame."""

    prefix = f"id: {sequence}\n" if sequence is not None else ""
    return f"{prefix}data: {json.dumps(message, ensure_ascii=False)}\n\n"


def _first_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid command"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


@app.errorhandler(404)
def not_found(error: Exception):  # pragma: no cover - simple JSON handler
    return jsonify({"error": f"resource not found: {request.path}"}), 404


@app.errorhandler(Exception)
def handle_exception(error: Exception):  # pragma: no cover - catch-all
    log.exception("Unhandled exception: %s", error)
    return jsonify({"error": "internal server error"}), 500


@app.get("/healthz")
def healthz():
    return jsonify({"status": "ok", "defaultTargetUrl": DEFAULT_TARGET_URL})


@app.post("/executions")
def start_execution():
    data: dict[str, Any] = request.get_json(silent=True) or {}
    test_case = data.get("testCase")
    test_case_id = data.get("testCaseId")
    if test_case is None and test_case_id is None:
        return jsonify({"error": "testCaseId or testCase is required"}), 400
    if test_case is not None and not isinstance(test_case, dict):
        return jsonify({"error": "testCase must be an object"}), 400

    target_url = str(data.get("deploymentUrl") or data.get("targetUrl") or "").strip()
    test_data = data.get("testData")
    manager = get_execution_manager()
    try:
        execution_id = manager.start_execution(
            target_url=target_url or DEFAULT_TARGET_URL,
            test_case_id=test_case_id,
            test_case=test_case,
            cycle_id=data.get("cycleId"),
            test_data=test_data if isinstance(test_data, dict) else None,
        )
    except InvalidTestCaseError as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:  # pragma: no cover - runtime failure path
        log.exception("Failed to start execution")
        return jsonify({"error": "failed to start execution"}), 500

    return jsonify({"executionId": execution_id})


@app.get("/executions")
def list_executions():
    return jsonify({"executions": get_execution_manager().list_active()})


@app.get("/executions/<execution_id>")
def get_execution(execution_id: str):
    info = get_execution_manager().get_status(execution_id)
    if info is None:
        return jsonify({"error": "execution not found"}), 404
    return jsonify(info)


@app.delete("/executions/<execution_id>")
def forget_execution(execution_id: str):
    manager = get_execution_manager()
    if execution_id in manager.list_active():
        return jsonify({"error": "execution is still active"}), 409
    if not manager.cleanup_finished(execution_id):
        return jsonify({"error": "execution not found"}), 404
    return jsonify({"status": "removed"})


@app.post("/executions/<execution_id>/commands")
def send_command(execution_id: str):
    data: dict[str, Any] = request.get_json(silent=True) or {}
    try:
        accepted = get_execution_manager().send_command(execution_id, data)
    except ValidationError as exc:
        return jsonify({"error": _first_validation_error(exc)}), 400
    except UnknownCommandError as exc:
        return jsonify({"error": str(exc)}), 400
    if not accepted:
        return jsonify({"error": "execution not active"}), 404
    return jsonify({"status": "accepted"})


@app.get("/executions/<execution_id>/events")
def stream_events(execution_id: str):
    manager = get_execution_manager()
    after = request.args.get("after", type=int)
    if after is None:
        after = request.headers.get("Last-Event-ID", default=0, type=int)
    try:
        manager.events_since(execution_id, after)
    except ExecutionNotFoundError:
        return jsonify({"error": "execution not found"}), 404

    def generate():
        last = after
        while True:
            try:
                events, closed = manager.events_since(
                    execution_id, last, timeout=SSE_POLL_TIMEOUT
                )
            except ExecutionNotFoundError:
                return
            for event in events:
                last = event.sequence
                yield _sse_message(event.to_message(), event.sequence)
            if not events:
                if closed:
                    return
                yield ": keep-alive\n\n"

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/executions/<execution_id>/events/poll")
def poll_events(execution_id: str):
    after = request.args.get("after", default=0, type=int)
    timeout = request.args.get("timeout", default=0.0, type=float)
    timeout = min(max(timeout, 0.0), MAX_POLL_TIMEOUT)
    try:
        events, closed = get_execution_manager().events_since(
            execution_id, after, timeout=timeout or None
        )
    except ExecutionNotFoundError:
        return jsonify({"error": "execution not found"}), 404
    return jsonify(
        {
            "events": [event.to_message() for event in events],
            "closed": closed,
            "last": events[-1].sequence if events else after,
        }
    )


@app.get("/runs/<test_case_id>")
def list_runs(test_case_id: str):
    return jsonify({"runs": get_execution_manager().list_runs(test_case_id)})


@atexit.register
def _shutdown_manager() -> None:  # pragma: no cover - shutdown hook
    try:
        shutdown_execution_manager()
    except Exception as exc:
        log.debug("Shutdown cleanup failed: %s", exc)


if __name__ == "__main__":  # pragma: no cover - manual run helper
    logging.basicConfig(level=logging.INFO)
    app.run(host="0.0.0.0", port=5000, debug=True, threaded=True)
