"""Exception types raised by the execution core."""

from __future__ import annotations


class ExecutionError(Exception):
    """Base class for execution orchestration errors."""


class InvalidTestCaseError(ExecutionError, ValueError):
    """Raised when a test case cannot be executed (e.g. missing title)."""


class ExecutionNotFoundError(ExecutionError, KeyError):
    """Raised by lookups that require an active execution."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(execution_id)
        self.execution_id = execution_id

    def __str__(self) -> str:
        return f"execution not found: {self.execution_id}"


class UnknownCommandError(ExecutionError, ValueError):
    """Raised when a command type is not part of the channel protocol."""
