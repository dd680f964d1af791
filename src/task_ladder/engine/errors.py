"""Error taxonomy reported to CLI callers as structured data."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable codes emitted in CLI JSON payloads."""

    INVALID_ARGS = "INVALID_ARGS"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE = "DUPLICATE"
    ALREADY_PASSED = "ALREADY_PASSED"
    AT_MAX_LEVEL = "AT_MAX_LEVEL"
    READ_ERROR = "READ_ERROR"
    WRITE_ERROR = "WRITE_ERROR"
    STORE_ERROR = "STORE_ERROR"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    SCOPE_ERROR = "SCOPE_ERROR"


class TaskLadderError(RuntimeError):
    """Base error carrying a machine-readable code."""

    code = ErrorCode.STORE_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgsError(TaskLadderError):
    code = ErrorCode.INVALID_ARGS


class TaskNotFoundError(TaskLadderError):
    code = ErrorCode.NOT_FOUND


class InvalidTransitionError(TaskLadderError):
    code = ErrorCode.INVALID_TRANSITION


class DuplicateTaskError(TaskLadderError):
    code = ErrorCode.DUPLICATE


class ReadError(TaskLadderError):
    code = ErrorCode.READ_ERROR


class WriteError(TaskLadderError):
    code = ErrorCode.WRITE_ERROR


class StoreError(TaskLadderError):
    code = ErrorCode.STORE_ERROR


class AwaitingVerificationError(TaskLadderError):
    code = ErrorCode.AWAITING_VERIFICATION


class ScopeUnavailableError(TaskLadderError):
    code = ErrorCode.SCOPE_ERROR
