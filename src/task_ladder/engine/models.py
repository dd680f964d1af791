"""Domain models for the task lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from task_ladder.engine.errors import InvalidArgsError, InvalidTransitionError
from task_ladder.engine.ladder import MAX_LEVEL, level_of


class TaskStatus(str, Enum):
    """Exactly one status per task present in a store."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str) -> TaskStatus:
        """Parse user/storage input, accepting ``completed`` as ``done``."""

        normalized = value.strip().lower()
        if normalized == "completed":
            return cls.DONE
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(status.value for status in cls)
            raise InvalidArgsError(
                f"Unsupported status: {value!r}. Expected one of: {allowed}, completed.",
            ) from error


class HistoryAction(str, Enum):
    """Actions written to the append-only history log."""

    START = "start"
    DONE = "done"
    FAIL = "fail"
    RESET = "reset"
    IMPORT = "import"
    ESCALATE = "escalate"
    STOP_REACHED = "stop_reached"
    STOP_CONTINUE = "stop_continue"
    DELETE = "delete"
    VERIFY = "verify"


ALLOWED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
        (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
        (TaskStatus.IN_PROGRESS, TaskStatus.PENDING),
        (TaskStatus.FAILED, TaskStatus.PENDING),
    },
)

TRANSITION_ACTIONS: dict[TaskStatus, HistoryAction] = {
    TaskStatus.IN_PROGRESS: HistoryAction.START,
    TaskStatus.DONE: HistoryAction.DONE,
    TaskStatus.FAILED: HistoryAction.FAIL,
    TaskStatus.PENDING: HistoryAction.RESET,
}


def ensure_transition_allowed(from_status: TaskStatus, to_status: TaskStatus) -> None:
    """Reject any pair outside the status transition table."""

    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(
            f"Transition {from_status.value} -> {to_status.value} is not allowed.",
        )


def validate_task_name(name: str) -> str:
    """Task names double as file names in the directory backend."""

    normalized = name.strip()
    if not normalized:
        raise InvalidArgsError("Task name must not be empty.")
    if "/" in normalized or "\\" in normalized or normalized.startswith("."):
        raise InvalidArgsError(f"Invalid task name: {name!r}")
    return normalized


@dataclass(slots=True)
class TaskEntry:
    """Ordered-list entry describing one task and its escalation tier."""

    name: str
    group: str | None = None
    model: str | None = None
    thinking: str | None = None

    @property
    def level(self) -> int:
        return level_of(self.model, self.thinking)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "group": self.group,
            "model": self.model,
            "thinking": self.thinking,
        }


@dataclass(slots=True)
class StopEntry:
    """Manual checkpoint interleaved with tasks in the ordered list."""

    stop_id: str
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"stop": self.stop_id, "message": self.message}


OrderEntry = TaskEntry | StopEntry


def parse_order_entry(raw: object) -> OrderEntry:
    """Parse one ``order.json`` entry (task or stop)."""

    if not isinstance(raw, dict):
        raise InvalidArgsError(f"Order entry must be an object, got {type(raw).__name__}.")
    if "stop" in raw:
        stop_id = raw["stop"]
        if not isinstance(stop_id, str) or not stop_id.strip():
            raise InvalidArgsError(f"Stop entry has an invalid id: {stop_id!r}")
        message = raw.get("message")
        return StopEntry(stop_id=stop_id.strip(), message=str(message) if message else None)
    name = raw.get("name")
    if not isinstance(name, str):
        raise InvalidArgsError(f"Task entry requires a string 'name', got {name!r}.")
    return TaskEntry(
        name=validate_task_name(name),
        group=_optional_str(raw.get("group")),
        model=_optional_str(raw.get("model")),
        thinking=_optional_str(raw.get("thinking")),
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task in a store."""

    name: str
    content: str = ""
    group: str | None = None
    model: str | None = None
    thinking: str | None = None


@dataclass(slots=True)
class TaskRecord:
    """Store view of one task.

    The directory backend has no timestamp or tier columns; those fields
    stay ``None`` there and the engine reads them from the ordered list and
    the history log instead.
    """

    name: str
    status: TaskStatus
    content: str = ""
    group: str | None = None
    model: str | None = None
    thinking: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class EscalationWrite:
    """Escalation record persisted alongside a tier change."""

    from_model: str | None
    from_thinking: str | None
    to_model: str
    to_thinking: str
    reason: str | None
    escalated_at: datetime


@dataclass(slots=True)
class HistoryEvent:
    """One line of the history log."""

    timestamp: datetime
    action: str
    task: str | None = None
    stop: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.details)
        payload["timestamp"] = self.timestamp.isoformat()
        payload["action"] = self.action
        payload["task"] = self.task
        if self.stop is not None:
            payload["stop"] = self.stop
        return payload


@dataclass(slots=True)
class TaskSummary:
    """List/CLI view combining store status with ordered-list metadata."""

    name: str
    status: TaskStatus
    group: str | None
    model: str | None
    thinking: str | None
    position: int | None

    @property
    def level(self) -> int:
        return level_of(self.model, self.thinking)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "group": self.group,
            "model": self.model,
            "thinking": self.thinking,
            "level": self.level,
            "max_level": MAX_LEVEL,
            "position": self.position,
        }


@dataclass(slots=True)
class TaskDetails:
    """Task summary with its content and history events."""

    summary: TaskSummary
    content: str
    started_at: datetime | None
    completed_at: datetime | None
    events: list[HistoryEvent]

    def to_dict(self) -> dict[str, Any]:
        payload = self.summary.to_dict()
        payload["content"] = self.content
        payload["started_at"] = self.started_at.isoformat() if self.started_at else None
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        payload["events"] = [event.to_dict() for event in self.events]
        return payload
