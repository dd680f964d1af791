"""Storage contracts shared by the file and relational backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from task_ladder.engine.errors import TaskNotFoundError
from task_ladder.engine.metrics import find_most_recent_start
from task_ladder.engine.models import (
    EscalationWrite,
    HistoryAction,
    HistoryEvent,
    OrderEntry,
    StopEntry,
    TaskCreate,
    TaskEntry,
    TaskRecord,
    TaskStatus,
)


class TaskStore(Protocol):
    """Persistence and status tracking for individual tasks."""

    def create(self, task: TaskCreate) -> TaskRecord:
        """Create a pending task; raise DuplicateTaskError on a name collision."""
        raise NotImplementedError

    def find(self, name: str) -> TaskRecord | None:
        """Return the task or None when it is absent from the store."""
        raise NotImplementedError

    def set_status(
        self,
        name: str,
        *,
        from_status: TaskStatus,
        to_status: TaskStatus,
        at: datetime | None = None,
    ) -> TaskRecord:
        """Move a task between statuses; current status must equal ``from_status``."""
        raise NotImplementedError

    def list_by_status(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        """List tasks, optionally filtered by status."""
        raise NotImplementedError

    def record_escalation(self, name: str, *, escalation: EscalationWrite) -> None:
        """Persist a tier change for a task."""
        raise NotImplementedError

    def delete(self, name: str) -> None:
        """Remove a task and every record tied to it."""
        raise NotImplementedError


class OrderedTaskList(ABC):
    """Canonical sequence of task and stop entries.

    Writes are whole-list replaces: callers read the full list, derive a new
    one and write it back in a single call.
    """

    @abstractmethod
    def read_order(self) -> list[OrderEntry]:
        """Return entries in storage order."""

    @abstractmethod
    def write_order(self, entries: list[OrderEntry]) -> None:
        """Replace the whole list."""

    def get_metadata(self, name: str) -> TaskEntry | None:
        for entry in self.read_order():
            if isinstance(entry, TaskEntry) and entry.name == name:
                return entry
        return None

    def find_stop(self, stop_id: str) -> StopEntry | None:
        for entry in self.read_order():
            if isinstance(entry, StopEntry) and entry.stop_id == stop_id:
                return entry
        return None

    def index_of(self, name: str) -> int | None:
        for index, entry in enumerate(self.read_order()):
            if isinstance(entry, TaskEntry) and entry.name == name:
                return index
        return None

    def update_metadata(self, name: str, **changes: Any) -> TaskEntry:
        """Replace the matching task entry, keeping every other entry untouched."""

        updated: TaskEntry | None = None
        entries: list[OrderEntry] = []
        for entry in self.read_order():
            if isinstance(entry, TaskEntry) and entry.name == name and updated is None:
                updated = replace(entry, **changes)
                entries.append(updated)
            else:
                entries.append(entry)
        if updated is None:
            raise TaskNotFoundError(f"Task not found in ordered list: {name}")
        self.write_order(entries)
        return updated


class HistoryLog(ABC):
    """Append-only, timestamped event journal."""

    @abstractmethod
    def append(self, event: HistoryEvent) -> HistoryEvent:
        """Append one event; never rewrites earlier events."""

    @abstractmethod
    def read_all(self) -> list[HistoryEvent]:
        """Return every event, oldest first."""

    def is_stop_passed(self, stop_id: str) -> bool:
        return any(
            event.action == HistoryAction.STOP_CONTINUE.value and event.stop == stop_id
            for event in self.read_all()
        )

    def passed_stops(self) -> set[str]:
        return {
            event.stop
            for event in self.read_all()
            if event.action == HistoryAction.STOP_CONTINUE.value and event.stop is not None
        }

    def find_most_recent_start(self, task: str, *, before: int | None = None) -> datetime | None:
        return find_most_recent_start(self.read_all(), task, before=before)

    def events_for(self, task: str) -> list[HistoryEvent]:
        return [event for event in self.read_all() if event.task == task]


class VerificationGate(Protocol):
    """Sequential current-task pointer that blocks new starts until verified."""

    def ensure_can_start(self) -> None:
        """Raise AwaitingVerificationError while the current task awaits verification."""
        raise NotImplementedError

    def mark_started(self, name: str) -> None:
        raise NotImplementedError

    def mark_done(self, name: str) -> None:
        raise NotImplementedError

    def mark_released(self, name: str) -> None:
        """Drop the pointer after a fail/reset so the next task can start."""
        raise NotImplementedError

    def verify(self) -> str:
        """Clear the awaiting-verification state and return the verified task name."""
        raise NotImplementedError


class TaskBackend(Protocol):
    """Bundle of store, ordered list and history log sharing one unit of work."""

    store: TaskStore
    order: OrderedTaskList
    history: HistoryLog
    gate: VerificationGate | None

    def transaction(self) -> AbstractContextManager[None]:
        """Run the enclosed operations as one atomic unit."""
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources."""
        raise NotImplementedError
