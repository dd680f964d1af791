"""Directory-based backend: status subdirectories, order.json and history.jsonl.

Layout under the tasks directory::

    pending/<name>.md        one file per task; its directory *is* its status
    in_progress/<name>.md
    done/<name>.md           ``completed/`` is read as an alias of ``done/``
    failed/<name>.md
    order.json               {"tasks": [TaskEntry | StopEntry, ...]}
    history.jsonl            one JSON event per line, append-only
    state.json               verification cursor (only with the gate enabled)
    .lock                    advisory lock held for one engine operation
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from task_ladder.engine.errors import (
    AwaitingVerificationError,
    DuplicateTaskError,
    InvalidArgsError,
    InvalidTransitionError,
    ReadError,
    StoreError,
    TaskNotFoundError,
    WriteError,
)
from task_ladder.engine.models import (
    EscalationWrite,
    HistoryEvent,
    OrderEntry,
    TaskCreate,
    TaskRecord,
    TaskStatus,
    ensure_transition_allowed,
    parse_order_entry,
    validate_task_name,
)
from task_ladder.storage.base import HistoryLog, OrderedTaskList
from task_ladder.storage.common import (
    exclusive_file_lock,
    from_iso,
    load_json,
    write_json_atomic,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

TASK_FILE_SUFFIX = ".md"
ORDER_FILE = "order.json"
HISTORY_FILE = "history.jsonl"
STATE_FILE = "state.json"
LOCK_FILE = ".lock"
_LEGACY_DONE_DIR = "completed"


class DirectoryTaskStore:
    """Task store where the status is the subdirectory holding the task file."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def ensure_layout(self) -> None:
        try:
            for status in TaskStatus:
                (self.root_dir / status.value).mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WriteError(f"Cannot create task directories under {self.root_dir}") from error

    def create(self, task: TaskCreate) -> TaskRecord:
        name = validate_task_name(task.name)
        if self._locate(name) is not None:
            raise DuplicateTaskError(f"Task already exists: {name}")
        path = self._task_path(TaskStatus.PENDING, name)
        write_text_atomic(path, task.content)
        return self._to_record(name=name, status=TaskStatus.PENDING, path=path)

    def find(self, name: str) -> TaskRecord | None:
        located = self._locate(name)
        if located is None:
            return None
        status, path = located
        return self._to_record(name=name, status=status, path=path)

    def set_status(
        self,
        name: str,
        *,
        from_status: TaskStatus,
        to_status: TaskStatus,
        at: datetime | None = None,
    ) -> TaskRecord:
        ensure_transition_allowed(from_status, to_status)
        located = self._locate(name)
        if located is None:
            raise TaskNotFoundError(f"Task not found: {name}")
        current, source = located
        if current != from_status:
            raise InvalidTransitionError(
                f"Task {name} is {current.value}, expected {from_status.value}.",
            )
        target = self._task_path(to_status, name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            source.replace(target)
            if at is not None:
                stamp = at.timestamp()
                os.utime(target, (stamp, stamp))
        except OSError as error:
            raise WriteError(f"Cannot move task {name} to {to_status.value}: {error}") from error
        return self._to_record(name=name, status=to_status, path=target)

    def list_by_status(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        statuses = [status] if status is not None else list(TaskStatus)
        records: list[TaskRecord] = []
        for current in statuses:
            for directory in self._status_dirs(current):
                if not directory.is_dir():
                    continue
                for path in sorted(directory.glob(f"*{TASK_FILE_SUFFIX}")):
                    records.append(
                        self._to_record(
                            name=path.name[: -len(TASK_FILE_SUFFIX)],
                            status=current,
                            path=path,
                        ),
                    )
        return records

    def record_escalation(self, name: str, *, escalation: EscalationWrite) -> None:
        # Tiers live in order.json and escalations in history.jsonl for this backend.
        if self._locate(name) is None:
            raise TaskNotFoundError(f"Task not found: {name}")
        logger.debug(
            "Escalation of %s to %s/%s kept in order list and history",
            name,
            escalation.to_model,
            escalation.to_thinking,
        )

    def delete(self, name: str) -> None:
        located = self._locate(name)
        if located is None:
            raise TaskNotFoundError(f"Task not found: {name}")
        _, path = located
        try:
            path.unlink()
        except OSError as error:
            raise WriteError(f"Cannot delete task {name}: {error}") from error

    def _locate(self, name: str) -> tuple[TaskStatus, Path] | None:
        matches: list[tuple[TaskStatus, Path]] = []
        for status in TaskStatus:
            for directory in self._status_dirs(status):
                path = directory / f"{name}{TASK_FILE_SUFFIX}"
                if path.is_file():
                    matches.append((status, path))
        if not matches:
            return None
        if len(matches) > 1:
            found = ", ".join(str(path.parent.name) for _, path in matches)
            raise StoreError(f"Task {name} is present in several status directories: {found}")
        return matches[0]

    def _status_dirs(self, status: TaskStatus) -> list[Path]:
        dirs = [self.root_dir / status.value]
        if status == TaskStatus.DONE:
            dirs.append(self.root_dir / _LEGACY_DONE_DIR)
        return dirs

    def _task_path(self, status: TaskStatus, name: str) -> Path:
        return self.root_dir / status.value / f"{name}{TASK_FILE_SUFFIX}"

    def _to_record(self, *, name: str, status: TaskStatus, path: Path) -> TaskRecord:
        try:
            content = path.read_text("utf-8")
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
        except OSError as error:
            raise ReadError(f"Cannot read task file {path}: {error}") from error
        return TaskRecord(
            name=name,
            status=status,
            content=content,
            updated_at=modified,
            started_at=modified if status == TaskStatus.IN_PROGRESS else None,
            completed_at=modified if status in {TaskStatus.DONE, TaskStatus.FAILED} else None,
        )


class JsonOrderList(OrderedTaskList):
    """Ordered task list persisted as ``{"tasks": [...]}``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read_order(self) -> list[OrderEntry]:
        if not self.path.exists():
            return []
        payload = load_json(self.path)
        raw_entries = payload.get("tasks", [])
        if not isinstance(raw_entries, list):
            raise ReadError(f"'tasks' must be a list in {self.path}")
        try:
            return [parse_order_entry(raw) for raw in raw_entries]
        except InvalidArgsError as error:
            raise ReadError(f"Invalid order entry in {self.path}: {error.message}") from error

    def write_order(self, entries: list[OrderEntry]) -> None:
        write_json_atomic(self.path, {"tasks": [entry.to_dict() for entry in entries]})


class JsonlHistoryLog(HistoryLog):
    """History log stored as JSON Lines, one event per line."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, event: HistoryEvent) -> HistoryEvent:
        line = json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as error:
            raise WriteError(f"Cannot append to {self.path}: {error}") from error
        return event

    def read_all(self) -> list[HistoryEvent]:
        if not self.path.exists():
            return []
        try:
            lines = self.path.read_text("utf-8").splitlines()
        except OSError as error:
            raise ReadError(f"Cannot read {self.path}: {error}") from error
        events: list[HistoryEvent] = []
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as error:
                raise ReadError(f"Invalid history line {line_no} in {self.path}") from error
            events.append(_event_from_dict(raw, where=f"{self.path}:{line_no}"))
        return events


def _event_from_dict(raw: Any, *, where: str) -> HistoryEvent:
    if not isinstance(raw, dict) or "timestamp" not in raw or "action" not in raw:
        raise ReadError(f"Malformed history event at {where}")
    details = dict(raw)
    timestamp = details.pop("timestamp")
    action = details.pop("action")
    task = details.pop("task", None)
    stop = details.pop("stop", None)
    try:
        parsed_timestamp = from_iso(str(timestamp))
    except ValueError as error:
        raise ReadError(f"Invalid timestamp at {where}: {timestamp!r}") from error
    return HistoryEvent(
        timestamp=parsed_timestamp,
        action=str(action),
        task=task,
        stop=stop,
        details=details,
    )


class VerificationCursor:
    """Current-task pointer in ``state.json``.

    Sequence: ``pending -(start)-> in_progress -(done)-> done -(verify)-> pending``.
    A task that is ``done`` blocks any new start until it is verified.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"current": None, "status": TaskStatus.PENDING.value}
        state = load_json(self.path)
        return {
            "current": state.get("current"),
            "status": str(state.get("status", TaskStatus.PENDING.value)),
        }

    def ensure_can_start(self) -> None:
        state = self.load()
        if state["status"] == TaskStatus.DONE.value:
            raise AwaitingVerificationError(
                f"Task {state['current']} is done and awaits verification.",
            )
        if state["status"] == TaskStatus.IN_PROGRESS.value:
            raise InvalidTransitionError(f"Task {state['current']} is still in progress.")

    def mark_started(self, name: str) -> None:
        self._save(current=name, status=TaskStatus.IN_PROGRESS)

    def mark_done(self, name: str) -> None:
        self._save(current=name, status=TaskStatus.DONE)

    def mark_released(self, name: str) -> None:
        if self.load()["current"] == name:
            self._save(current=None, status=TaskStatus.PENDING)

    def verify(self) -> str:
        state = self.load()
        if state["status"] != TaskStatus.DONE.value or state["current"] is None:
            raise InvalidTransitionError("No task is awaiting verification.")
        self._save(current=None, status=TaskStatus.PENDING)
        return str(state["current"])

    def _save(self, *, current: str | None, status: TaskStatus) -> None:
        write_json_atomic(self.path, {"current": current, "status": status.value})


class FileBackend:
    """Backend bundle rooted at one tasks directory."""

    def __init__(self, root_dir: Path, *, verification_gate: bool = False) -> None:
        self.root_dir = root_dir
        self.store = DirectoryTaskStore(root_dir)
        self.order = JsonOrderList(root_dir / ORDER_FILE)
        self.history = JsonlHistoryLog(root_dir / HISTORY_FILE)
        self.gate = VerificationCursor(root_dir / STATE_FILE) if verification_gate else None
        self._lock_depth = 0

    def init_layout(self) -> None:
        """Create status directories if they are missing."""

        self.store.ensure_layout()
        logger.debug("File backend ready at %s", self.root_dir)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._lock_depth:
            yield
            return
        with exclusive_file_lock(self.root_dir / LOCK_FILE):
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1

    def close(self) -> None:
        logger.debug("File backend closed at %s", self.root_dir)
