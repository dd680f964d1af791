"""Use-case services for the task lifecycle engine."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from task_ladder.engine.errors import (
    DuplicateTaskError,
    ErrorCode,
    InvalidArgsError,
    InvalidTransitionError,
    TaskLadderError,
    TaskNotFoundError,
)
from task_ladder.engine.ladder import MAX_LEVEL, first_step, level_of, next_level
from task_ladder.engine.metrics import TaskMetricsSnapshot, build_task_metrics
from task_ladder.engine.models import (
    EscalationWrite,
    HistoryAction,
    HistoryEvent,
    OrderEntry,
    StopEntry,
    TaskCreate,
    TaskDetails,
    TaskEntry,
    TaskRecord,
    TaskStatus,
    TaskSummary,
    parse_order_entry,
    validate_task_name,
)
from task_ladder.storage.base import TaskBackend
from task_ladder.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AddTask:
    """High-level command to add one task to the ordered list."""

    name: str
    content: str = ""
    group: str | None = None
    model: str | None = None
    thinking: str | None = None
    after: str | None = None


@dataclass(slots=True)
class ImportItemError:
    """Per-item failure collected during a bulk import."""

    entry: str
    code: ErrorCode
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"entry": self.entry, "code": self.code.value, "error": self.error}


@dataclass(slots=True)
class ImportResult:
    """Bulk import outcome: successes and failures side by side."""

    imported: list[str] = field(default_factory=list)
    stops: list[str] = field(default_factory=list)
    errors: list[ImportItemError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": list(self.imported),
            "stops": list(self.stops),
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(slots=True)
class NextResult:
    """Next actionable unit: a task, an unresolved stop, or nothing."""

    kind: str
    task: TaskSummary | None = None
    stop: StopEntry | None = None
    position: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "position": self.position}
        if self.task is not None:
            payload["task"] = self.task.to_dict()
        if self.stop is not None:
            payload["stop"] = {"id": self.stop.stop_id, "message": self.stop.message}
        return payload


@dataclass(slots=True)
class EscalationResult:
    """Outcome of one escalate call."""

    name: str
    escalated: bool
    model: str | None
    thinking: str | None
    level: int
    status: TaskStatus
    reset: bool = False
    code: ErrorCode | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "escalated": self.escalated,
            "model": self.model,
            "thinking": self.thinking,
            "level": self.level,
            "max_level": MAX_LEVEL,
            "status": self.status.value,
            "reset": self.reset,
        }
        if self.code is not None:
            payload["code"] = self.code.value
        return payload


@dataclass(slots=True)
class ContinueResult:
    """Outcome of continuing past a stop."""

    stop_id: str
    continued: bool
    code: ErrorCode | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"stop": self.stop_id, "continued": self.continued}
        if self.code is not None:
            payload["code"] = self.code.value
        return payload


class TaskEngine:
    """Drives task transitions; each call is one backend transaction."""

    def __init__(
        self,
        *,
        backend: TaskBackend,
        default_model: str | None = None,
        default_thinking: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        step = first_step()
        self.default_model = default_model or step.model
        self.default_thinking = default_thinking or step.thinking
        self.clock = clock

    def add_task(self, command: AddTask) -> TaskSummary:
        """Create a pending task and place it in the ordered list."""

        name = validate_task_name(command.name)
        backend = self.backend
        with backend.transaction():
            entries = backend.order.read_order()
            if any(isinstance(entry, TaskEntry) and entry.name == name for entry in entries):
                raise DuplicateTaskError(f"Task already exists: {name}")
            insert_at = len(entries)
            if command.after is not None:
                anchor = _position_of(entries, command.after)
                if anchor is None:
                    raise TaskNotFoundError(f"Entry not found in ordered list: {command.after}")
                insert_at = anchor + 1

            entry = TaskEntry(
                name=name,
                group=command.group,
                model=command.model or self.default_model,
                thinking=command.thinking or self.default_thinking,
            )
            record = backend.store.create(
                TaskCreate(
                    name=name,
                    content=command.content,
                    group=entry.group,
                    model=entry.model,
                    thinking=entry.thinking,
                ),
            )
            backend.order.write_order([*entries[:insert_at], entry, *entries[insert_at:]])
            self._append(
                HistoryAction.IMPORT,
                task=name,
                details={"source": "add", "model": entry.model, "thinking": entry.thinking},
            )
        logger.info("Added task %s at position %d", name, insert_at)
        return _summary(record, entry=entry, position=insert_at)

    def import_tasks(self, raw_entries: list[Any]) -> ImportResult:
        """Append task and stop entries; failures are collected per item."""

        result = ImportResult()
        backend = self.backend
        with backend.transaction():
            entries = backend.order.read_order()
            task_names = {entry.name for entry in entries if isinstance(entry, TaskEntry)}
            stop_ids = {entry.stop_id for entry in entries if isinstance(entry, StopEntry)}
            appended: list[OrderEntry] = []
            for index, raw in enumerate(raw_entries):
                label = _entry_label(raw, index=index)
                try:
                    entry = parse_order_entry(raw)
                    if isinstance(entry, StopEntry):
                        if entry.stop_id in stop_ids:
                            raise DuplicateTaskError(f"Stop already exists: {entry.stop_id}")
                        stop_ids.add(entry.stop_id)
                        appended.append(entry)
                        result.stops.append(entry.stop_id)
                        continue
                    if entry.name in task_names:
                        raise DuplicateTaskError(f"Task already exists: {entry.name}")
                    entry.model = entry.model or self.default_model
                    entry.thinking = entry.thinking or self.default_thinking
                    content = raw.get("content", "") if isinstance(raw, dict) else ""
                    backend.store.create(
                        TaskCreate(
                            name=entry.name,
                            content=str(content or ""),
                            group=entry.group,
                            model=entry.model,
                            thinking=entry.thinking,
                        ),
                    )
                    task_names.add(entry.name)
                    appended.append(entry)
                    result.imported.append(entry.name)
                    self._append(
                        HistoryAction.IMPORT,
                        task=entry.name,
                        details={"source": "import", "group": entry.group},
                    )
                except TaskLadderError as error:
                    logger.warning("Import of %s failed: %s", label, error.message)
                    result.errors.append(
                        ImportItemError(entry=label, code=error.code, error=error.message),
                    )
            if appended:
                backend.order.write_order([*entries, *appended])
        return result

    def import_from_order(self) -> ImportResult:
        """Create store records for ordered-list tasks the store does not know yet."""

        result = ImportResult()
        backend = self.backend
        with backend.transaction():
            entries = backend.order.read_order()
            known = {record.name for record in backend.store.list_by_status()}
            normalized: list[OrderEntry] = []
            for entry in entries:
                if isinstance(entry, StopEntry):
                    result.stops.append(entry.stop_id)
                    normalized.append(entry)
                    continue
                if entry.model is None and entry.thinking is None:
                    entry = TaskEntry(
                        name=entry.name,
                        group=entry.group,
                        model=self.default_model,
                        thinking=self.default_thinking,
                    )
                normalized.append(entry)
                if entry.name in known:
                    continue
                try:
                    backend.store.create(
                        TaskCreate(
                            name=entry.name,
                            group=entry.group,
                            model=entry.model,
                            thinking=entry.thinking,
                        ),
                    )
                except TaskLadderError as error:
                    logger.warning("Import of %s failed: %s", entry.name, error.message)
                    result.errors.append(
                        ImportItemError(entry=entry.name, code=error.code, error=error.message),
                    )
                    continue
                known.add(entry.name)
                result.imported.append(entry.name)
                self._append(
                    HistoryAction.IMPORT,
                    task=entry.name,
                    details={"source": "order", "group": entry.group},
                )
            if normalized != entries:
                backend.order.write_order(normalized)
        return result

    def next_entry(self) -> NextResult:
        """Earliest pending task or unresolved stop in list order."""

        backend = self.backend
        with backend.transaction():
            records = {record.name: record for record in backend.store.list_by_status()}
            passed = backend.history.passed_stops()
            for position, entry in enumerate(backend.order.read_order()):
                if isinstance(entry, StopEntry):
                    if entry.stop_id in passed:
                        continue
                    self._append(
                        HistoryAction.STOP_REACHED,
                        stop=entry.stop_id,
                        details={"message": entry.message} if entry.message else None,
                    )
                    return NextResult(kind="stop", stop=entry, position=position)
                record = records.get(entry.name)
                if record is not None and record.status == TaskStatus.PENDING:
                    return NextResult(
                        kind="task",
                        task=_summary(record, entry=entry, position=position),
                        position=position,
                    )
        return NextResult(kind="none")

    def start(self, name: str) -> TaskSummary:
        backend = self.backend
        with backend.transaction():
            self._require(name)
            if backend.gate is not None:
                backend.gate.ensure_can_start()
            entry = backend.order.get_metadata(name)
            now = self.clock()
            record = backend.store.set_status(
                name,
                from_status=TaskStatus.PENDING,
                to_status=TaskStatus.IN_PROGRESS,
                at=now,
            )
            self._append(
                HistoryAction.START,
                task=name,
                details=_tier_details(entry, record),
                at=now,
            )
            if backend.gate is not None:
                backend.gate.mark_started(name)
        logger.info("Task %s started", name)
        return _summary(record, entry=entry, position=self._position(name))

    def done(self, name: str) -> TaskSummary:
        backend = self.backend
        with backend.transaction():
            self._require(name)
            now = self.clock()
            record = backend.store.set_status(
                name,
                from_status=TaskStatus.IN_PROGRESS,
                to_status=TaskStatus.DONE,
                at=now,
            )
            self._append(HistoryAction.DONE, task=name, at=now)
            if backend.gate is not None:
                backend.gate.mark_done(name)
            entry = backend.order.get_metadata(name)
        logger.info("Task %s done", name)
        return _summary(record, entry=entry, position=self._position(name))

    def fail(self, name: str, *, reason: str | None = None) -> TaskSummary:
        backend = self.backend
        with backend.transaction():
            self._require(name)
            now = self.clock()
            record = backend.store.set_status(
                name,
                from_status=TaskStatus.IN_PROGRESS,
                to_status=TaskStatus.FAILED,
                at=now,
            )
            self._append(
                HistoryAction.FAIL,
                task=name,
                details={"reason": reason} if reason else None,
                at=now,
            )
            if backend.gate is not None:
                backend.gate.mark_released(name)
            entry = backend.order.get_metadata(name)
        logger.info("Task %s failed: %s", name, reason or "-")
        return _summary(record, entry=entry, position=self._position(name))

    def escalate(self, name: str, *, reason: str | None = None) -> EscalationResult:
        """Move the task one rung up the ladder and reset it to pending."""

        backend = self.backend
        with backend.transaction():
            record = self._require(name)
            if record.status == TaskStatus.DONE:
                raise InvalidTransitionError(f"Task {name} is done and cannot be escalated.")
            entry = backend.order.get_metadata(name)
            model = entry.model if entry is not None else record.model
            thinking = entry.thinking if entry is not None else record.thinking
            target = next_level(model, thinking)
            if target is None:
                logger.info("Task %s is already at the top of the ladder", name)
                return EscalationResult(
                    name=name,
                    escalated=False,
                    model=model,
                    thinking=thinking,
                    level=level_of(model, thinking),
                    status=record.status,
                    code=ErrorCode.AT_MAX_LEVEL,
                )

            now = self.clock()
            if entry is not None:
                backend.order.update_metadata(name, model=target.model, thinking=target.thinking)
            else:
                backend.order.write_order(
                    [
                        *backend.order.read_order(),
                        TaskEntry(
                            name=name,
                            group=record.group,
                            model=target.model,
                            thinking=target.thinking,
                        ),
                    ],
                )
            backend.store.record_escalation(
                name,
                escalation=EscalationWrite(
                    from_model=model,
                    from_thinking=thinking,
                    to_model=target.model,
                    to_thinking=target.thinking,
                    reason=reason,
                    escalated_at=now,
                ),
            )
            self._append(
                HistoryAction.ESCALATE,
                task=name,
                details={
                    "from_model": model,
                    "from_thinking": thinking,
                    "to_model": target.model,
                    "to_thinking": target.thinking,
                    "from_level": level_of(model, thinking),
                    "to_level": target.level,
                    "reason": reason,
                },
                at=now,
            )
            status = record.status
            reset = status in {TaskStatus.IN_PROGRESS, TaskStatus.FAILED}
            if reset:
                backend.store.set_status(
                    name,
                    from_status=status,
                    to_status=TaskStatus.PENDING,
                    at=now,
                )
                self._append(
                    HistoryAction.RESET,
                    task=name,
                    details={"from_status": status.value},
                    at=now,
                )
                if backend.gate is not None:
                    backend.gate.mark_released(name)
                status = TaskStatus.PENDING
        logger.info(
            "Task %s escalated to %s/%s (level %d)",
            name,
            target.model,
            target.thinking,
            target.level,
        )
        return EscalationResult(
            name=name,
            escalated=True,
            model=target.model,
            thinking=target.thinking,
            level=target.level,
            status=status,
            reset=reset,
        )

    def continue_stop(self, stop_id: str) -> ContinueResult:
        """Resolve a stop; resolving twice is reported, not raised."""

        backend = self.backend
        with backend.transaction():
            stop = backend.order.find_stop(stop_id)
            if stop is None:
                raise TaskNotFoundError(f"Stop not found: {stop_id}")
            if backend.history.is_stop_passed(stop_id):
                return ContinueResult(
                    stop_id=stop_id,
                    continued=False,
                    code=ErrorCode.ALREADY_PASSED,
                )
            self._append(
                HistoryAction.STOP_CONTINUE,
                stop=stop_id,
                details={"message": stop.message} if stop.message else None,
            )
        logger.info("Stop %s continued", stop_id)
        return ContinueResult(stop_id=stop_id, continued=True)

    def verify(self) -> str:
        """Release the task awaiting verification so the next one can start."""

        backend = self.backend
        if backend.gate is None:
            raise InvalidArgsError("Verification gate is not enabled for this backend.")
        with backend.transaction():
            name = backend.gate.verify()
            self._append(HistoryAction.VERIFY, task=name)
        logger.info("Task %s verified", name)
        return name

    def delete(self, name: str) -> None:
        backend = self.backend
        with backend.transaction():
            self._require(name)
            backend.store.delete(name)
            if backend.gate is not None:
                backend.gate.mark_released(name)
            entries = backend.order.read_order()
            remaining = [
                entry
                for entry in entries
                if not (isinstance(entry, TaskEntry) and entry.name == name)
            ]
            if len(remaining) != len(entries):
                backend.order.write_order(remaining)
            self._append(HistoryAction.DELETE, task=name)
        logger.info("Task %s deleted", name)

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[TaskSummary]:
        backend = self.backend
        with backend.transaction():
            records = backend.store.list_by_status(status)
            entries = backend.order.read_order()
        positions: dict[str, tuple[int, TaskEntry]] = {
            entry.name: (position, entry)
            for position, entry in enumerate(entries)
            if isinstance(entry, TaskEntry)
        }
        summaries: list[TaskSummary] = []
        for record in records:
            position, entry = positions.get(record.name, (None, None))
            summaries.append(_summary(record, entry=entry, position=position))
        return sorted(
            summaries,
            key=lambda item: (item.position is None, item.position or 0, item.name),
        )

    def show(self, name: str) -> TaskDetails:
        backend = self.backend
        with backend.transaction():
            record = self._require(name)
            entry = backend.order.get_metadata(name)
            position = backend.order.index_of(name)
            events = backend.history.events_for(name)
        return TaskDetails(
            summary=_summary(record, entry=entry, position=position),
            content=record.content,
            started_at=record.started_at,
            completed_at=record.completed_at,
            events=events,
        )

    def history_events(
        self,
        *,
        task: str | None = None,
        limit: int | None = None,
    ) -> list[HistoryEvent]:
        with self.backend.transaction():
            events = self.backend.history.read_all()
        if task is not None:
            events = [event for event in events if event.task == task]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def stats(self, *, after_task: str | None = None) -> TaskMetricsSnapshot:
        backend = self.backend
        with backend.transaction():
            entries = backend.order.read_order()
            records = backend.store.list_by_status()
            events = backend.history.read_all()
        return build_task_metrics(
            order=entries,
            records=records,
            events=events,
            after_task=after_task,
        )

    def _require(self, name: str) -> TaskRecord:
        record = self.backend.store.find(name)
        if record is None:
            raise TaskNotFoundError(f"Task not found: {name}")
        return record

    def _position(self, name: str) -> int | None:
        return self.backend.order.index_of(name)

    def _append(
        self,
        action: HistoryAction,
        *,
        task: str | None = None,
        stop: str | None = None,
        details: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> HistoryEvent:
        return self.backend.history.append(
            HistoryEvent(
                timestamp=at or self.clock(),
                action=action.value,
                task=task,
                stop=stop,
                details=details or {},
            ),
        )


def _summary(record: TaskRecord, *, entry: TaskEntry | None, position: int | None) -> TaskSummary:
    return TaskSummary(
        name=record.name,
        status=record.status,
        group=entry.group if entry is not None else record.group,
        model=entry.model if entry is not None else record.model,
        thinking=entry.thinking if entry is not None else record.thinking,
        position=position,
    )


def _tier_details(entry: TaskEntry | None, record: TaskRecord) -> dict[str, Any]:
    source = entry if entry is not None else record
    return {"model": source.model, "thinking": source.thinking}


def _position_of(entries: list[OrderEntry], key: str) -> int | None:
    for position, entry in enumerate(entries):
        if isinstance(entry, TaskEntry) and entry.name == key:
            return position
        if isinstance(entry, StopEntry) and entry.stop_id == key:
            return position
    return None


def _entry_label(raw: Any, *, index: int) -> str:
    if isinstance(raw, dict):
        for key in ("name", "stop"):
            value = raw.get(key)
            if isinstance(value, str) and value:
                return value
    return f"#{index}"
