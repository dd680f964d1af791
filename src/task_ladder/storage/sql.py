"""Relational backend: SQLModel + SQLite tables partitioned by scope (branch)."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, delete, select

from task_ladder.engine.errors import (
    DuplicateTaskError,
    InvalidTransitionError,
    StoreError,
    TaskNotFoundError,
)
from task_ladder.engine.models import (
    TRANSITION_ACTIONS,
    EscalationWrite,
    HistoryEvent,
    OrderEntry,
    StopEntry,
    TaskCreate,
    TaskEntry,
    TaskRecord,
    TaskStatus,
    ensure_transition_allowed,
    validate_task_name,
)
from task_ladder.storage.alembic_runner import upgrade_head
from task_ladder.storage.base import HistoryLog, OrderedTaskList
from task_ladder.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_ladder.storage.sqlmodel_models import (
    EscalationRow,
    HistoryEventRow,
    OrderEntryRow,
    SessionRow,
    TaskRow,
)

logger = logging.getLogger(__name__)

_KIND_TASK = "task"
_KIND_STOP = "stop"


class _SessionScope:
    """Hands out the active transaction session, or a short-lived one."""

    def __init__(self, backend: SqlBackend) -> None:
        self._backend = backend

    @contextmanager
    def session(self) -> Iterator[Session]:
        active = self._backend.active_session
        if active is not None:
            yield active
            return
        with Session(self._backend.engine) as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise StoreError(f"Database operation failed: {error}") from error


class SqlTaskStore:
    """Task store keeping status in a column of the ``tasks`` table."""

    def __init__(self, *, scope: _SessionScope, branch: str) -> None:
        self._scope = scope
        self.branch = branch

    def create(self, task: TaskCreate) -> TaskRecord:
        name = validate_task_name(task.name)
        now = utc_now()
        with self._scope.session() as session:
            if self._get_row(session=session, name=name) is not None:
                raise DuplicateTaskError(f"Task already exists: {name}")
            row = TaskRow(
                branch=self.branch,
                name=name,
                content=task.content,
                task_group=task.group,
                model=task.model,
                thinking=task.thinking,
                status=TaskStatus.PENDING.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                raise DuplicateTaskError(f"Task already exists: {name}") from error
            return _to_record(row)

    def find(self, name: str) -> TaskRecord | None:
        with self._scope.session() as session:
            row = self._get_row(session=session, name=name)
            return _to_record(row) if row is not None else None

    def set_status(
        self,
        name: str,
        *,
        from_status: TaskStatus,
        to_status: TaskStatus,
        at: datetime | None = None,
    ) -> TaskRecord:
        ensure_transition_allowed(from_status, to_status)
        now = to_db_datetime(at or utc_now())
        with self._scope.session() as session:
            row = self._get_row(session=session, name=name)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {name}")
            if TaskStatus.parse(row.status) != from_status:
                raise InvalidTransitionError(
                    f"Task {name} is {row.status}, expected {from_status.value}.",
                )

            values: dict[str, object] = {"status": to_status.value, "updated_at": now}
            if to_status == TaskStatus.IN_PROGRESS:
                values["started_at"] = now
                values["completed_at"] = None
            elif to_status in {TaskStatus.DONE, TaskStatus.FAILED}:
                values["completed_at"] = now
            else:
                values["started_at"] = None
                values["completed_at"] = None

            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == row.id,
                    col(TaskRow.status) == row.status,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    f"Task {name} changed concurrently; please retry the command.",
                )
            session.add(
                SessionRow(
                    task_id=row.id or 0,
                    event=TRANSITION_ACTIONS[to_status].value,
                    timestamp=now,
                ),
            )
            session.flush()
            session.refresh(row)
            return _to_record(row)

    def list_by_status(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        with self._scope.session() as session:
            statement = (
                select(TaskRow).where(TaskRow.branch == self.branch).order_by(col(TaskRow.id).asc())
            )
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
            return [_to_record(row) for row in rows]

    def record_escalation(self, name: str, *, escalation: EscalationWrite) -> None:
        with self._scope.session() as session:
            row = self._get_row(session=session, name=name)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {name}")
            session.add(
                EscalationRow(
                    task_id=row.id or 0,
                    from_model=escalation.from_model,
                    from_thinking=escalation.from_thinking,
                    to_model=escalation.to_model,
                    to_thinking=escalation.to_thinking,
                    reason=escalation.reason,
                    escalated_at=to_db_datetime(escalation.escalated_at),
                ),
            )
            row.model = escalation.to_model
            row.thinking = escalation.to_thinking
            row.updated_at = to_db_datetime(escalation.escalated_at)
            session.add(row)
            session.flush()

    def list_escalations(self, name: str) -> list[EscalationWrite]:
        with self._scope.session() as session:
            row = self._get_row(session=session, name=name)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {name}")
            rows = session.exec(
                select(EscalationRow)
                .where(EscalationRow.task_id == row.id)
                .order_by(col(EscalationRow.id).asc()),
            ).all()
            return [
                EscalationWrite(
                    from_model=item.from_model,
                    from_thinking=item.from_thinking,
                    to_model=item.to_model,
                    to_thinking=item.to_thinking,
                    reason=item.reason,
                    escalated_at=to_utc_aware_datetime(item.escalated_at),
                )
                for item in rows
            ]

    def delete(self, name: str) -> None:
        with self._scope.session() as session:
            row = self._get_row(session=session, name=name)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {name}")
            # escalations and sessions rows go with it through ON DELETE CASCADE.
            session.exec(delete(TaskRow).where(col(TaskRow.id) == row.id))
            session.flush()

    def _get_row(self, *, session: Session, name: str) -> TaskRow | None:
        return session.exec(
            select(TaskRow).where(TaskRow.branch == self.branch, TaskRow.name == name),
        ).one_or_none()


class SqlOrderList(OrderedTaskList):
    """Ordered task list kept as position-indexed rows per branch."""

    def __init__(self, *, scope: _SessionScope, branch: str) -> None:
        self._scope = scope
        self.branch = branch

    def read_order(self) -> list[OrderEntry]:
        with self._scope.session() as session:
            rows = session.exec(
                select(OrderEntryRow)
                .where(OrderEntryRow.branch == self.branch)
                .order_by(col(OrderEntryRow.position).asc()),
            ).all()
            return [_to_order_entry(row) for row in rows]

    def write_order(self, entries: list[OrderEntry]) -> None:
        with self._scope.session() as session:
            session.exec(delete(OrderEntryRow).where(col(OrderEntryRow.branch) == self.branch))
            for position, entry in enumerate(entries):
                session.add(_to_order_row(entry, branch=self.branch, position=position))
            session.flush()


class SqlHistoryLog(HistoryLog):
    """History log stored in ``history_events``; rows are never updated or deleted."""

    def __init__(self, *, scope: _SessionScope, branch: str) -> None:
        self._scope = scope
        self.branch = branch

    def append(self, event: HistoryEvent) -> HistoryEvent:
        with self._scope.session() as session:
            session.add(
                HistoryEventRow(
                    branch=self.branch,
                    action=event.action,
                    task=event.task,
                    stop=event.stop,
                    details_json=(
                        json.dumps(event.details, ensure_ascii=False, sort_keys=True)
                        if event.details
                        else None
                    ),
                    created_at=to_db_datetime(event.timestamp),
                ),
            )
            session.flush()
        return event

    def read_all(self) -> list[HistoryEvent]:
        with self._scope.session() as session:
            rows = session.exec(
                select(HistoryEventRow)
                .where(HistoryEventRow.branch == self.branch)
                .order_by(col(HistoryEventRow.id).asc()),
            ).all()
            events: list[HistoryEvent] = []
            for row in rows:
                details = {}
                if row.details_json:
                    try:
                        parsed = json.loads(row.details_json)
                    except json.JSONDecodeError as error:
                        raise StoreError(
                            f"Invalid details in history event {row.id}: {error.msg}",
                        ) from error
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    HistoryEvent(
                        timestamp=to_utc_aware_datetime(row.created_at),
                        action=row.action,
                        task=row.task,
                        stop=row.stop,
                        details=details,
                    ),
                )
            return events


class SqlBackend:
    """Backend bundle over one SQLite database, scoped to one branch."""

    gate = None

    def __init__(self, db_path: Path, *, branch: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.branch = branch
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.active_session: Session | None = None
        scope = _SessionScope(self)
        self.store = SqlTaskStore(scope=scope, branch=branch)
        self.order = SqlOrderList(scope=scope, branch=branch)
        self.history = SqlHistoryLog(scope=scope, branch=branch)

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StoreError(f"Cannot migrate database {self.db_path}: {error}") from error
        logger.debug("Relational backend ready at %s (branch=%s)", self.db_path, self.branch)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Status change, session/escalation rows and history append commit together."""

        if self.active_session is not None:
            yield
            return
        with Session(self.engine) as session:
            self.active_session = session
            try:
                yield
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise StoreError(f"Database operation failed: {error}") from error
            except BaseException:
                session.rollback()
                raise
            finally:
                self.active_session = None

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()


def _to_record(row: TaskRow) -> TaskRecord:
    return TaskRecord(
        name=row.name,
        status=TaskStatus.parse(row.status),
        content=row.content,
        group=row.task_group,
        model=row.model,
        thinking=row.thinking,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_order_entry(row: OrderEntryRow) -> OrderEntry:
    if row.kind == _KIND_STOP:
        return StopEntry(stop_id=row.name, message=row.message)
    return TaskEntry(name=row.name, group=row.task_group, model=row.model, thinking=row.thinking)


def _to_order_row(entry: OrderEntry, *, branch: str, position: int) -> OrderEntryRow:
    if isinstance(entry, StopEntry):
        return OrderEntryRow(
            branch=branch,
            position=position,
            kind=_KIND_STOP,
            name=entry.stop_id,
            message=entry.message,
        )
    return OrderEntryRow(
        branch=branch,
        position=position,
        kind=_KIND_TASK,
        name=entry.name,
        task_group=entry.group,
        model=entry.model,
        thinking=entry.thinking,
    )
