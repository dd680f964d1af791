"""Controllers for task engine CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from task_ladder.config import BackendKind, Settings
from task_ladder.engine.errors import InvalidArgsError, ReadError, TaskNotFoundError
from task_ladder.engine.models import TaskStatus
from task_ladder.engine.services import AddTask, TaskEngine
from task_ladder.logging_setup import configure_logging
from task_ladder.scope import resolve_scope
from task_ladder.storage import FileBackend, SqlBackend, TaskBackend
from task_ladder.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendOptions:
    """Global CLI options selecting and locating the backend."""

    backend: str | None = None
    tasks_dir: Path | None = None
    db_path: Path | None = None
    scope: str | None = None
    verification_gate: bool | None = None

    def to_settings(self) -> Settings:
        return Settings.from_env(
            backend=self.backend,
            tasks_dir=self.tasks_dir,
            db_path=self.db_path,
            scope=self.scope,
            verification_gate=self.verification_gate,
        )


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for adding one task."""

    options: BackendOptions
    name: str
    content: str
    group: str | None
    model: str | None
    thinking: str | None
    after: str | None


@dataclass(slots=True)
class ImportTasksCommand:
    """CLI input for bulk import; without a file the ordered list itself is imported."""

    options: BackendOptions
    source_path: Path | None


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task transitions (start, done, delete, show)."""

    options: BackendOptions
    name: str


@dataclass(slots=True)
class TaskReasonCommand:
    """CLI input for fail/escalate with an optional reason."""

    options: BackendOptions
    name: str
    reason: str | None


@dataclass(slots=True)
class ContinueStopCommand:
    """CLI input for continuing past a stop."""

    options: BackendOptions
    stop_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    options: BackendOptions
    status: str | None


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for history listing."""

    options: BackendOptions
    task: str | None
    limit: int | None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for metrics snapshot."""

    options: BackendOptions
    after: str | None


class TaskCliController:
    """Coordinates task command execution; every method returns the JSON ``data`` payload."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock

    def add(self, command: AddTaskCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            summary = engine.add_task(
                AddTask(
                    name=command.name,
                    content=command.content,
                    group=command.group,
                    model=command.model,
                    thinking=command.thinking,
                    after=command.after,
                ),
            )
        return summary.to_dict()

    def import_tasks(self, command: ImportTasksCommand) -> dict[str, Any]:
        raw_entries = (
            _read_import_file(command.source_path) if command.source_path is not None else None
        )
        with self._engine(command.options) as engine:
            if raw_entries is None:
                result = engine.import_from_order()
            else:
                result = engine.import_tasks(raw_entries)
        return result.to_dict()

    def next_entry(self, options: BackendOptions) -> dict[str, Any]:
        with self._engine(options) as engine:
            return engine.next_entry().to_dict()

    def start(self, command: TaskCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.start(command.name).to_dict()

    def done(self, command: TaskCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.done(command.name).to_dict()

    def fail(self, command: TaskReasonCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            payload = engine.fail(command.name, reason=command.reason).to_dict()
        payload["reason"] = command.reason
        return payload

    def escalate(self, command: TaskReasonCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.escalate(command.name, reason=command.reason).to_dict()

    def continue_stop(self, command: ContinueStopCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.continue_stop(command.stop_id).to_dict()

    def verify(self, options: BackendOptions) -> dict[str, Any]:
        with self._engine(options) as engine:
            return {"verified": engine.verify()}

    def delete(self, command: TaskCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            engine.delete(command.name)
        return {"deleted": command.name}

    def list_tasks(self, command: ListTasksCommand) -> dict[str, Any]:
        status = TaskStatus.parse(command.status) if command.status else None
        with self._engine(command.options) as engine:
            summaries = engine.list_tasks(status=status)
        return {
            "status": status.value if status is not None else None,
            "count": len(summaries),
            "tasks": [summary.to_dict() for summary in summaries],
        }

    def show(self, command: TaskCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.show(command.name).to_dict()

    def history(self, command: HistoryCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            events = engine.history_events(task=command.task, limit=command.limit)
        return {"count": len(events), "events": [event.to_dict() for event in events]}

    def stats(self, command: StatsCommand) -> dict[str, Any]:
        with self._engine(command.options) as engine:
            return engine.stats(after_task=command.after).to_dict()

    @contextmanager
    def _engine(self, options: BackendOptions) -> Iterator[TaskEngine]:
        settings = _load_settings(options)
        configure_logging(settings.log_level)
        with _backend(settings) as backend:
            yield TaskEngine(
                backend=backend,
                default_model=settings.defaults.model,
                default_thinking=settings.defaults.thinking,
                clock=self.clock,
            )


def _load_settings(options: BackendOptions) -> Settings:
    try:
        settings = options.to_settings()
        settings.validate()
    except ValueError as error:
        raise InvalidArgsError(str(error)) from error
    return settings


@contextmanager
def _backend(settings: Settings) -> Iterator[TaskBackend]:
    backend: FileBackend | SqlBackend
    if settings.backend == BackendKind.SQL:
        branch = resolve_scope(settings.scope)
        backend = SqlBackend(
            settings.sql.db_path,
            branch=branch,
            busy_timeout_ms=settings.sql.busy_timeout_ms,
        )
        try:
            backend.init_schema()
        except Exception:
            backend.close()
            raise
    else:
        backend = FileBackend(
            settings.files.tasks_dir,
            verification_gate=settings.files.verification_gate,
        )
        backend.init_layout()
    try:
        yield backend
    finally:
        backend.close()


def _read_import_file(path: Path) -> list[Any]:
    try:
        text = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise TaskNotFoundError(f"Import file not found: {path}") from error
    except OSError as error:
        raise ReadError(f"Cannot read import file {path}: {error}") from error
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise InvalidArgsError(f"Import file {path} is not valid JSON: {error}") from error

    entries = payload.get("tasks") if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise InvalidArgsError(
            f"Import file {path} must hold a list or an object with a 'tasks' list.",
        )
    logger.debug("Read %d import entries from %s", len(entries), path)
    return entries
