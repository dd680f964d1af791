"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from task_ladder.engine.services import TaskEngine
from task_ladder.storage import FileBackend, SqlBackend, TaskBackend

FIXED_START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: datetime = FIXED_START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def open_backend(kind: str, root: Path, *, branch: str = "main") -> FileBackend | SqlBackend:
    if kind == "files":
        backend = FileBackend(root / "tasks")
        backend.init_layout()
        return backend
    backend = SqlBackend(root / "tasks.db", branch=branch)
    backend.init_schema()
    return backend


@pytest.fixture(params=["files", "sql"])
def backend_kind(request) -> str:
    return request.param


@pytest.fixture()
def backend(backend_kind: str, tmp_path: Path) -> Iterator[TaskBackend]:
    opened = open_backend(backend_kind, tmp_path)
    yield opened
    opened.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine(backend: TaskBackend, clock: FakeClock) -> TaskEngine:
    return TaskEngine(backend=backend, clock=clock)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in (
        "TASK_LADDER_BACKEND",
        "TASK_LADDER_TASKS_DIR",
        "TASK_LADDER_DB_PATH",
        "TASK_LADDER_SCOPE",
        "TASK_LADDER_SQLITE_BUSY_TIMEOUT_MS",
        "TASK_LADDER_VERIFICATION_GATE",
        "TASK_LADDER_DEFAULT_MODEL",
        "TASK_LADDER_DEFAULT_THINKING",
        "TASK_LADDER_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
