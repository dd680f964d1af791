from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from task_ladder.engine.errors import DuplicateTaskError, ErrorCode, StoreError
from task_ladder.engine.models import EscalationWrite, TaskCreate, TaskStatus
from task_ladder.engine.services import AddTask, TaskEngine
from task_ladder.storage import SqlBackend

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Relational Backend"),
]


def _open(db_path: Path, branch: str = "main") -> SqlBackend:
    backend = SqlBackend(db_path, branch=branch)
    backend.init_schema()
    return backend


def _count(db_path: Path, table: str) -> int:
    with sqlite3.connect(db_path) as connection:
        return int(connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])  # noqa: S608


def test_task_names_are_unique_per_branch_only(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    main = _open(db_path, "main")
    feature = _open(db_path, "feature/x")

    main.store.create(TaskCreate(name="a"))
    feature.store.create(TaskCreate(name="a"))
    with pytest.raises(DuplicateTaskError):
        main.store.create(TaskCreate(name="a"))

    main.store.set_status("a", from_status=TaskStatus.PENDING, to_status=TaskStatus.IN_PROGRESS)
    other = feature.store.find("a")
    assert other is not None
    assert other.status == TaskStatus.PENDING
    main.close()
    feature.close()


def test_order_and_history_are_scoped_by_branch(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    main = _open(db_path, "main")
    feature = _open(db_path, "feature")

    TaskEngine(backend=main).add_task(AddTask(name="a"))

    assert feature.order.read_order() == []
    assert feature.history.read_all() == []
    assert len(main.history.read_all()) == 1
    main.close()
    feature.close()


def test_delete_cascades_escalations_and_sessions(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    backend = _open(db_path)
    backend.store.create(TaskCreate(name="a"))
    backend.store.set_status("a", from_status=TaskStatus.PENDING, to_status=TaskStatus.IN_PROGRESS)
    backend.store.record_escalation(
        "a",
        escalation=EscalationWrite(
            from_model="low",
            from_thinking="low",
            to_model="low",
            to_thinking="mid",
            reason="retry",
            escalated_at=datetime(2026, 10, 19, 9, 0, tzinfo=UTC),
        ),
    )
    assert len(backend.store.list_escalations("a")) == 1
    assert _count(db_path, "sessions") == 1

    backend.store.delete("a")

    assert _count(db_path, "escalations") == 0
    assert _count(db_path, "sessions") == 0
    backend.close()


def test_escalation_updates_tier_columns(tmp_path: Path) -> None:
    backend = _open(tmp_path / "tasks.db")
    engine = TaskEngine(backend=backend)
    engine.add_task(AddTask(name="a"))

    engine.escalate("a", reason="stuck")

    record = backend.store.find("a")
    assert record is not None
    assert (record.model, record.thinking) == ("low", "mid")
    escalations = backend.store.list_escalations("a")
    assert [(item.to_model, item.to_thinking, item.reason) for item in escalations] == [
        ("low", "mid", "stuck"),
    ]
    backend.close()


def test_failed_operation_rolls_back_every_write(tmp_path: Path) -> None:
    backend = _open(tmp_path / "tasks.db")
    engine = TaskEngine(backend=backend)
    engine.add_task(AddTask(name="a"))

    with pytest.raises(RuntimeError, match="boom"), backend.transaction():
        engine.start("a")
        raise RuntimeError("boom")

    record = backend.store.find("a")
    assert record is not None
    assert record.status == TaskStatus.PENDING
    assert [event.action for event in backend.history.read_all()] == ["import"]
    backend.close()


def test_broken_database_file_is_a_store_error(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    db_path.write_text("this is not a sqlite database\n" * 64, encoding="utf-8")
    backend = SqlBackend(db_path, branch="main")

    with pytest.raises(StoreError):
        backend.init_schema()
    backend.close()


def test_corrupt_history_details_are_a_store_error(tmp_path: Path) -> None:
    db_path = tmp_path / "tasks.db"
    backend = _open(db_path)
    TaskEngine(backend=backend).add_task(AddTask(name="a"))
    with sqlite3.connect(db_path) as connection:
        connection.execute("UPDATE history_events SET details_json = '{broken'")

    with pytest.raises(StoreError, match="history event") as excinfo:
        backend.history.read_all()
    assert excinfo.value.code == ErrorCode.STORE_ERROR
    backend.close()
