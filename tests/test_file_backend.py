from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from task_ladder.engine.errors import (
    AwaitingVerificationError,
    InvalidTransitionError,
    StoreError,
)
from task_ladder.engine.models import TaskCreate, TaskStatus
from task_ladder.engine.services import AddTask, TaskEngine
from task_ladder.storage import FileBackend

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Directory Backend"),
]


@pytest.fixture()
def tasks_dir(tmp_path: Path) -> Path:
    return tmp_path / "tasks"


@pytest.fixture()
def gated_engine(tasks_dir: Path, clock) -> TaskEngine:
    backend = FileBackend(tasks_dir, verification_gate=True)
    backend.init_layout()
    engine = TaskEngine(backend=backend, clock=clock)
    engine.import_tasks([{"name": "a"}, {"name": "b"}])
    return engine


def test_init_layout_creates_status_directories(tasks_dir: Path) -> None:
    FileBackend(tasks_dir).init_layout()

    assert sorted(path.name for path in tasks_dir.iterdir() if path.is_dir()) == [
        "done",
        "failed",
        "in_progress",
        "pending",
    ]


def test_task_file_moves_between_status_directories(tasks_dir: Path) -> None:
    backend = FileBackend(tasks_dir)
    backend.init_layout()
    backend.store.create(TaskCreate(name="a", content="# Task a\n"))

    backend.store.set_status("a", from_status=TaskStatus.PENDING, to_status=TaskStatus.IN_PROGRESS)

    assert not (tasks_dir / "pending" / "a.md").exists()
    assert (tasks_dir / "in_progress" / "a.md").read_text("utf-8") == "# Task a\n"


def test_completed_directory_is_read_as_done(tasks_dir: Path) -> None:
    backend = FileBackend(tasks_dir)
    backend.init_layout()
    (tasks_dir / "completed").mkdir()
    (tasks_dir / "completed" / "old.md").write_text("legacy", encoding="utf-8")

    record = backend.store.find("old")

    assert record is not None
    assert record.status == TaskStatus.DONE
    assert [item.name for item in backend.store.list_by_status(TaskStatus.DONE)] == ["old"]


def test_task_in_two_status_directories_is_a_store_error(tasks_dir: Path) -> None:
    backend = FileBackend(tasks_dir)
    backend.init_layout()
    (tasks_dir / "pending" / "a.md").write_text("", encoding="utf-8")
    (tasks_dir / "failed" / "a.md").write_text("", encoding="utf-8")

    with pytest.raises(StoreError, match="several status directories"):
        backend.store.find("a")


def test_start_is_blocked_until_done_task_is_verified(
    gated_engine: TaskEngine,
    tasks_dir: Path,
) -> None:
    gated_engine.start("a")
    with pytest.raises(InvalidTransitionError):
        gated_engine.start("b")

    gated_engine.done("a")
    state = json.loads((tasks_dir / "state.json").read_text("utf-8"))
    assert state == {"current": "a", "status": "done"}
    with pytest.raises(AwaitingVerificationError):
        gated_engine.start("b")

    assert gated_engine.verify() == "a"
    gated_engine.start("b")

    actions = [event.action for event in gated_engine.history_events()]
    assert actions[-2:] == ["verify", "start"]


def test_verify_without_done_task_is_rejected(gated_engine: TaskEngine) -> None:
    with pytest.raises(InvalidTransitionError):
        gated_engine.verify()


def test_failed_task_releases_the_gate(gated_engine: TaskEngine) -> None:
    gated_engine.start("a")
    gated_engine.fail("a", reason="broken")

    summary = gated_engine.start("b")

    assert summary.status == TaskStatus.IN_PROGRESS


def test_escalation_reset_releases_the_gate(gated_engine: TaskEngine) -> None:
    gated_engine.start("a")
    gated_engine.escalate("a")

    assert gated_engine.start("b").status == TaskStatus.IN_PROGRESS


def test_deleting_in_progress_task_releases_the_gate(
    gated_engine: TaskEngine,
    tasks_dir: Path,
) -> None:
    gated_engine.start("a")
    gated_engine.delete("a")

    state = json.loads((tasks_dir / "state.json").read_text("utf-8"))
    assert state == {"current": None, "status": "pending"}
    assert gated_engine.start("b").status == TaskStatus.IN_PROGRESS


def test_deleting_task_awaiting_verification_releases_the_gate(
    gated_engine: TaskEngine,
) -> None:
    gated_engine.start("a")
    gated_engine.done("a")
    gated_engine.delete("a")

    with pytest.raises(InvalidTransitionError, match="No task is awaiting verification"):
        gated_engine.verify()
    assert gated_engine.start("b").status == TaskStatus.IN_PROGRESS


def test_deleting_another_task_keeps_the_gate(gated_engine: TaskEngine) -> None:
    gated_engine.import_tasks([{"name": "c"}])
    gated_engine.start("a")
    gated_engine.delete("b")

    with pytest.raises(InvalidTransitionError, match="still in progress"):
        gated_engine.start("c")


def test_nested_transactions_reuse_the_held_lock(tasks_dir: Path) -> None:
    backend = FileBackend(tasks_dir)
    backend.init_layout()
    engine = TaskEngine(backend=backend)

    with backend.transaction():
        engine.add_task(AddTask(name="a"))

    assert backend.store.find("a") is not None
    assert (tasks_dir / ".lock").exists()
