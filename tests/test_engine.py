from __future__ import annotations

import allure
import pytest

from task_ladder.engine.errors import (
    DuplicateTaskError,
    ErrorCode,
    InvalidArgsError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from task_ladder.engine.ladder import MAX_LEVEL
from task_ladder.engine.metrics import elapsed_seconds
from task_ladder.engine.models import HistoryAction, StopEntry, TaskEntry, TaskStatus
from task_ladder.engine.services import AddTask, TaskEngine
from task_ladder.storage import TaskBackend

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Task Engine"),
]


def _actions(engine: TaskEngine, task: str | None = None) -> list[str]:
    return [event.action for event in engine.history_events(task=task)]


def _run_to_done(engine: TaskEngine, name: str) -> None:
    engine.start(name)
    engine.done(name)


def test_add_task_defaults_to_first_rung(engine: TaskEngine) -> None:
    summary = engine.add_task(AddTask(name="a", content="body", group="setup"))

    assert summary.status == TaskStatus.PENDING
    assert (summary.model, summary.thinking, summary.level) == ("low", "low", 1)
    assert summary.position == 0
    assert _actions(engine) == [HistoryAction.IMPORT.value]


def test_add_task_after_anchor(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))
    engine.add_task(AddTask(name="c"))

    summary = engine.add_task(AddTask(name="b", after="a"))

    assert summary.position == 1
    assert [item.name for item in engine.list_tasks()] == ["a", "b", "c"]


def test_add_task_after_unknown_anchor_fails(engine: TaskEngine) -> None:
    with pytest.raises(TaskNotFoundError):
        engine.add_task(AddTask(name="b", after="nope"))
    assert engine.list_tasks() == []


def test_add_duplicate_task_fails(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))

    with pytest.raises(DuplicateTaskError):
        engine.add_task(AddTask(name="a"))


def test_next_returns_stop_before_later_task_until_continued(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "a"}, {"name": "b"}, {"stop": "checkpoint"}, {"name": "c"}])

    first = engine.next_entry()
    assert first.kind == "task"
    assert first.task is not None
    assert first.task.name == "a"

    _run_to_done(engine, "a")
    _run_to_done(engine, "b")

    reached = engine.next_entry()
    assert reached.kind == "stop"
    assert reached.stop == StopEntry(stop_id="checkpoint")
    assert reached.position == 2

    again = engine.next_entry()
    assert again.kind == "stop"
    assert _actions(engine).count(HistoryAction.STOP_REACHED.value) == 2

    continued = engine.continue_stop("checkpoint")
    assert continued.continued is True
    assert continued.code is None

    after = engine.next_entry()
    assert after.kind == "task"
    assert after.task is not None
    assert after.task.name == "c"


def test_continue_twice_reports_already_passed(engine: TaskEngine) -> None:
    engine.import_tasks([{"stop": "checkpoint"}])
    engine.continue_stop("checkpoint")

    result = engine.continue_stop("checkpoint")

    assert result.continued is False
    assert result.code == ErrorCode.ALREADY_PASSED
    assert _actions(engine).count(HistoryAction.STOP_CONTINUE.value) == 1


def test_continue_unknown_stop_fails(engine: TaskEngine) -> None:
    with pytest.raises(TaskNotFoundError):
        engine.continue_stop("nope")


def test_next_skips_in_progress_and_failed_tasks(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "a"}, {"name": "b"}, {"name": "c"}])
    engine.start("a")
    engine.start("b")
    engine.fail("b", reason="broken")

    result = engine.next_entry()

    assert result.task is not None
    assert result.task.name == "c"


def test_next_when_everything_is_resolved(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "a"}, {"stop": "s"}])
    _run_to_done(engine, "a")
    engine.continue_stop("s")

    assert engine.next_entry().kind == "none"


def test_elapsed_time_of_ten_seconds(engine: TaskEngine, clock) -> None:
    engine.add_task(AddTask(name="a"))
    engine.start("a")
    clock.advance(10)
    engine.done("a")

    events = engine.history_events()
    record = engine.backend.store.find("a")
    assert elapsed_seconds("a", events=events, record=record) == 10.0

    snapshot = engine.stats()
    assert snapshot.average_task_seconds == 10.0
    assert snapshot.slowest_tasks[0].name == "a"
    assert snapshot.slowest_tasks[0].elapsed_seconds == 10.0


def test_out_of_order_transitions_leave_status_unchanged(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))

    with pytest.raises(InvalidTransitionError):
        engine.done("a")
    with pytest.raises(InvalidTransitionError):
        engine.fail("a")

    assert engine.show("a").summary.status == TaskStatus.PENDING
    assert _actions(engine, "a") == [HistoryAction.IMPORT.value]


def test_transition_of_unknown_task_fails(engine: TaskEngine) -> None:
    with pytest.raises(TaskNotFoundError):
        engine.start("ghost")


def test_escalate_first_rung_to_second(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a", model="low", thinking="low"))

    result = engine.escalate("a", reason="too hard")

    assert result.escalated is True
    assert (result.model, result.thinking, result.level) == ("low", "mid", 2)
    assert result.to_dict()["max_level"] == MAX_LEVEL
    assert result.status == TaskStatus.PENDING
    assert result.reset is False
    assert engine.backend.order.get_metadata("a") == TaskEntry(
        name="a",
        model="low",
        thinking="mid",
    )
    escalate_event = engine.history_events(task="a")[-1]
    assert escalate_event.action == HistoryAction.ESCALATE.value
    assert escalate_event.details["from_model"] == "low"
    assert escalate_event.details["to_thinking"] == "mid"
    assert escalate_event.details["reason"] == "too hard"


def test_four_escalations_from_level_zero_then_at_max_level(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a", model="custom", thinking="custom"))

    levels = [engine.escalate("a").level for _ in range(4)]
    assert levels == [1, 2, 3, 4]

    events_before = len(engine.history_events())
    order_before = engine.backend.order.read_order()

    capped = engine.escalate("a")

    assert capped.escalated is False
    assert capped.code == ErrorCode.AT_MAX_LEVEL
    assert (capped.model, capped.thinking, capped.level) == ("high", "max", MAX_LEVEL)
    assert len(engine.history_events()) == events_before
    assert engine.backend.order.read_order() == order_before


def test_escalate_failed_task_resets_to_pending(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))
    engine.start("a")
    engine.fail("a", reason="tests red")

    result = engine.escalate("a")

    assert result.reset is True
    assert result.status == TaskStatus.PENDING
    assert engine.show("a").summary.status == TaskStatus.PENDING
    assert _actions(engine, "a")[-2:] == [
        HistoryAction.ESCALATE.value,
        HistoryAction.RESET.value,
    ]
    assert engine.next_entry().task is not None


def test_escalate_in_progress_task_resets_to_pending(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))
    engine.start("a")

    result = engine.escalate("a")

    assert result.reset is True
    assert engine.show("a").summary.status == TaskStatus.PENDING


def test_escalate_done_task_is_rejected(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a"))
    _run_to_done(engine, "a")

    with pytest.raises(InvalidTransitionError):
        engine.escalate("a")


def test_import_collects_per_item_errors(engine: TaskEngine) -> None:
    result = engine.import_tasks(
        [
            {"name": "a", "content": "first"},
            {"name": "a"},
            {"group": "no-name"},
            {"stop": "s"},
            {"stop": "s"},
            {"name": "b", "model": "high", "thinking": "mid"},
        ],
    )

    assert result.imported == ["a", "b"]
    assert result.stops == ["s"]
    assert [error.code for error in result.errors] == [
        ErrorCode.DUPLICATE,
        ErrorCode.INVALID_ARGS,
        ErrorCode.DUPLICATE,
    ]
    assert [error.entry for error in result.errors] == ["a", "#2", "s"]
    order = engine.backend.order.read_order()
    assert [getattr(entry, "name", None) or entry.stop_id for entry in order] == ["a", "s", "b"]
    assert engine.show("a").content == "first"
    assert engine.show("b").summary.level == 3


def test_import_from_order_creates_missing_records(engine: TaskEngine) -> None:
    engine.backend.order.write_order(
        [TaskEntry(name="a"), StopEntry(stop_id="s"), TaskEntry(name="b", group="g")],
    )

    result = engine.import_from_order()

    assert result.imported == ["a", "b"]
    assert result.stops == ["s"]
    assert engine.backend.order.get_metadata("a") == TaskEntry(
        name="a",
        model="low",
        thinking="low",
    )
    assert engine.import_from_order().imported == []


def test_delete_removes_task_from_store_and_order(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "a"}, {"name": "b"}])

    engine.delete("a")

    assert engine.backend.store.find("a") is None
    assert engine.backend.order.read_order() == [TaskEntry(name="b", model="low", thinking="low")]
    assert _actions(engine, "a")[-1] == HistoryAction.DELETE.value
    with pytest.raises(TaskNotFoundError):
        engine.delete("a")


def test_list_tasks_by_status_in_list_order(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "c"}, {"name": "a"}, {"name": "b"}])
    engine.start("a")

    assert [item.name for item in engine.list_tasks()] == ["c", "a", "b"]
    assert [item.name for item in engine.list_tasks(status=TaskStatus.PENDING)] == ["c", "b"]
    assert [item.name for item in engine.list_tasks(status=TaskStatus.IN_PROGRESS)] == ["a"]


def test_show_includes_history(engine: TaskEngine) -> None:
    engine.add_task(AddTask(name="a", content="body"))
    engine.start("a")

    details = engine.show("a")

    assert details.content == "body"
    assert [event.action for event in details.events] == ["import", "start"]
    assert details.to_dict()["status"] == "in_progress"


def test_history_limit_returns_latest_events(engine: TaskEngine) -> None:
    engine.import_tasks([{"name": "a"}, {"name": "b"}])
    engine.start("a")

    latest = engine.history_events(limit=1)

    assert [(event.action, event.task) for event in latest] == [("start", "a")]


def test_verify_without_gate_is_invalid(engine: TaskEngine) -> None:
    with pytest.raises(InvalidArgsError):
        engine.verify()


def test_each_operation_is_one_history_append(backend: TaskBackend, clock) -> None:
    engine = TaskEngine(backend=backend, clock=clock)
    engine.add_task(AddTask(name="a"))
    engine.start("a")
    engine.fail("a")
    engine.escalate("a")
    engine.start("a")
    engine.done("a")

    assert _actions(engine) == [
        "import",
        "start",
        "fail",
        "escalate",
        "reset",
        "start",
        "done",
    ]
