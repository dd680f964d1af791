"""Derived metrics: counts, elapsed time, slowest tasks, escalations and ETAs."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from task_ladder.engine.errors import TaskNotFoundError
from task_ladder.engine.models import (
    HistoryAction,
    HistoryEvent,
    OrderEntry,
    StopEntry,
    TaskEntry,
    TaskRecord,
    TaskStatus,
)

logger = logging.getLogger(__name__)

SLOWEST_TASKS_LIMIT = 5
TIMESTAMP_TOLERANCE_SECONDS = 1.0
_TERMINAL_STATUSES = {TaskStatus.DONE, TaskStatus.FAILED}
_COMPLETION_ACTIONS = {HistoryAction.DONE.value, HistoryAction.FAIL.value}


@dataclass(slots=True)
class TaskTiming:
    """Elapsed time of one completed or failed task."""

    name: str
    status: TaskStatus
    elapsed_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass(slots=True)
class EscalationCount:
    """Number of escalations between two ladder rungs."""

    from_model: str | None
    from_thinking: str | None
    to_model: str | None
    to_thinking: str | None
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": f"{self.from_model}/{self.from_thinking}",
            "to": f"{self.to_model}/{self.to_thinking}",
            "count": self.count,
        }


@dataclass(slots=True)
class TaskMetricsSnapshot:
    """Aggregated metrics used by the stats command."""

    status_counts: dict[str, int]
    total_tasks: int
    timed_tasks: int
    total_elapsed_seconds: float
    average_task_seconds: float
    slowest_tasks: list[TaskTiming]
    escalations: list[EscalationCount]
    escalation_total: int
    next_stop: str | None
    tasks_to_next_stop: int
    remaining_tasks: int
    eta_to_stop_seconds: float
    eta_to_completion_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.status_counts),
            "total": self.total_tasks,
            "timed_tasks": self.timed_tasks,
            "total_elapsed_seconds": round(self.total_elapsed_seconds, 3),
            "average_task_seconds": round(self.average_task_seconds, 3),
            "slowest_tasks": [timing.to_dict() for timing in self.slowest_tasks],
            "escalations": {
                "total": self.escalation_total,
                "breakdown": [item.to_dict() for item in self.escalations],
            },
            "next_stop": self.next_stop,
            "tasks_to_next_stop": self.tasks_to_next_stop,
            "remaining_tasks": self.remaining_tasks,
            "eta_to_stop_seconds": round(self.eta_to_stop_seconds, 3),
            "eta_to_completion_seconds": round(self.eta_to_completion_seconds, 3),
        }


def find_most_recent_start(
    events: list[HistoryEvent],
    task: str,
    *,
    before: int | None = None,
) -> datetime | None:
    """Scan backward for the latest ``start`` event of ``task``.

    ``before`` limits the scan to events preceding that index, so the start
    paired with a given completion event is found even after retries.
    """

    upper = len(events) if before is None else before
    for index in range(upper - 1, -1, -1):
        event = events[index]
        if event.action == HistoryAction.START.value and event.task == task:
            return event.timestamp
    return None


def elapsed_seconds(
    task: str,
    *,
    events: list[HistoryEvent],
    record: TaskRecord | None = None,
) -> float:
    """Completion timestamp minus the most recent start; 0 without a start.

    The history log is the source of truth. Store timestamp columns fill in
    when the history lacks an event and are otherwise only cross-checked.
    """

    completion_index: int | None = None
    for index in range(len(events) - 1, -1, -1):
        event = events[index]
        if event.task == task and event.action in _COMPLETION_ACTIONS:
            completion_index = index
            break

    history_end = events[completion_index].timestamp if completion_index is not None else None
    history_start = find_most_recent_start(events, task, before=completion_index)

    store_start = record.started_at if record is not None else None
    store_end = record.completed_at if record is not None else None
    _check_agreement(task, label="start", history=history_start, store=store_start)
    _check_agreement(task, label="completion", history=history_end, store=store_end)

    start = history_start or store_start
    end = history_end or store_end
    if start is None or end is None:
        return 0.0
    return max(0.0, (_as_utc(end) - _as_utc(start)).total_seconds())


def tasks_to_next_stop(
    *,
    order: list[OrderEntry],
    statuses: dict[str, TaskStatus],
    passed_stops: set[str],
    after_task: str | None = None,
) -> tuple[int, str | None]:
    """Count pending tasks after ``after_task`` up to the next unresolved stop."""

    start = 0
    if after_task is not None:
        for index, entry in enumerate(order):
            if isinstance(entry, TaskEntry) and entry.name == after_task:
                start = index + 1
                break
        else:
            raise TaskNotFoundError(f"Task not found in ordered list: {after_task}")

    count = 0
    for entry in order[start:]:
        if isinstance(entry, StopEntry):
            if entry.stop_id in passed_stops:
                continue
            return count, entry.stop_id
        if statuses.get(entry.name) == TaskStatus.PENDING:
            count += 1
    return count, None


def build_task_metrics(
    *,
    order: list[OrderEntry],
    records: list[TaskRecord],
    events: list[HistoryEvent],
    after_task: str | None = None,
) -> TaskMetricsSnapshot:
    """Build one metrics snapshot from store records and the full history."""

    status_counts = Counter[str]()
    for record in records:
        status_counts[record.status.value] += 1
    statuses = {record.name: record.status for record in records}
    by_name = {record.name: record for record in records}

    timings = _collect_timings(records=by_name, events=events)
    total_elapsed = sum(timing.elapsed_seconds for timing in timings)
    average = total_elapsed / len(timings) if timings else 0.0
    slowest = sorted(timings, key=lambda timing: timing.elapsed_seconds, reverse=True)

    escalation_counter = Counter[tuple[str | None, str | None, str | None, str | None]]()
    passed_stops: set[str] = set()
    for event in events:
        if event.action == HistoryAction.ESCALATE.value:
            escalation_counter[
                (
                    event.details.get("from_model"),
                    event.details.get("from_thinking"),
                    event.details.get("to_model"),
                    event.details.get("to_thinking"),
                )
            ] += 1
        elif event.action == HistoryAction.STOP_CONTINUE.value and event.stop is not None:
            passed_stops.add(event.stop)

    to_stop, next_stop = tasks_to_next_stop(
        order=order,
        statuses=statuses,
        passed_stops=passed_stops,
        after_task=after_task,
    )
    remaining = sum(
        1
        for entry in order
        if isinstance(entry, TaskEntry) and statuses.get(entry.name) == TaskStatus.PENDING
    )

    return TaskMetricsSnapshot(
        status_counts={status.value: status_counts.get(status.value, 0) for status in TaskStatus},
        total_tasks=len(records),
        timed_tasks=len(timings),
        total_elapsed_seconds=total_elapsed,
        average_task_seconds=average,
        slowest_tasks=slowest[:SLOWEST_TASKS_LIMIT],
        escalations=[
            EscalationCount(
                from_model=from_model,
                from_thinking=from_thinking,
                to_model=to_model,
                to_thinking=to_thinking,
                count=count,
            )
            for (from_model, from_thinking, to_model, to_thinking), count in (
                escalation_counter.most_common()
            )
        ],
        escalation_total=sum(escalation_counter.values()),
        next_stop=next_stop,
        tasks_to_next_stop=to_stop,
        remaining_tasks=remaining,
        eta_to_stop_seconds=to_stop * average,
        eta_to_completion_seconds=remaining * average,
    )


def _collect_timings(
    *,
    records: dict[str, TaskRecord],
    events: list[HistoryEvent],
) -> list[TaskTiming]:
    # Ordered by each task's last completion event so equal durations keep history order.
    last_completion: dict[str, int] = {}
    for index, event in enumerate(events):
        if event.task is not None and event.action in _COMPLETION_ACTIONS:
            last_completion[event.task] = index

    ordered_names = sorted(
        (name for name, record in records.items() if record.status in _TERMINAL_STATUSES),
        key=lambda name: last_completion.get(name, len(events)),
    )

    timings: list[TaskTiming] = []
    for name in ordered_names:
        record = records[name]
        has_start = (
            find_most_recent_start(events, name, before=last_completion.get(name)) is not None
            or record.started_at is not None
        )
        if not has_start:
            continue
        timings.append(
            TaskTiming(
                name=name,
                status=record.status,
                elapsed_seconds=elapsed_seconds(name, events=events, record=record),
            ),
        )
    return timings


def _check_agreement(
    task: str,
    *,
    label: str,
    history: datetime | None,
    store: datetime | None,
) -> None:
    if history is None or store is None:
        return
    drift = abs((_as_utc(history) - _as_utc(store)).total_seconds())
    if drift > TIMESTAMP_TOLERANCE_SECONDS:
        logger.warning(
            "History and store disagree on %s time of %s by %.1fs; using history",
            label,
            task,
            drift,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
