"""CLI entrypoint for task-ladder."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from task_ladder import __version__
from task_ladder.engine.controllers import (
    AddTaskCommand,
    BackendOptions,
    ContinueStopCommand,
    HistoryCommand,
    ImportTasksCommand,
    ListTasksCommand,
    StatsCommand,
    TaskCliController,
    TaskCommand,
    TaskReasonCommand,
)
from task_ladder.engine.errors import ErrorCode, TaskLadderError

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="task-ladder")
@click.option(
    "--backend",
    type=click.Choice(["files", "sql"], case_sensitive=False),
    default=None,
    help="Persistence backend. Defaults to TASK_LADDER_BACKEND or `files`.",
)
@click.option(
    "--tasks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Tasks directory for the files backend.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--scope",
    default=None,
    help="Scope (branch) for the sql backend. Defaults to the current git branch.",
)
@click.option(
    "--verification-gate/--no-verification-gate",
    default=None,
    help="Require `verify` after each done task before the next start (files backend).",
)
@click.pass_context
def task_ladder(  # noqa: PLR0913
    ctx: click.Context,
    backend: str | None,
    tasks_dir: Path | None,
    db_path: Path | None,
    scope: str | None,
    verification_gate: bool | None,
) -> None:
    """Task lifecycle and escalation engine.

    Every command prints exactly one JSON object on stdout.
    """

    ctx.obj = BackendOptions(
        backend=backend,
        tasks_dir=tasks_dir,
        db_path=db_path,
        scope=scope,
        verification_gate=verification_gate,
    )


@task_ladder.command("add")
@click.argument("name")
@click.option("--content", default="", help="Task body stored with the task.")
@click.option("--group", default=None, help="Optional task group.")
@click.option("--model", default=None, help="Model tier. Defaults to the first ladder rung.")
@click.option("--thinking", default=None, help="Thinking tier. Defaults to the first ladder rung.")
@click.option("--after", default=None, help="Insert after this task or stop id.")
@click.pass_obj
def add(  # noqa: PLR0913
    options: BackendOptions,
    name: str,
    content: str,
    group: str | None,
    model: str | None,
    thinking: str | None,
    after: str | None,
) -> None:
    """Add one pending task to the ordered list."""

    _run(
        lambda: TASK_CONTROLLER.add(
            AddTaskCommand(
                options=options,
                name=name,
                content=content,
                group=group,
                model=model,
                thinking=thinking,
                after=after,
            ),
        ),
    )


@task_ladder.command("import")
@click.argument("source", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def import_tasks(options: BackendOptions, source: Path | None) -> None:
    """Import task and stop entries.

    With a FILE (`{"tasks": [...]}`) the entries are appended to the ordered list.
    Without it, tasks already listed in the ordered list get store records.
    """

    _run(
        lambda: TASK_CONTROLLER.import_tasks(
            ImportTasksCommand(options=options, source_path=source),
        ),
    )


@task_ladder.command("next")
@click.pass_obj
def next_entry(options: BackendOptions) -> None:
    """Show the next pending task or unresolved stop."""

    _run(lambda: TASK_CONTROLLER.next_entry(options))


@task_ladder.command("start")
@click.argument("name")
@click.pass_obj
def start(options: BackendOptions, name: str) -> None:
    """Move a pending task to in_progress."""

    _run(lambda: TASK_CONTROLLER.start(TaskCommand(options=options, name=name)))


@task_ladder.command("done")
@click.argument("name")
@click.pass_obj
def done(options: BackendOptions, name: str) -> None:
    """Mark an in_progress task as done."""

    _run(lambda: TASK_CONTROLLER.done(TaskCommand(options=options, name=name)))


@task_ladder.command("fail")
@click.argument("name")
@click.argument("reason", required=False)
@click.pass_obj
def fail(options: BackendOptions, name: str, reason: str | None) -> None:
    """Mark an in_progress task as failed."""

    _run(
        lambda: TASK_CONTROLLER.fail(
            TaskReasonCommand(options=options, name=name, reason=reason),
        ),
    )


@task_ladder.command("escalate")
@click.argument("name")
@click.argument("reason", required=False)
@click.pass_obj
def escalate(options: BackendOptions, name: str, reason: str | None) -> None:
    """Move a task one rung up the escalation ladder."""

    _run(
        lambda: TASK_CONTROLLER.escalate(
            TaskReasonCommand(options=options, name=name, reason=reason),
        ),
    )


@task_ladder.command("continue")
@click.argument("stop_id")
@click.pass_obj
def continue_stop(options: BackendOptions, stop_id: str) -> None:
    """Resolve a stop so progression can move past it."""

    _run(
        lambda: TASK_CONTROLLER.continue_stop(
            ContinueStopCommand(options=options, stop_id=stop_id),
        ),
    )


@task_ladder.command("verify")
@click.pass_obj
def verify(options: BackendOptions) -> None:
    """Confirm the done task so the next one can start."""

    _run(lambda: TASK_CONTROLLER.verify(options))


@task_ladder.command("delete")
@click.argument("name")
@click.pass_obj
def delete(options: BackendOptions, name: str) -> None:
    """Remove a task from the store and the ordered list."""

    _run(lambda: TASK_CONTROLLER.delete(TaskCommand(options=options, name=name)))


@task_ladder.command("list")
@click.option(
    "--status",
    type=click.Choice(["pending", "in_progress", "done", "completed", "failed"]),
    default=None,
    help="Status filter.",
)
@click.pass_obj
def list_tasks(options: BackendOptions, status: str | None) -> None:
    """List tasks with their status and tier."""

    _run(lambda: TASK_CONTROLLER.list_tasks(ListTasksCommand(options=options, status=status)))


@task_ladder.command("show")
@click.argument("name")
@click.pass_obj
def show(options: BackendOptions, name: str) -> None:
    """Show one task with its content and history."""

    _run(lambda: TASK_CONTROLLER.show(TaskCommand(options=options, name=name)))


@task_ladder.command("history")
@click.option("--task", "task_name", default=None, help="Only events of this task.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Latest N events.")
@click.pass_obj
def history(options: BackendOptions, task_name: str | None, limit: int | None) -> None:
    """Show history events, oldest first."""

    _run(
        lambda: TASK_CONTROLLER.history(
            HistoryCommand(options=options, task=task_name, limit=limit),
        ),
    )


@task_ladder.command("stats")
@click.option("--after", default=None, help="Count tasks to the next stop after this task.")
@click.pass_obj
def stats(options: BackendOptions, after: str | None) -> None:
    """Show counts, timing, escalations and ETAs."""

    _run(lambda: TASK_CONTROLLER.stats(StatsCommand(options=options, after=after)))


def _run(action: Callable[[], dict[str, Any]]) -> None:
    try:
        data = action()
    except TaskLadderError as error:
        _emit_failure(error.message, error.code)
    else:
        _emit({"success": True, "data": data})


def _emit_failure(message: str, code: ErrorCode) -> None:
    _emit({"success": False, "error": message, "code": code.value})
    sys.exit(1)


def _emit(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False))


if __name__ == "__main__":  # pragma: no cover
    task_ladder()
