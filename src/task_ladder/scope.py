"""Scope provider: the partition key for the relational backend (current git branch)."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from task_ladder.engine.errors import ScopeUnavailableError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10


def resolve_scope(override: str | None = None, *, cwd: Path | None = None) -> str:
    """Return the explicit scope, or the current git branch name."""

    if override is not None and override.strip():
        return override.strip()
    return current_git_branch(cwd=cwd)


def current_git_branch(*, cwd: Path | None = None) -> str:
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],  # noqa: S607
            check=False,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired as error:
        raise ScopeUnavailableError("Timed out while reading the current git branch.") from error
    except OSError as error:
        raise ScopeUnavailableError(f"Cannot run git to resolve scope: {error}") from error

    branch = completed.stdout.strip()
    if completed.returncode != 0 or not branch:
        detail = completed.stderr.strip() or "git rev-parse returned no branch"
        raise ScopeUnavailableError(f"Cannot resolve current git branch: {detail}")
    if branch == "HEAD":
        raise ScopeUnavailableError(
            "Detached HEAD has no branch name; set TASK_LADDER_SCOPE or pass --scope.",
        )
    logger.debug("Resolved scope from git branch: %s", branch)
    return branch
