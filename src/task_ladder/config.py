"""Runtime configuration for the task engine CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from task_ladder.engine.ladder import ESCALATION_LADDER, first_step

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class BackendKind(str, Enum):
    """Persistence backend selector."""

    FILES = "files"
    SQL = "sql"


@dataclass(slots=True)
class FileBackendSettings:
    """Directory backend settings."""

    tasks_dir: Path = Path(".tasks")
    verification_gate: bool = False


@dataclass(slots=True)
class SqlBackendSettings:
    """Relational backend settings."""

    db_path: Path = Path(".task_ladder.db")
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class LadderDefaults:
    """Tier assigned to tasks added without an explicit model/thinking."""

    model: str = field(default_factory=lambda: first_step().model)
    thinking: str = field(default_factory=lambda: first_step().thinking)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    backend: BackendKind = BackendKind.FILES
    files: FileBackendSettings = field(default_factory=FileBackendSettings)
    sql: SqlBackendSettings = field(default_factory=SqlBackendSettings)
    defaults: LadderDefaults = field(default_factory=LadderDefaults)
    scope: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(  # noqa: PLR0913
        cls,
        *,
        backend: str | None = None,
        tasks_dir: Path | None = None,
        db_path: Path | None = None,
        scope: str | None = None,
        verification_gate: bool | None = None,
    ) -> Settings:
        """Load settings from environment; explicit arguments win over it."""

        step = first_step()
        return cls(
            backend=_parse_backend(backend or os.getenv("TASK_LADDER_BACKEND", "files")),
            files=FileBackendSettings(
                tasks_dir=tasks_dir or Path(os.getenv("TASK_LADDER_TASKS_DIR", ".tasks")),
                verification_gate=(
                    verification_gate
                    if verification_gate is not None
                    else _env_bool("TASK_LADDER_VERIFICATION_GATE", default=False)
                ),
            ),
            sql=SqlBackendSettings(
                db_path=db_path or Path(os.getenv("TASK_LADDER_DB_PATH", ".task_ladder.db")),
                busy_timeout_ms=_env_int("TASK_LADDER_SQLITE_BUSY_TIMEOUT_MS", default=5_000),
            ),
            defaults=LadderDefaults(
                model=os.getenv("TASK_LADDER_DEFAULT_MODEL", step.model),
                thinking=os.getenv("TASK_LADDER_DEFAULT_THINKING", step.thinking),
            ),
            scope=scope or os.getenv("TASK_LADDER_SCOPE") or None,
            log_level=os.getenv("TASK_LADDER_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot work with."""

        if self.sql.busy_timeout_ms <= 0:
            raise ValueError("TASK_LADDER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid TASK_LADDER_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of: {', '.join(sorted(_LOG_LEVELS))}.",
            )
        models = {step.model for step in ESCALATION_LADDER}
        thinking = {step.thinking for step in ESCALATION_LADDER}
        if self.defaults.model not in models:
            raise ValueError(f"Invalid TASK_LADDER_DEFAULT_MODEL: {self.defaults.model!r}")
        if self.defaults.thinking not in thinking:
            raise ValueError(
                f"Invalid TASK_LADDER_DEFAULT_THINKING: {self.defaults.thinking!r}",
            )
        if self.backend == BackendKind.SQL and self.files.verification_gate:
            raise ValueError("The verification gate is only available with the files backend.")


def _parse_backend(value: str) -> BackendKind:
    normalized = value.strip().lower()
    try:
        return BackendKind(normalized)
    except ValueError as error:
        raise ValueError(
            f"Invalid TASK_LADDER_BACKEND: {value!r}. Expected 'files' or 'sql'.",
        ) from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
