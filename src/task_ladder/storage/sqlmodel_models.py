"""SQLModel ORM tables for the relational backend."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("branch", "name", name="uq_tasks_branch_name"),
        Index("idx_tasks_branch_status", "branch", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    branch: str = Field(index=True)
    name: str
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    task_group: str | None = None
    model: str | None = None
    thinking: str | None = None
    status: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class EscalationRow(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_model: str | None = None
    from_thinking: str | None = None
    to_model: str
    to_thinking: str
    reason: str | None = Field(default=None, sa_column=Column(Text))
    escalated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionRow(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_sessions_task_time", "task_id", "timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event: str
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrderEntryRow(SQLModel, table=True):
    __tablename__ = "order_entries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("branch", "position", name="uq_order_entries_branch_position"),
    )

    id: int | None = Field(default=None, primary_key=True)
    branch: str = Field(index=True)
    position: int
    kind: str
    name: str
    task_group: str | None = None
    model: str | None = None
    thinking: str | None = None
    message: str | None = Field(default=None, sa_column=Column(Text))


class HistoryEventRow(SQLModel, table=True):
    __tablename__ = "history_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_history_events_branch_id", "branch", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    branch: str
    action: str = Field(index=True)
    task: str | None = Field(default=None, index=True)
    stop: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
