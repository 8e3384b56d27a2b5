"""SQLModel ORM tables for the goal/task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Goal(SQLModel, table=True):
    __tablename__ = "goals"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    why: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    for_who: str = ""
    success_signal: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    priority: str = Field(default="medium", index=True)
    status: str = Field(default="todo", index=True)
    relevant_files_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    workspace_path: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "updated_at"),)

    id: str = Field(primary_key=True)
    goal_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("goals.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    why: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    context: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(default="todo", index=True)
    priority: str = Field(default="medium")
    agent_id: str | None = Field(default=None, index=True)
    acceptance_criteria: str | None = Field(default=None, sa_column=Column(Text))
    relevant_files_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    workspace_path: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_ping_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Memory(SQLModel, table=True):
    __tablename__ = "memories"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_memories_task_time", "task_id", "created_at"),)

    id: str = Field(primary_key=True)
    goal_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("goals.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    key: str = Field(index=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    type: str = Field(default="learning", index=True)
    source: str = "agent"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


metadata = SQLModel.metadata
