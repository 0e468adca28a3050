"""SQLModel ORM tables for conversation and planning state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Chat(SQLModel, table=True):
    __tablename__ = "chats"  # type: ignore[bad-override]

    chat_id: str = Field(primary_key=True)
    name: str = Field(default="")
    project_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubChat(SQLModel, table=True):
    __tablename__ = "sub_chats"  # type: ignore[bad-override]

    sub_chat_id: str = Field(primary_key=True)
    chat_id: str = Field(
        sa_column=Column(
            ForeignKey("chats.chat_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    mode: str = Field(default="agent")
    backend_id: str | None = None
    session_id: str | None = None
    messages_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Goal(SQLModel, table=True):
    __tablename__ = "goals"  # type: ignore[bad-override]

    goal_id: str = Field(primary_key=True)
    chat_id: str | None = Field(default=None, index=True)
    name: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: str = Field(default="medium")
    status: str = Field(default="todo", index=True)
    workspace_path: str | None = None
    relevant_files_json: str | None = Field(default=None, sa_column=Column(Text))
    context: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_goal_status", "goal_id", "status"),)

    task_id: str = Field(primary_key=True)
    goal_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("goals.goal_id", ondelete="CASCADE"), nullable=True),
    )
    chat_id: str | None = Field(default=None, index=True)
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default="todo", index=True)
    priority: str = Field(default="medium")
    time_frame: str = Field(default="this_week")
    due_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    summary: str | None = Field(default=None, sa_column=Column(Text))
    context: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    workspace_path: str | None = None
    relevant_files_json: str | None = Field(default=None, sa_column=Column(Text))
    tools_json: str | None = Field(default=None, sa_column=Column(Text))
    acceptance_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    created_by: str = Field(default="user")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Memory(SQLModel, table=True):
    __tablename__ = "memories"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("goal_id", "key", name="uq_memories_goal_key"),)

    id: int | None = Field(default=None, primary_key=True)
    goal_id: str = Field(
        sa_column=Column(
            ForeignKey("goals.goal_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    key: str
    value: str = Field(sa_column=Column(Text, nullable=False))
    source: str = Field(default="agent")
    task_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
