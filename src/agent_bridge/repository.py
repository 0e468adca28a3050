"""Persistent state repository for conversations, goals, tasks and insights."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import exists, literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, SQLModel, col, select

from agent_bridge.models import (
    PENDING_STATUSES,
    ChatView,
    CreatedBy,
    GoalCreate,
    GoalNotFoundError,
    GoalView,
    InsightSource,
    MemoryView,
    Priority,
    SubChatView,
    TaskCompletionOutcome,
    TaskCompletionWrite,
    TaskCreate,
    TaskNotFoundError,
    TaskView,
    TimeFrame,
    TurnMode,
    WorkStatus,
    calculate_due_date,
)
from agent_bridge.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agent_bridge.storage.sqlmodel_models import Chat, Goal, Memory, SubChat, Task


class StateRepository:
    """State persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create missing tables."""

        SQLModel.metadata.create_all(self.engine)

    # -- conversations -------------------------------------------------

    def ensure_chat(
        self,
        chat_id: str,
        *,
        name: str = "",
        project_path: str | None = None,
    ) -> ChatView:
        """Return chat, creating it on first use."""

        with Session(self.engine) as session:
            row = session.get(Chat, chat_id)
            if row is None:
                now = to_db_datetime(utc_now())
                row = Chat(
                    chat_id=chat_id,
                    name=name,
                    project_path=project_path,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.commit()
                session.refresh(row)
            return ChatView(
                chat_id=row.chat_id,
                name=row.name,
                project_path=row.project_path,
                created_at=to_utc_aware(row.created_at),
            )

    def ensure_sub_chat(
        self,
        sub_chat_id: str,
        *,
        chat_id: str,
        mode: TurnMode = TurnMode.AGENT,
        backend_id: str | None = None,
    ) -> SubChatView:
        """Return sub-chat, creating it (and its chat) on first use.

        Mode and backend of an existing sub-chat follow the latest turn.
        """

        self.ensure_chat(chat_id)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(SubChat, sub_chat_id)
            if row is None:
                row = SubChat(
                    sub_chat_id=sub_chat_id,
                    chat_id=chat_id,
                    mode=mode.value,
                    backend_id=backend_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.mode = mode.value
                if backend_id is not None:
                    row.backend_id = backend_id
                row.updated_at = now
            session.commit()
            session.refresh(row)
            return _to_sub_chat_view(row)

    def get_sub_chat(self, sub_chat_id: str) -> SubChatView | None:
        with Session(self.engine) as session:
            row = session.get(SubChat, sub_chat_id)
            if row is None:
                return None
            return _to_sub_chat_view(row)

    def append_message(self, sub_chat_id: str, message: dict[str, Any]) -> None:
        """Append one message to the sub-chat history."""

        with Session(self.engine) as session:
            row = session.get(SubChat, sub_chat_id)
            if row is None:
                raise LookupError(f"Sub-chat not found: {sub_chat_id}")
            messages = _load_messages(row.messages_json)
            messages.append(message)
            row.messages_json = json.dumps(messages, ensure_ascii=False)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def save_session_id(self, sub_chat_id: str, session_id: str) -> None:
        """Persist backend session id used for native resume."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(SubChat)
                .where(col(SubChat.sub_chat_id) == sub_chat_id)
                .values(session_id=session_id, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    # -- goals ---------------------------------------------------------

    def create_goal(self, payload: GoalCreate) -> GoalView:
        with Session(self.engine) as session:
            row = _new_goal_row(payload)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_goal_view(row)

    def create_goal_with_tasks(
        self,
        goal: GoalCreate,
        tasks: Sequence[TaskCreate],
    ) -> tuple[GoalView, list[TaskView]]:
        """Create a goal and its tasks in one transaction.

        Tasks without their own workspace path inherit the goal's.
        """

        with Session(self.engine) as session:
            goal_row = _new_goal_row(goal)
            session.add(goal_row)
            session.flush()
            task_rows = []
            for task in tasks:
                task_row = _new_task_row(task)
                task_row.goal_id = goal_row.goal_id
                if task_row.workspace_path is None:
                    task_row.workspace_path = goal_row.workspace_path
                if task_row.chat_id is None:
                    task_row.chat_id = goal_row.chat_id
                session.add(task_row)
                task_rows.append(task_row)
            session.commit()
            session.refresh(goal_row)
            for task_row in task_rows:
                session.refresh(task_row)
            return _to_goal_view(goal_row), [_to_task_view(row) for row in task_rows]

    def get_goal(self, goal_id: str) -> GoalView | None:
        with Session(self.engine) as session:
            row = session.get(Goal, goal_id)
            return _to_goal_view(row) if row is not None else None

    def require_goal(self, goal_id: str) -> GoalView:
        goal = self.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(goal_id)
        return goal

    def list_goals(self, *, status: WorkStatus | None = None, limit: int = 50) -> list[GoalView]:
        """List recent goals, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Goal).order_by(col(Goal.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Goal.status == status.value)
            rows = session.exec(statement).all()
        return [_to_goal_view(row) for row in rows]

    def update_goal_status(self, goal_id: str, status: WorkStatus) -> GoalView:
        """Move goal to another status; `done` is terminal."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Goal, goal_id)
            if row is None:
                raise GoalNotFoundError(goal_id)
            if row.status == WorkStatus.DONE.value:
                if status is WorkStatus.DONE:
                    return _to_goal_view(row)
                raise ValueError(f"Goal {goal_id} is done and cannot move to {status.value}")
            row.status = status.value
            row.updated_at = now
            if status is WorkStatus.DONE:
                row.completed_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_goal_view(row)

    # -- tasks ---------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        with Session(self.engine) as session:
            if payload.goal_id is not None and session.get(Goal, payload.goal_id) is None:
                raise GoalNotFoundError(payload.goal_id)
            row = _new_task_row(payload)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        goal_id: str | None = None,
        chat_id: str | None = None,
        status: WorkStatus | None = None,
        limit: int = 200,
    ) -> list[TaskView]:
        """List tasks in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .order_by(col(Task.created_at).asc(), literal_column("tasks.rowid").asc())
                .limit(limit)
            )
            if goal_id is not None:
                statement = statement.where(Task.goal_id == goal_id)
            if chat_id is not None:
                statement = statement.where(Task.chat_id == chat_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def update_task_status(self, task_id: str, status: WorkStatus) -> TaskView:
        """Move an open task to another open status; `complete_task` finishes it."""

        if status is WorkStatus.DONE:
            raise ValueError("Tasks reach done only through complete_task")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            if row.status == WorkStatus.DONE.value:
                raise ValueError(f"Task {task_id} is done and cannot move to {status.value}")
            row.status = status.value
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def complete_task(self, payload: TaskCompletionWrite) -> TaskCompletionOutcome:
        """Mark task done, upsert its insights and settle the goal atomically.

        The goal flips to `done` through one conditional UPDATE evaluated
        against current sibling rows, so concurrent completions of the last
        two pending tasks settle the goal exactly once.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == payload.task_id)
                .values(
                    status=WorkStatus.DONE.value,
                    summary=payload.summary,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(payload.task_id)

            row = session.exec(select(Task).where(Task.task_id == payload.task_id)).one()
            goal_completed = False
            if row.goal_id is not None:
                for key, value in payload.insights.items():
                    self._upsert_memory(
                        session=session,
                        goal_id=row.goal_id,
                        key=key,
                        value=value,
                        source=payload.source,
                        task_id=row.task_id,
                        now=now,
                    )
                goal_completed = self._settle_goal(session=session, goal_id=row.goal_id, now=now)
            session.commit()
            session.refresh(row)
            return TaskCompletionOutcome(task=_to_task_view(row), goal_completed=goal_completed)

    # -- memories ------------------------------------------------------

    def upsert_memory(
        self,
        *,
        goal_id: str,
        key: str,
        value: str,
        source: InsightSource = InsightSource.USER,
        task_id: str | None = None,
    ) -> None:
        """Record an insight; an existing (goal, key) pair is overwritten."""

        with Session(self.engine) as session:
            if session.get(Goal, goal_id) is None:
                raise GoalNotFoundError(goal_id)
            self._upsert_memory(
                session=session,
                goal_id=goal_id,
                key=key,
                value=value,
                source=source,
                task_id=task_id,
                now=to_db_datetime(utc_now()),
            )
            session.commit()

    def list_memories(self, goal_id: str) -> list[MemoryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Memory)
                .where(Memory.goal_id == goal_id)
                .order_by(col(Memory.created_at).asc(), col(Memory.id).asc()),
            ).all()
        return [
            MemoryView(
                goal_id=row.goal_id,
                key=row.key,
                value=row.value,
                source=InsightSource(row.source),
                task_id=row.task_id,
                created_at=to_utc_aware(row.created_at),
                updated_at=to_utc_aware(row.updated_at),
            )
            for row in rows
        ]

    def _upsert_memory(  # noqa: PLR0913
        self,
        *,
        session: Session,
        goal_id: str,
        key: str,
        value: str,
        source: InsightSource,
        task_id: str | None,
        now: datetime,
    ) -> None:
        statement = sqlite_insert(Memory).values(
            goal_id=goal_id,
            key=key,
            value=value,
            source=source.value,
            task_id=task_id,
            created_at=now,
            updated_at=now,
        )
        session.exec(
            statement.on_conflict_do_update(
                index_elements=["goal_id", "key"],
                set_={
                    "value": statement.excluded.value,
                    "source": statement.excluded.source,
                    "task_id": statement.excluded.task_id,
                    "updated_at": statement.excluded.updated_at,
                },
            ),
        )

    def _settle_goal(self, *, session: Session, goal_id: str, now: datetime) -> bool:
        pending = exists().where(
            col(Task.goal_id) == goal_id,
            col(Task.status).in_([status.value for status in PENDING_STATUSES]),
        )
        result = session.exec(
            sa_update(Goal)
            .where(
                col(Goal.goal_id) == goal_id,
                col(Goal.status) != WorkStatus.DONE.value,
                ~pending,
            )
            .values(status=WorkStatus.DONE.value, completed_at=now, updated_at=now),
        )
        return result.rowcount == 1


def _new_goal_row(payload: GoalCreate) -> Goal:
    now = to_db_datetime(utc_now())
    return Goal(
        goal_id=payload.goal_id or str(uuid4()),
        chat_id=payload.chat_id,
        name=payload.name,
        description=payload.description,
        priority=payload.priority.value,
        status=payload.status.value,
        workspace_path=payload.workspace_path,
        relevant_files_json=_dump_list(payload.relevant_files),
        context=payload.context,
        tags_json=_dump_list(payload.tags),
        created_at=now,
        updated_at=now,
    )


def _new_task_row(payload: TaskCreate) -> Task:
    now = utc_now()
    due_date = calculate_due_date(payload.time_frame, now=now)
    return Task(
        task_id=payload.task_id or str(uuid4()),
        goal_id=payload.goal_id,
        chat_id=payload.chat_id,
        title=payload.title,
        description=payload.description,
        status=payload.status.value,
        priority=payload.priority.value,
        time_frame=payload.time_frame.value,
        due_date=to_db_datetime(due_date) if due_date is not None else None,
        context=payload.context,
        tags_json=_dump_list(payload.tags),
        workspace_path=payload.workspace_path,
        relevant_files_json=_dump_list(payload.relevant_files),
        tools_json=_dump_list(payload.tools),
        acceptance_criteria_json=_dump_list(payload.acceptance_criteria),
        created_by=payload.created_by.value,
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
    )


def _dump_list(values: Sequence[str]) -> str | None:
    if not values:
        return None
    return json.dumps(list(values), ensure_ascii=False)


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _load_messages(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def _to_sub_chat_view(row: SubChat) -> SubChatView:
    return SubChatView(
        sub_chat_id=row.sub_chat_id,
        chat_id=row.chat_id,
        mode=TurnMode(row.mode),
        backend_id=row.backend_id,
        session_id=row.session_id,
        messages=_load_messages(row.messages_json),
    )


def _to_goal_view(row: Goal) -> GoalView:
    return GoalView(
        goal_id=row.goal_id,
        name=row.name,
        description=row.description,
        priority=Priority(row.priority),
        status=WorkStatus(row.status),
        workspace_path=row.workspace_path,
        relevant_files=_load_list(row.relevant_files_json),
        context=row.context,
        tags=_load_list(row.tags_json),
        chat_id=row.chat_id,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=_optional_aware(row.completed_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        goal_id=row.goal_id,
        title=row.title,
        description=row.description,
        status=WorkStatus(row.status),
        priority=Priority(row.priority),
        time_frame=TimeFrame(row.time_frame),
        due_date=_optional_aware(row.due_date),
        summary=row.summary,
        context=row.context,
        tags=_load_list(row.tags_json),
        workspace_path=row.workspace_path,
        relevant_files=_load_list(row.relevant_files_json),
        tools=_load_list(row.tools_json),
        acceptance_criteria=_load_list(row.acceptance_criteria_json),
        chat_id=row.chat_id,
        created_by=CreatedBy(row.created_by),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=_optional_aware(row.completed_at),
    )
