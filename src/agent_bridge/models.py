"""Domain models for goals, tasks, insights and conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class WorkStatus(str, Enum):
    """Shared goal/task lifecycle; `done` is terminal."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    ONGOING = "ongoing"
    REVIEW = "review"
    DONE = "done"


PENDING_STATUSES: tuple[WorkStatus, ...] = (WorkStatus.TODO, WorkStatus.IN_PROGRESS)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimeFrame(str, Enum):
    """Coarse scheduling bucket mapped to a due date."""

    TODAY = "today"
    TOMORROW = "tomorrow"
    THIS_WEEK = "this_week"
    NEXT_WEEK = "next_week"
    NO_RUSH = "no_rush"


class InsightSource(str, Enum):
    AGENT = "agent"
    USER = "user"


class CreatedBy(str, Enum):
    USER = "user"
    AI = "ai"


class TurnMode(str, Enum):
    """Conversation mode requested for a turn."""

    PLAN = "plan"
    AGENT = "agent"
    ASK = "ask"


class ErrorKind(str, Enum):
    """Normalized failure classes surfaced on error chunks."""

    NOT_INSTALLED = "not_installed"
    AUTH_REQUIRED = "auth_required"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    BILLING_OR_QUOTA = "billing_or_quota"
    MODEL_NOT_AVAILABLE = "model_not_available"
    PROCESS_CRASH = "process_crash"
    PROTOCOL_ERROR = "protocol_error"
    TIMEOUT = "timeout"


class GoalNotFoundError(LookupError):
    """Requested goal does not exist."""

    def __init__(self, goal_id: str) -> None:
        super().__init__(f"Goal not found: {goal_id}")
        self.goal_id = goal_id


class TaskNotFoundError(LookupError):
    """Requested task does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


@dataclass(slots=True)
class GoalCreate:
    """Input payload for goal creation."""

    name: str
    description: str
    priority: Priority = Priority.MEDIUM
    status: WorkStatus = WorkStatus.TODO
    workspace_path: str | None = None
    relevant_files: tuple[str, ...] = ()
    context: str | None = None
    tags: tuple[str, ...] = ()
    chat_id: str | None = None
    goal_id: str | None = None


@dataclass(slots=True)
class GoalView:
    """Readable goal view."""

    goal_id: str
    name: str
    description: str
    priority: Priority
    status: WorkStatus
    workspace_path: str | None
    relevant_files: list[str]
    context: str | None
    tags: list[str]
    chat_id: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for task creation."""

    title: str
    description: str
    goal_id: str | None = None
    priority: Priority = Priority.MEDIUM
    time_frame: TimeFrame = TimeFrame.THIS_WEEK
    status: WorkStatus = WorkStatus.TODO
    context: str | None = None
    tags: tuple[str, ...] = ()
    workspace_path: str | None = None
    relevant_files: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    chat_id: str | None = None
    created_by: CreatedBy = CreatedBy.USER
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view."""

    task_id: str
    goal_id: str | None
    title: str
    description: str
    status: WorkStatus
    priority: Priority
    time_frame: TimeFrame
    due_date: datetime | None
    summary: str | None
    context: str | None
    tags: list[str]
    workspace_path: str | None
    relevant_files: list[str]
    tools: list[str]
    acceptance_criteria: list[str]
    chat_id: str | None
    created_by: CreatedBy
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class MemoryView:
    """One goal-scoped insight."""

    goal_id: str
    key: str
    value: str
    source: InsightSource
    task_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ChatView:
    chat_id: str
    name: str
    project_path: str | None
    created_at: datetime


@dataclass(slots=True)
class SubChatView:
    """Sub-conversation with its persisted message history."""

    sub_chat_id: str
    chat_id: str
    mode: TurnMode
    backend_id: str | None
    session_id: str | None
    messages: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class TaskCompletionWrite:
    """Everything recorded atomically when a task finishes."""

    task_id: str
    summary: str | None
    insights: dict[str, str]
    source: InsightSource = InsightSource.AGENT


@dataclass(slots=True)
class TaskCompletionOutcome:
    task: TaskView
    goal_completed: bool


def calculate_due_date(time_frame: TimeFrame, *, now: datetime | None = None) -> datetime | None:
    """Map a time frame to a concrete due date; `no_rush` has none."""

    current = now or datetime.now(tz=UTC)
    if time_frame is TimeFrame.TODAY:
        return current.replace(hour=23, minute=59, second=59, microsecond=999_000)
    if time_frame is TimeFrame.TOMORROW:
        return current + timedelta(days=1)
    if time_frame is TimeFrame.THIS_WEEK:
        # weeks start on Sunday: Sunday=0 .. Friday=5
        sunday_based_day = (current.weekday() + 1) % 7
        days_until_friday = 5 - sunday_based_day
        if days_until_friday <= 0:
            days_until_friday = 7
        return current + timedelta(days=days_until_friday)
    if time_frame is TimeFrame.NEXT_WEEK:
        return current + timedelta(days=7)
    return None
