"""Extract ```goal / ```tasks JSON blocks from plan-mode replies and persist them."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.models import (
    CreatedBy,
    GoalCreate,
    Priority,
    TaskCreate,
    TimeFrame,
)
from agent_bridge.repository import StateRepository
from agent_bridge.streaming.chunks import (
    Chunk,
    CreatedTaskRef,
    GoalCreatedChunk,
    TasksCreatedChunk,
)

logger = logging.getLogger(__name__)

_TASKS_BLOCK = re.compile(r"```tasks\s*([\s\S]*?)```", re.IGNORECASE)
_TASKS_ARRAY_START = re.compile(r"```tasks\s*\[", re.IGNORECASE)
_GOAL_BLOCK = re.compile(r"```goal\s*([\s\S]*?)```")

PLAN_OUTPUT_FORMAT = """## Plan Output Format

When the scope is agreed, write the plan as fenced JSON blocks.

For a multi-step objective, one goal block and one tasks block:

```goal
{"name": "Goal name", "description": "What success looks like", "priority": "medium",
 "context": "Constraints", "workspacePath": "/abs/path", "relevantFiles": ["src/app.py"]}
```

For a single piece of work, a tasks block alone:

```tasks
[{"title": "Task title", "description": "What needs to be done", "priority": "high",
  "timeFrame": "this_week", "context": "Optional notes", "tags": ["backend"]}]
```

priority is low, medium or high. timeFrame is today, tomorrow, this_week, next_week or
no_rush. Every task needs a title and a description.
"""


@dataclass(slots=True)
class TaskDraft:
    """Validated task definition parsed from model output."""

    title: str
    description: str
    priority: Priority = Priority.MEDIUM
    time_frame: TimeFrame = TimeFrame.THIS_WEEK
    context: str | None = None
    tags: list[str] = field(default_factory=list)
    workspace_path: str | None = None
    relevant_files: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)

    def to_create(self, *, chat_id: str | None = None, goal_id: str | None = None) -> TaskCreate:
        return TaskCreate(
            title=self.title,
            description=self.description,
            goal_id=goal_id,
            priority=self.priority,
            time_frame=self.time_frame,
            context=self.context,
            tags=tuple(self.tags),
            workspace_path=self.workspace_path,
            relevant_files=tuple(self.relevant_files),
            tools=tuple(self.tools),
            acceptance_criteria=tuple(self.acceptance_criteria),
            chat_id=chat_id,
            created_by=CreatedBy.AI,
        )


@dataclass(slots=True)
class GoalDraft:
    name: str | None
    description: str | None
    priority: Priority = Priority.MEDIUM
    context: str | None = None
    workspace_path: str | None = None
    relevant_files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskExtraction:
    tasks: list[TaskDraft]
    raw_json: str | None = None
    error: str | None = None


@dataclass(slots=True)
class PlanExtraction:
    goal: GoalDraft | None
    tasks: list[TaskDraft]
    errors: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """A named, described goal with at least one valid task."""

        if self.goal is None or not self.goal.name or not self.goal.description:
            return False
        return bool(self.tasks)


def has_task_definitions(text: str) -> bool:
    return _TASKS_ARRAY_START.search(text) is not None


def extract_tasks_from_text(text: str) -> TaskExtraction:
    """Parse the last ```tasks block; invalid items are skipped and reported.

    Malformed JSON yields no tasks and an error instead of raising.
    """

    blocks = _TASKS_BLOCK.findall(text)
    if not blocks:
        return TaskExtraction(tasks=[])
    raw = blocks[-1].strip()
    if not raw:
        return TaskExtraction(tasks=[])

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        return TaskExtraction(tasks=[], raw_json=raw, error=f"Invalid JSON: {error}")
    if not isinstance(parsed, list):
        return TaskExtraction(tasks=[], raw_json=raw, error="Tasks must be an array")

    tasks: list[TaskDraft] = []
    errors: list[str] = []
    for number, item in enumerate(parsed, start=1):
        if not isinstance(item, dict):
            errors.append(f"Task {number}: must be an object")
            continue
        draft, error = _task_draft(item)
        if error is not None:
            errors.append(f"Task {number}: {error}")
            continue
        tasks.append(draft)
    return TaskExtraction(tasks=tasks, raw_json=raw, error="; ".join(errors) or None)


def parse_goal_block(text: str) -> GoalDraft | None:
    match = _GOAL_BLOCK.search(text)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return GoalDraft(
        name=_optional_text(parsed.get("name")),
        description=_optional_text(parsed.get("description")),
        priority=_priority(parsed.get("priority")),
        context=_optional_text(parsed.get("context")),
        workspace_path=_optional_text(parsed.get("workspacePath")),
        relevant_files=_string_list(parsed.get("relevantFiles")),
    )


def parse_plan_blocks(text: str) -> PlanExtraction:
    goal = parse_goal_block(text)
    extraction = extract_tasks_from_text(text)
    errors = [extraction.error] if extraction.error else []
    return PlanExtraction(goal=goal, tasks=extraction.tasks, errors=errors)


def validate_goal_draft(goal: GoalDraft) -> list[str]:
    errors: list[str] = []
    if not goal.name or len(goal.name.strip()) < 2:  # noqa: PLR2004
        errors.append("Goal name must be at least 2 characters")
    if not goal.description or len(goal.description.strip()) < 5:  # noqa: PLR2004
        errors.append("Goal description must be at least 5 characters")
    return errors


def validate_task_drafts(tasks: list[TaskDraft]) -> list[str]:
    if not tasks:
        return ["At least one task is required"]
    errors: list[str] = []
    for number, task in enumerate(tasks, start=1):
        if len(task.title.strip()) < 2:  # noqa: PLR2004
            errors.append(f"Task {number}: Title must be at least 2 characters")
        if len(task.description.strip()) < 5:  # noqa: PLR2004
            errors.append(f"Task {number}: Description must be at least 5 characters")
    return errors


class PlanOutputApplier:
    """Persist what a plan-mode reply defined and describe it as chunks."""

    def __init__(self, repository: StateRepository) -> None:
        self.repository = repository

    def apply(
        self,
        text: str,
        *,
        chat_id: str | None = None,
        workspace_path: str | None = None,
    ) -> list[Chunk]:
        plan = parse_plan_blocks(text)
        if plan.errors:
            logger.warning("Plan output had invalid entries: %s", "; ".join(plan.errors))

        if plan.is_complete and plan.goal is not None:
            problems = validate_goal_draft(plan.goal) + validate_task_drafts(plan.tasks)
            if problems:
                logger.warning("Skipping incomplete plan: %s", "; ".join(problems))
                return []
            goal, tasks = self.repository.create_goal_with_tasks(
                GoalCreate(
                    name=plan.goal.name or "",
                    description=plan.goal.description or "",
                    priority=plan.goal.priority,
                    context=plan.goal.context,
                    workspace_path=plan.goal.workspace_path or workspace_path,
                    relevant_files=tuple(plan.goal.relevant_files),
                    chat_id=chat_id,
                ),
                [draft.to_create(chat_id=chat_id) for draft in plan.tasks],
            )
            logger.info("Plan created goal %s with %d task(s)", goal.goal_id, len(tasks))
            return [
                GoalCreatedChunk(goal_id=goal.goal_id, goal_name=goal.name, task_count=len(tasks)),
            ]

        if not plan.tasks:
            return []
        created = [
            self.repository.create_task(draft.to_create(chat_id=chat_id)) for draft in plan.tasks
        ]
        logger.info("Plan created %d standalone task(s)", len(created))
        return [
            TasksCreatedChunk(
                tasks=tuple(CreatedTaskRef(id=task.task_id, title=task.title) for task in created),
            ),
        ]


def _task_draft(item: dict[str, Any]) -> tuple[TaskDraft, None] | tuple[None, str]:
    title = item.get("title")
    if not isinstance(title, str) or not title.strip():
        return None, "missing or invalid title"
    description = item.get("description")
    if not isinstance(description, str) or not description.strip():
        return None, "missing or invalid description"
    criteria = item.get("acceptanceCriteria")
    return (
        TaskDraft(
            title=title.strip(),
            description=description.strip(),
            priority=_priority(item.get("priority")),
            time_frame=_time_frame(item.get("timeFrame")),
            context=_optional_text(item.get("context")),
            tags=_string_list(item.get("tags")),
            workspace_path=_optional_text(item.get("workspacePath")),
            relevant_files=_string_list(item.get("relevantFiles")),
            tools=_string_list(item.get("tools")),
            acceptance_criteria=(
                [criteria.strip()]
                if isinstance(criteria, str) and criteria.strip()
                else _string_list(criteria)
            ),
        ),
        None,
    )


def _priority(value: Any) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        return Priority.MEDIUM


def _time_frame(value: Any) -> TimeFrame:
    try:
        return TimeFrame(value)
    except ValueError:
        return TimeFrame.THIS_WEEK


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]
