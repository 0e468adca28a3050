"""Tools exposed to SDK sessions in plan mode: goal/task creation and clarifying questions."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from agent_bridge.models import (
    CreatedBy,
    GoalCreate,
    GoalNotFoundError,
    Priority,
    TaskCreate,
    TimeFrame,
    TurnMode,
)
from agent_bridge.repository import StateRepository
from agent_bridge.streaming.ask_user import AskUserBridge, build_questions
from agent_bridge.streaming.chunks import Chunk

logger = logging.getLogger(__name__)

CREATE_GOAL_TOOL = "create_goal"
CREATE_TASK_TOOL = "create_task"
ASK_USER_TOOL = "ask_user"

_PRIORITIES = [item.value for item in Priority]
_TIME_FRAMES = [item.value for item in TimeFrame]


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Who is calling a tool and where its out-of-band chunks go."""

    tool_call_id: str
    owner: str
    mode: TurnMode
    emit: Callable[[Chunk], None]
    chat_id: str | None = None
    cwd: str | None = None


ToolHandler = Callable[[Mapping[str, Any], ToolCall], Awaitable[dict[str, Any]]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Backend-neutral tool definition with a JSON-schema parameter block."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler


class PlanToolHandlers:
    """Handlers return result dicts for the model; validation problems never raise."""

    def __init__(self, repository: StateRepository, ask_user: AskUserBridge) -> None:
        self.repository = repository
        self.bridge = ask_user

    async def create_goal(self, arguments: Mapping[str, Any], call: ToolCall) -> dict[str, Any]:
        errors: list[str] = []
        name = _text(arguments, "name")
        description = _text(arguments, "description")
        if not 2 <= len(name) <= 100:  # noqa: PLR2004
            errors.append("name must be 2-100 characters")
        if len(description) < 10:  # noqa: PLR2004
            errors.append("description must be at least 10 characters")
        priority = _enum(Priority, arguments.get("priority", Priority.MEDIUM.value))
        if priority is None:
            errors.append(f"priority must be one of {', '.join(_PRIORITIES)}")
        if errors:
            return {"success": False, "error": f"Validation failed: {', '.join(errors)}"}

        goal = self.repository.create_goal(
            GoalCreate(
                name=name,
                description=description,
                priority=priority,
                workspace_path=_text(arguments, "workspacePath") or call.cwd,
                context=_text(arguments, "context") or None,
                tags=_strings(arguments, "tags"),
                relevant_files=_strings(arguments, "relevantFiles"),
                chat_id=call.chat_id,
            ),
        )
        logger.info("Tool created goal %s (%s)", goal.goal_id, goal.name)
        return {
            "success": True,
            "goalId": goal.goal_id,
            "message": f'Created goal "{goal.name}". Use this goalId to create tasks.',
        }

    async def create_task(self, arguments: Mapping[str, Any], call: ToolCall) -> dict[str, Any]:
        goal_id = _text(arguments, "goalId")
        title = _text(arguments, "title")
        description = _text(arguments, "description")
        if not goal_id:
            return {"success": False, "error": "goalId is required"}
        if len(title) < 2:  # noqa: PLR2004
            return {"success": False, "error": "Title must be at least 2 characters"}
        if len(description) < 5:  # noqa: PLR2004
            return {"success": False, "error": "Description must be at least 5 characters"}
        priority = _enum(Priority, arguments.get("priority", Priority.MEDIUM.value))
        if priority is None:
            return {"success": False, "error": f"priority must be one of {', '.join(_PRIORITIES)}"}
        time_frame = _enum(TimeFrame, arguments.get("timeFrame", TimeFrame.THIS_WEEK.value))
        if time_frame is None:
            return {
                "success": False,
                "error": f"timeFrame must be one of {', '.join(_TIME_FRAMES)}",
            }

        try:
            task = self.repository.create_task(
                TaskCreate(
                    title=title,
                    description=description,
                    goal_id=goal_id,
                    priority=priority,
                    time_frame=time_frame,
                    context=_text(arguments, "context") or None,
                    acceptance_criteria=_criteria(arguments),
                    relevant_files=_strings(arguments, "relevantFiles"),
                    workspace_path=_text(arguments, "workspacePath") or None,
                    tools=_strings(arguments, "tools"),
                    chat_id=call.chat_id,
                    created_by=CreatedBy.AI,
                ),
            )
        except GoalNotFoundError as error:
            return {"success": False, "error": str(error)}
        logger.info("Tool created task %s for goal %s", task.task_id, goal_id)
        return {"success": True, "taskId": task.task_id, "message": f'Created task "{task.title}"'}

    async def ask_user(self, arguments: Mapping[str, Any], call: ToolCall) -> dict[str, Any]:
        question = _text(arguments, "question")
        if not question:
            return {"error": "question is required"}
        outcome = await self.bridge.ask(
            owner=call.owner,
            tool_call_id=call.tool_call_id,
            questions=build_questions(question, _strings(arguments, "choices")),
            mode=call.mode,
            emit=call.emit,
        )
        if outcome.answered:
            return {"success": True, "answers": outcome.answers}
        return outcome.to_tool_result()

    def specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name=CREATE_GOAL_TOOL,
                description=(
                    "Create a new goal on the task board. Call this after gathering all "
                    "required info. Returns a goalId that you MUST use when creating tasks."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Goal name (2-100 chars)"},
                        "description": {
                            "type": "string",
                            "description": "What success looks like (min 10 chars)",
                        },
                        "priority": {"type": "string", "enum": _PRIORITIES},
                        "workspacePath": {"type": "string"},
                        "context": {"type": "string"},
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "relevantFiles": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["name", "description", "priority"],
                },
                handler=self.create_goal,
            ),
            ToolSpec(
                name=CREATE_TASK_TOOL,
                description=(
                    "Create a task linked to a goal. Call create_goal first and use the "
                    "returned goalId. Call this once for each task."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "goalId": {"type": "string"},
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                        "priority": {"type": "string", "enum": _PRIORITIES},
                        "timeFrame": {"type": "string", "enum": _TIME_FRAMES},
                        "context": {"type": "string"},
                        "acceptanceCriteria": {"type": "string"},
                        "relevantFiles": {"type": "array", "items": {"type": "string"}},
                        "workspacePath": {"type": "string"},
                        "tools": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["goalId", "title", "description", "priority", "timeFrame"],
                },
                handler=self.create_task,
            ),
            ToolSpec(
                name=ASK_USER_TOOL,
                description=(
                    "Ask the user a clarifying question instead of asking in plain text. "
                    "Provide choices when possible. Returns the user's answer."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "question": {"type": "string"},
                        "choices": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["question"],
                },
                handler=self.ask_user,
            ),
        ]


def _text(arguments: Mapping[str, Any], key: str) -> str:
    value = arguments.get(key)
    return value.strip() if isinstance(value, str) else ""


def _strings(arguments: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = arguments.get(key)
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str) and item)


def _enum(enum_type: type[Priority] | type[TimeFrame], value: Any) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        return None


def _criteria(arguments: Mapping[str, Any]) -> tuple[str, ...]:
    text = _text(arguments, "acceptanceCriteria")
    if text:
        return (text,)
    return _strings(arguments, "acceptanceCriteria")
