from __future__ import annotations

import asyncio

import allure
import pytest
from conftest import seed_goal

from agent_bridge.engine.plan_tools import (
    ASK_USER_TOOL,
    CREATE_GOAL_TOOL,
    CREATE_TASK_TOOL,
    PlanToolHandlers,
    ToolCall,
)
from agent_bridge.models import CreatedBy, Priority, TimeFrame, TurnMode
from agent_bridge.streaming.ask_user import TIMEOUT_REASON, AskUserBridge
from agent_bridge.streaming.chunks import AskUserQuestionChunk, Chunk

pytestmark = [
    allure.epic("Engine"),
    allure.feature("Plan Tools"),
]


def _call(emitted: list[Chunk] | None = None, **overrides) -> ToolCall:
    values = {
        "tool_call_id": "tool-1",
        "owner": "sub-1",
        "mode": TurnMode.PLAN,
        "emit": (emitted if emitted is not None else []).append,
        "chat_id": "chat-1",
        "cwd": "/work/here",
    }
    values.update(overrides)
    return ToolCall(**values)


def test_specs_expose_three_tools(repository) -> None:
    specs = PlanToolHandlers(repository, AskUserBridge()).specs()

    assert [spec.name for spec in specs] == [CREATE_GOAL_TOOL, CREATE_TASK_TOOL, ASK_USER_TOOL]
    assert specs[0].parameters["required"] == ["name", "description", "priority"]
    assert specs[1].parameters["properties"]["timeFrame"]["enum"] == [
        "today",
        "tomorrow",
        "this_week",
        "next_week",
        "no_rush",
    ]


@pytest.mark.asyncio
async def test_create_goal_validates_and_defaults_workspace(repository) -> None:
    handlers = PlanToolHandlers(repository, AskUserBridge())

    rejected = await handlers.create_goal({"name": "x", "description": "short"}, _call())
    created = await handlers.create_goal(
        {"name": "Ship docs", "description": "Publish the user guide", "priority": "high"},
        _call(),
    )

    assert rejected == {
        "success": False,
        "error": (
            "Validation failed: name must be 2-100 characters, "
            "description must be at least 10 characters"
        ),
    }
    assert created["success"] is True
    goal = repository.require_goal(created["goalId"])
    assert goal.priority is Priority.HIGH
    assert goal.workspace_path == "/work/here"
    assert goal.chat_id == "chat-1"


@pytest.mark.asyncio
async def test_create_task_links_goal(repository) -> None:
    goal_id, _ = seed_goal(repository, task_titles=())
    handlers = PlanToolHandlers(repository, AskUserBridge())

    result = await handlers.create_task(
        {
            "goalId": goal_id,
            "title": "Write guide",
            "description": "Cover install and usage",
            "priority": "low",
            "timeFrame": "tomorrow",
            "acceptanceCriteria": "Guide is published",
        },
        _call(),
    )

    task = repository.require_task(result["taskId"])
    assert task.goal_id == goal_id
    assert task.priority is Priority.LOW
    assert task.time_frame is TimeFrame.TOMORROW
    assert task.acceptance_criteria == ["Guide is published"]
    assert task.created_by is CreatedBy.AI
    assert task.chat_id == "chat-1"


@pytest.mark.asyncio
async def test_create_task_reports_problems(repository) -> None:
    handlers = PlanToolHandlers(repository, AskUserBridge())
    valid = {"title": "Write guide", "description": "Cover install and usage"}

    missing_goal = await handlers.create_task(valid, _call())
    unknown_goal = await handlers.create_task({**valid, "goalId": "goal-missing"}, _call())
    bad_frame = await handlers.create_task(
        {**valid, "goalId": "goal-missing", "timeFrame": "someday"},
        _call(),
    )

    assert missing_goal == {"success": False, "error": "goalId is required"}
    assert unknown_goal["success"] is False
    assert "goal-missing" in unknown_goal["error"]
    assert bad_frame["error"].startswith("timeFrame must be one of today")
    assert repository.list_tasks() == []


@pytest.mark.asyncio
async def test_ask_user_waits_for_answer(repository) -> None:
    bridge = AskUserBridge()
    handlers = PlanToolHandlers(repository, bridge)
    emitted: list[Chunk] = []

    pending = asyncio.create_task(
        handlers.ask_user({"question": "Which DB?", "choices": ["SQLite", ""]}, _call(emitted)),
    )
    await asyncio.sleep(0)
    bridge.submit_answer("tool-1", answers={"Which DB?": "SQLite"})
    result = await pending

    assert result == {"success": True, "answers": {"Which DB?": "SQLite"}}
    question = emitted[0]
    assert isinstance(question, AskUserQuestionChunk)
    assert question.tool_use_id == "tool-1"
    assert question.timeout_seconds == 600.0
    assert [option.label for option in question.questions[0].options] == ["SQLite"]


@pytest.mark.asyncio
async def test_ask_user_timeout_and_missing_question(repository) -> None:
    handlers = PlanToolHandlers(repository, AskUserBridge(plan_timeout_seconds=0.05))

    assert await handlers.ask_user({}, _call()) == {"error": "question is required"}
    assert await handlers.ask_user({"question": "Still there?"}, _call()) == {
        "error": TIMEOUT_REASON,
    }
