"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest

from agent_bridge.models import GoalCreate, TaskCreate
from agent_bridge.repository import StateRepository
from agent_bridge.streaming.base import TurnInput
from agent_bridge.streaming.chunks import Chunk

ECHO_AGENT_MODULE = "agent_bridge.streaming.echo_agent"


def echo_command(scenario: str) -> list[str]:
    """argv prefix that runs the fake backend CLI with one scenario."""

    return [sys.executable, "-m", ECHO_AGENT_MODULE, "--scenario", scenario]


def make_turn(tmp_path: Path, prompt: str = "hello", **overrides) -> TurnInput:
    values = {
        "sub_chat_id": "sub-1",
        "chat_id": "chat-1",
        "prompt": prompt,
        "cwd": tmp_path,
        "backend_id": "test",
    }
    values.update(overrides)
    return TurnInput(**values)


async def collect(stream: AsyncIterator[Chunk]) -> list[Chunk]:
    return [chunk async for chunk in stream]


def chunk_types(chunks: list[Chunk]) -> list[str]:
    return [chunk.type for chunk in chunks]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[StateRepository]:
    repo = StateRepository(tmp_path / "state.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def seed_goal(
    repository: StateRepository,
    *,
    task_titles: tuple[str, ...] = ("Set up auth", "Build dashboard"),
) -> tuple[str, list[str]]:
    goal, tasks = repository.create_goal_with_tasks(
        GoalCreate(
            name="Ship MVP",
            description="Launch the first usable version",
            context="Keep it simple",
            workspace_path="/work/mvp",
        ),
        [
            TaskCreate(title=title, description=f"Do the work for {title.lower()}")
            for title in task_titles
        ],
    )
    return goal.goal_id, [task.task_id for task in tasks]
