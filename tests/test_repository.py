from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest
from conftest import seed_goal

from agent_bridge.models import (
    CreatedBy,
    GoalCreate,
    GoalNotFoundError,
    InsightSource,
    TaskCompletionWrite,
    TaskCreate,
    TaskNotFoundError,
    TimeFrame,
    TurnMode,
    WorkStatus,
)
from agent_bridge.repository import StateRepository

pytestmark = [
    allure.epic("State Engine"),
    allure.feature("Persistence"),
]


def _complete(repository: StateRepository, task_id: str, **insights: str):
    return repository.complete_task(
        TaskCompletionWrite(task_id=task_id, summary=f"done {task_id}", insights=insights),
    )


def test_goal_completes_only_with_last_pending_task(repository: StateRepository) -> None:
    goal_id, (first, second) = seed_goal(repository)

    outcome = _complete(repository, first)

    assert outcome.goal_completed is False
    assert outcome.task.status is WorkStatus.DONE
    assert outcome.task.completed_at is not None
    assert repository.require_goal(goal_id).status is WorkStatus.TODO

    outcome = _complete(repository, second)

    assert outcome.goal_completed is True
    goal = repository.require_goal(goal_id)
    assert goal.status is WorkStatus.DONE
    assert goal.completed_at is not None


def test_review_and_ongoing_tasks_do_not_block_goal_completion(
    repository: StateRepository,
) -> None:
    goal_id, (first, second, third) = seed_goal(
        repository,
        task_titles=("Write code", "Review code", "Maintain docs"),
    )
    repository.update_task_status(second, WorkStatus.REVIEW)
    repository.update_task_status(third, WorkStatus.ONGOING)

    outcome = _complete(repository, first)

    assert outcome.goal_completed is True
    assert repository.require_goal(goal_id).status is WorkStatus.DONE


def test_goal_settles_once_under_concurrent_completion(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = StateRepository(db_path)
    setup.init_schema()
    goal_id, task_ids = seed_goal(setup)
    setup.close()

    results: list[bool] = []
    barrier = threading.Barrier(len(task_ids))

    def worker(task_id: str) -> None:
        repo = StateRepository(db_path, sqlite_busy_timeout_ms=10_000)
        try:
            barrier.wait()
            results.append(_complete(repo, task_id).goal_completed)
        finally:
            repo.close()

    threads = [threading.Thread(target=worker, args=(task_id,)) for task_id in task_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False, True]
    check = StateRepository(db_path)
    assert check.require_goal(goal_id).status is WorkStatus.DONE
    check.close()


def test_completion_upserts_insights_with_last_write_wins(repository: StateRepository) -> None:
    goal_id, (first, second) = seed_goal(repository)

    _complete(repository, first, database="SQLite", auth_provider="Clerk")
    _complete(repository, second, database="PostgreSQL")

    memories = {memory.key: memory for memory in repository.list_memories(goal_id)}
    assert memories["database"].value == "PostgreSQL"
    assert memories["database"].task_id == second
    assert memories["database"].source is InsightSource.AGENT
    assert memories["auth_provider"].value == "Clerk"
    assert [memory.key for memory in repository.list_memories(goal_id)] == [
        "database",
        "auth_provider",
    ]


def test_complete_unknown_task_raises(repository: StateRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        _complete(repository, "missing")


def test_create_task_requires_existing_goal(repository: StateRepository) -> None:
    with pytest.raises(GoalNotFoundError):
        repository.create_task(TaskCreate(title="Orphan", description="No goal", goal_id="nope"))


def test_standalone_task_gets_due_date_and_list_fields(repository: StateRepository) -> None:
    task = repository.create_task(
        TaskCreate(
            title="Fix login",
            description="Users cannot log in",
            time_frame=TimeFrame.TODAY,
            tags=("bug", "auth"),
            acceptance_criteria=("Login works",),
            created_by=CreatedBy.AI,
        ),
    )

    stored = repository.require_task(task.task_id)
    assert stored.goal_id is None
    assert stored.due_date is not None
    assert stored.tags == ["bug", "auth"]
    assert stored.acceptance_criteria == ["Login works"]
    assert stored.created_by is CreatedBy.AI
    assert repository.get_task("missing") is None


def test_goal_with_tasks_inherits_workspace(repository: StateRepository) -> None:
    goal, tasks = repository.create_goal_with_tasks(
        GoalCreate(name="Refactor", description="Clean up modules", workspace_path="/repo"),
        [
            TaskCreate(title="Split module", description="Split the big module"),
            TaskCreate(title="Docs", description="Update docs", workspace_path="/repo/docs"),
        ],
    )

    assert [task.goal_id for task in tasks] == [goal.goal_id, goal.goal_id]
    assert [task.workspace_path for task in tasks] == ["/repo", "/repo/docs"]
    assert [task.task_id for task in repository.list_tasks(goal_id=goal.goal_id)] == [
        task.task_id for task in tasks
    ]


def test_list_goals_filters_by_status(repository: StateRepository) -> None:
    first = repository.create_goal(GoalCreate(name="First", description="First goal"))
    repository.create_goal(GoalCreate(name="Second", description="Second goal"))
    repository.update_goal_status(first.goal_id, WorkStatus.DONE)

    done = repository.list_goals(status=WorkStatus.DONE)

    assert [goal.goal_id for goal in done] == [first.goal_id]
    assert done[0].completed_at is not None
    assert len(repository.list_goals()) == 2


def test_done_is_terminal_and_reached_only_by_completion(repository: StateRepository) -> None:
    goal_id, (first, second) = seed_goal(repository)

    with pytest.raises(ValueError, match="complete_task"):
        repository.update_task_status(first, WorkStatus.DONE)
    assert repository.require_task(first).status is WorkStatus.TODO

    _complete(repository, first)
    _complete(repository, second)

    with pytest.raises(ValueError, match="is done"):
        repository.update_task_status(first, WorkStatus.IN_PROGRESS)
    with pytest.raises(ValueError, match="is done"):
        repository.update_goal_status(goal_id, WorkStatus.TODO)
    goal = repository.update_goal_status(goal_id, WorkStatus.DONE)
    assert goal.status is WorkStatus.DONE
    assert repository.require_task(first).status is WorkStatus.DONE


def test_upsert_memory_requires_goal(repository: StateRepository) -> None:
    with pytest.raises(GoalNotFoundError):
        repository.upsert_memory(goal_id="missing", key="k", value="v")


def test_sub_chat_messages_and_session_id(repository: StateRepository) -> None:
    repository.ensure_sub_chat("sub-1", chat_id="chat-1", mode=TurnMode.PLAN, backend_id="codex")
    repository.append_message("sub-1", {"id": "m1", "role": "user", "parts": []})
    repository.save_session_id("sub-1", "thread-1")

    sub_chat = repository.ensure_sub_chat("sub-1", chat_id="chat-1", mode=TurnMode.AGENT)

    assert sub_chat.mode is TurnMode.AGENT
    assert sub_chat.backend_id == "codex"
    assert sub_chat.session_id == "thread-1"
    assert sub_chat.messages == [{"id": "m1", "role": "user", "parts": []}]
    assert repository.get_sub_chat("other") is None


def test_append_message_to_unknown_sub_chat_raises(repository: StateRepository) -> None:
    with pytest.raises(LookupError):
        repository.append_message("missing", {"id": "m1"})
