"""Controllers for agent-bridge CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_bridge.config import Settings
from agent_bridge.engine.briefs import build_goal_brief, build_task_brief
from agent_bridge.engine.completion import CompletionRecorder
from agent_bridge.engine.plan_output import PlanOutputApplier
from agent_bridge.engine.plan_tools import PlanToolHandlers
from agent_bridge.models import (
    GoalCreate,
    InsightSource,
    Priority,
    TaskCreate,
    TimeFrame,
    TurnMode,
    WorkStatus,
)
from agent_bridge.repository import StateRepository
from agent_bridge.streaming.ask_user import AskUserBridge
from agent_bridge.streaming.chunks import (
    AskUserQuestionChunk,
    AskUserQuestionTimeoutChunk,
    AuthErrorChunk,
    Chunk,
    ErrorChunk,
    GoalCreatedChunk,
    SessionIdChunk,
    TasksCreatedChunk,
    TextDeltaChunk,
    TextEndChunk,
    ToolInputAvailableChunk,
    ToolOutputAvailableChunk,
    ToolOutputErrorChunk,
)
from agent_bridge.streaming.registry import AdapterRegistry, build_default_registry
from agent_bridge.turns import TurnRequest, TurnService

_TOOL_PREVIEW_CHARS = 200


@dataclass(slots=True)
class BackendsCommand:
    """CLI input for backend availability listing."""

    db_path: Path | None


@dataclass(slots=True)
class ChatCommand:
    """CLI input for one conversation turn."""

    db_path: Path | None
    backend_id: str
    prompt: str
    sub_chat_id: str
    chat_id: str
    cwd: Path
    mode: str
    model: str | None
    goal_id: str | None
    task_id: str | None
    output_format: str = "text"


@dataclass(slots=True)
class ChatResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class GoalCreateCommand:
    db_path: Path | None
    name: str
    description: str
    priority: str
    workspace_path: str | None
    context: str | None
    relevant_files: tuple[str, ...]


@dataclass(slots=True)
class GoalListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class GoalInspectCommand:
    """CLI input for goal show/brief."""

    db_path: Path | None
    goal_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    db_path: Path | None
    title: str
    description: str
    goal_id: str | None
    priority: str
    time_frame: str
    context: str | None
    tags: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    goal_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for recording a task result from agent output."""

    db_path: Path | None
    task_id: str
    output: str
    source: str


@dataclass(slots=True)
class PlanApplyCommand:
    """CLI input for persisting ```goal / ```tasks blocks from a plan reply."""

    db_path: Path | None
    text: str
    chat_id: str | None
    workspace_path: str | None


class BridgeCliController:
    """Application controller used by the CLI layer."""

    def backends(self, command: BackendsCommand) -> list[str]:
        settings = _settings(command.db_path)
        registry = build_default_registry(settings)
        availability = asyncio.run(_availability(registry))
        lines = [f"Backends: {len(availability)}"]
        for adapter in registry.adapters():
            state = "available" if availability[adapter.id] else "missing"
            resume = "yes" if adapter.supports_resume else "no"
            lines.append(f"  {adapter.id} name={adapter.name} resume={resume} status={state}")
        return lines

    def chat(self, command: ChatCommand) -> ChatResult:
        """Run one turn against a backend and render its chunks."""

        settings = _settings(command.db_path)
        request = TurnRequest(
            sub_chat_id=command.sub_chat_id,
            chat_id=command.chat_id,
            prompt=command.prompt,
            cwd=command.cwd,
            backend_id=command.backend_id,
            mode=TurnMode(command.mode),
            model=command.model,
            goal_id=command.goal_id,
            task_id=command.task_id,
        )
        with _repository(settings) as repository:
            chunks = asyncio.run(_run_turn(settings, repository, request))

        if command.output_format == "json":
            lines = [json.dumps(chunk.to_dict(), ensure_ascii=False) for chunk in chunks]
        else:
            lines = render_chunk_lines(chunks)
        success = not any(isinstance(chunk, ErrorChunk | AuthErrorChunk) for chunk in chunks)
        return ChatResult(lines=lines, success=success)

    def create_goal(self, command: GoalCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal = repository.create_goal(
                GoalCreate(
                    name=command.name,
                    description=command.description,
                    priority=Priority(command.priority),
                    workspace_path=command.workspace_path,
                    relevant_files=command.relevant_files,
                    context=command.context,
                ),
            )
        return [f"Goal created: {goal.goal_id}"]

    def list_goals(self, command: GoalListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goals = repository.list_goals(status=_parse_status(command.status), limit=command.limit)

        lines = [f"Goals: {len(goals)}"]
        for goal in goals:
            lines.append(
                f"  {goal.goal_id} status={goal.status.value} "
                f"priority={goal.priority.value} name={goal.name}",
            )
        return lines

    def show_goal(self, command: GoalInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            goal = repository.get_goal(command.goal_id)
            if goal is None:
                return [f"Goal not found: {command.goal_id}"]
            tasks = repository.list_tasks(goal_id=goal.goal_id)
            memories = repository.list_memories(goal.goal_id)

        completed = goal.completed_at.isoformat() if goal.completed_at is not None else "-"
        lines = [
            f"Goal: {goal.goal_id}",
            f"Name: {goal.name}",
            f"Status: {goal.status.value}",
            f"Priority: {goal.priority.value}",
            f"Workspace: {goal.workspace_path or '-'}",
            f"Completed at: {completed}",
            f"Tasks: {len(tasks)}",
        ]
        for task in tasks:
            lines.append(f"  {task.task_id} status={task.status.value} title={task.title}")
        lines.append(f"Insights: {len(memories)}")
        for memory in memories:
            lines.append(f"  {memory.key} = {memory.value} (source={memory.source.value})")
        return lines

    def goal_brief(self, command: GoalInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            return build_goal_brief(repository, command.goal_id).splitlines()

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    goal_id=command.goal_id,
                    priority=Priority(command.priority),
                    time_frame=TimeFrame(command.time_frame),
                    context=command.context,
                    tags=command.tags,
                ),
            )
        due = task.due_date.date().isoformat() if task.due_date is not None else "-"
        return [f"Task created: {task.task_id} due={due}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                goal_id=command.goal_id,
                status=_parse_status(command.status),
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} goal={task.goal_id or '-'} status={task.status.value} "
                f"priority={task.priority.value} time_frame={task.time_frame.value} "
                f"title={task.title}",
            )
        return lines

    def task_brief(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            return build_task_brief(repository, command.task_id).splitlines()

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = CompletionRecorder(repository).record(
                command.task_id,
                command.output,
                source=InsightSource(command.source),
            )
        lines = [
            f"Task completed: {result.task.task_id}",
            f"Summary: {result.summary or '-'}",
            f"Insights: {len(result.insights)}",
        ]
        lines.extend(f"  {key} = {value}" for key, value in result.insights.items())
        if result.goal_completed:
            lines.append(f"Goal completed: {result.task.goal_id}")
        return lines

    def apply_plan(self, command: PlanApplyCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            chunks = PlanOutputApplier(repository).apply(
                command.text,
                chat_id=command.chat_id,
                workspace_path=command.workspace_path,
            )
        if not chunks:
            return ["No goal or tasks found in plan output."]
        return render_chunk_lines(chunks)


def render_chunk_lines(chunks: list[Chunk]) -> list[str]:
    """Human-readable rendering of a turn's chunks."""

    lines: list[str] = []
    text: list[str] = []
    for chunk in chunks:
        if isinstance(chunk, TextDeltaChunk):
            text.append(chunk.delta)
            continue
        if isinstance(chunk, TextEndChunk):
            lines.extend("".join(text).splitlines())
            text = []
        elif isinstance(chunk, SessionIdChunk):
            lines.append(f"[session] {chunk.session_id}")
        elif isinstance(chunk, ToolInputAvailableChunk):
            rendered = json.dumps(dict(chunk.input), ensure_ascii=False)
            lines.append(f"[tool] {chunk.tool_name} {_preview(rendered)}")
        elif isinstance(chunk, ToolOutputAvailableChunk):
            output = chunk.output if isinstance(chunk.output, str) else json.dumps(chunk.output)
            lines.append(f"[tool result] {_preview(output)}")
        elif isinstance(chunk, ToolOutputErrorChunk):
            lines.append(f"[tool error] {_preview(chunk.error_text)}")
        elif isinstance(chunk, AskUserQuestionChunk):
            for question in chunk.questions:
                options = ", ".join(option.label for option in question.options)
                suffix = f" ({options})" if options else ""
                lines.append(f"[question {chunk.tool_use_id}] {question.question}{suffix}")
        elif isinstance(chunk, AskUserQuestionTimeoutChunk):
            lines.append(f"[question {chunk.tool_use_id}] timed out")
        elif isinstance(chunk, AuthErrorChunk):
            lines.append(f"[auth-error {chunk.backend}] {chunk.error_text}")
        elif isinstance(chunk, ErrorChunk):
            category = chunk.category.value if chunk.category is not None else "error"
            lines.append(f"[error {category}] {chunk.error_text}")
        elif isinstance(chunk, GoalCreatedChunk):
            lines.append(
                f"Goal created: {chunk.goal_id} name={chunk.goal_name} tasks={chunk.task_count}",
            )
        elif isinstance(chunk, TasksCreatedChunk):
            lines.append(f"Tasks created: {len(chunk.tasks)}")
            lines.extend(f"  {task.id} title={task.title}" for task in chunk.tasks)
    if text:
        lines.extend("".join(text).splitlines())
    return lines


def build_turn_service(settings: Settings, repository: StateRepository) -> TurnService:
    """Wire registry, plan tools and ask-user bridge around one repository."""

    ask_user = AskUserBridge(
        plan_timeout_seconds=settings.stream.ask_user_plan_timeout_seconds,
        default_timeout_seconds=settings.stream.ask_user_timeout_seconds,
    )
    plan_tools = PlanToolHandlers(repository, ask_user).specs()
    registry = build_default_registry(settings, ask_user=ask_user, plan_tools=plan_tools)
    return TurnService(
        registry=registry,
        repository=repository,
        ask_user=ask_user,
        settings=settings,
    )


async def _run_turn(
    settings: Settings,
    repository: StateRepository,
    request: TurnRequest,
) -> list[Chunk]:
    service = build_turn_service(settings, repository)
    try:
        return [chunk async for chunk in service.run_turn(request)]
    finally:
        await _close_adapters(service.registry)


async def _availability(registry: AdapterRegistry) -> dict[str, bool]:
    try:
        return {adapter.id: await adapter.is_available() for adapter in registry.adapters()}
    finally:
        await _close_adapters(registry)


async def _close_adapters(registry: AdapterRegistry) -> None:
    for adapter in registry.adapters():
        close = getattr(adapter, "close", None)
        if close is not None:
            await close()


def _parse_status(value: str | None) -> WorkStatus | None:
    if value is None:
        return None
    return WorkStatus(value.strip().lower())


def _preview(text: str) -> str:
    if len(text) <= _TOOL_PREVIEW_CHARS:
        return text
    return text[: _TOOL_PREVIEW_CHARS - 3] + "..."


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[StateRepository]:
    repository = StateRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
