"""CLI entrypoint for agent-bridge."""

from pathlib import Path

import rich_click as click

from agent_bridge import __version__
from agent_bridge.controllers import (
    BackendsCommand,
    BridgeCliController,
    ChatCommand,
    GoalCreateCommand,
    GoalInspectCommand,
    GoalListCommand,
    PlanApplyCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
)
from agent_bridge.models import (
    InsightSource,
    Priority,
    TimeFrame,
    TurnMode,
    WorkStatus,
)
from agent_bridge.streaming.base import new_id

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BridgeCliController()

_STATUS_CHOICES = click.Choice([status.value for status in WorkStatus])
_PRIORITY_CHOICES = click.Choice([priority.value for priority in Priority])


@click.group()
@click.version_option(version=__version__, prog_name="agent-bridge")
def agent_bridge() -> None:
    """Bridge between chat sessions and coding-agent CLIs."""


@agent_bridge.command("backends")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def backends(db_path: Path | None) -> None:
    """List configured backends and whether they can run here."""

    _emit_lines(CONTROLLER.backends(BackendsCommand(db_path=db_path)))


@agent_bridge.command("chat")
@click.argument("prompt")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--backend", "backend_id", required=True, help="Backend id, for example codex.")
@click.option(
    "--sub-chat-id",
    default=None,
    help="Sub-chat to continue. A new one is created when omitted.",
)
@click.option("--chat-id", default="cli", show_default=True, help="Parent chat id.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Working directory for the agent.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in TurnMode]),
    default=TurnMode.AGENT.value,
    show_default=True,
)
@click.option("--model", default=None, help="Backend-specific model override.")
@click.option("--goal-id", default=None, help="Inject the goal brief into the prompt.")
@click.option("--task-id", default=None, help="Inject the task brief and record completion.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Rendered text or one wire chunk per line.",
)
def chat(  # noqa: PLR0913
    prompt: str,
    db_path: Path | None,
    backend_id: str,
    sub_chat_id: str | None,
    chat_id: str,
    cwd: Path,
    mode: str,
    model: str | None,
    goal_id: str | None,
    task_id: str | None,
    output_format: str,
) -> None:
    """Run one turn against a backend and print its stream."""

    result = CONTROLLER.chat(
        ChatCommand(
            db_path=db_path,
            backend_id=backend_id,
            prompt=prompt,
            sub_chat_id=sub_chat_id or new_id("subchat"),
            chat_id=chat_id,
            cwd=cwd.resolve(),
            mode=mode,
            model=model,
            goal_id=goal_id,
            task_id=task_id,
            output_format=output_format,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Turn finished with an error.")


@agent_bridge.group()
def goal() -> None:
    """Goal commands."""


@goal.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True)
@click.option("--description", required=True)
@click.option(
    "--priority",
    type=_PRIORITY_CHOICES,
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option("--workspace-path", default=None, help="Working directory of the goal.")
@click.option("--context", default=None, help="Free-form user notes.")
@click.option(
    "--relevant-file",
    "relevant_files",
    multiple=True,
    help="File important for this goal. Can be repeated.",
)
def goal_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    description: str,
    priority: str,
    workspace_path: str | None,
    context: str | None,
    relevant_files: tuple[str, ...],
) -> None:
    """Create a goal."""

    _emit_lines(
        CONTROLLER.create_goal(
            GoalCreateCommand(
                db_path=db_path,
                name=name,
                description=description,
                priority=priority,
                workspace_path=workspace_path,
                context=context,
                relevant_files=relevant_files,
            ),
        ),
    )


@goal.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=_STATUS_CHOICES, default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def goal_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List goals, newest first."""

    _emit_lines(CONTROLLER.list_goals(GoalListCommand(db_path=db_path, status=status, limit=limit)))


@goal.command("show")
@click.argument("goal_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def goal_show(goal_id: str, db_path: Path | None) -> None:
    """Show a goal with its tasks and insights."""

    _emit_lines(CONTROLLER.show_goal(GoalInspectCommand(db_path=db_path, goal_id=goal_id)))


@goal.command("brief")
@click.argument("goal_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def goal_brief(goal_id: str, db_path: Path | None) -> None:
    """Print the orchestration brief injected into goal turns."""

    try:
        lines = CONTROLLER.goal_brief(GoalInspectCommand(db_path=db_path, goal_id=goal_id))
    except LookupError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_bridge.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True)
@click.option("--description", required=True)
@click.option("--goal-id", default=None, help="Attach the task to a goal.")
@click.option(
    "--priority",
    type=_PRIORITY_CHOICES,
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--time-frame",
    type=click.Choice([time_frame.value for time_frame in TimeFrame]),
    default=TimeFrame.THIS_WEEK.value,
    show_default=True,
)
@click.option("--context", default=None, help="Free-form notes.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Can be repeated.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    goal_id: str | None,
    priority: str,
    time_frame: str,
    context: str | None,
    tags: tuple[str, ...],
) -> None:
    """Create a task, standalone or under a goal."""

    try:
        lines = CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                title=title,
                description=description,
                goal_id=goal_id,
                priority=priority,
                time_frame=time_frame,
                context=context,
                tags=tags,
            ),
        )
    except LookupError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--goal-id", default=None, help="Only tasks of this goal.")
@click.option("--status", type=_STATUS_CHOICES, default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=200, show_default=True)
def task_list(db_path: Path | None, goal_id: str | None, status: str | None, limit: int) -> None:
    """List tasks in creation order."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, goal_id=goal_id, status=status, limit=limit),
        ),
    )


@task.command("brief")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_brief(task_id: str, db_path: Path | None) -> None:
    """Print the context brief injected into task turns."""

    try:
        lines = CONTROLLER.task_brief(TaskInspectCommand(db_path=db_path, task_id=task_id))
    except LookupError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@task.command("complete")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Agent output with SUMMARY/INSIGHT lines. Reads stdin when omitted.",
)
@click.option(
    "--source",
    type=click.Choice([source.value for source in InsightSource]),
    default=InsightSource.USER.value,
    show_default=True,
)
def task_complete(
    task_id: str,
    db_path: Path | None,
    output_file: Path | None,
    source: str,
) -> None:
    """Mark a task done from agent output and record its insights."""

    output = _read_text(output_file)
    try:
        lines = CONTROLLER.complete_task(
            TaskCompleteCommand(db_path=db_path, task_id=task_id, output=output, source=source),
        )
    except LookupError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_bridge.group()
def plan() -> None:
    """Plan-mode output commands."""


@plan.command("apply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--input-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Plan reply with ```goal / ```tasks blocks. Reads stdin when omitted.",
)
@click.option("--chat-id", default=None, help="Chat that produced the plan.")
@click.option("--workspace-path", default=None, help="Fallback workspace for the goal.")
def plan_apply(
    db_path: Path | None,
    input_file: Path | None,
    chat_id: str | None,
    workspace_path: str | None,
) -> None:
    """Create the goal and tasks defined in a plan reply."""

    _emit_lines(
        CONTROLLER.apply_plan(
            PlanApplyCommand(
                db_path=db_path,
                text=_read_text(input_file),
                chat_id=chat_id,
                workspace_path=workspace_path,
            ),
        ),
    )


def _read_text(path: Path | None) -> str:
    if path is not None:
        return path.read_text("utf-8")
    return click.get_text_stream("stdin").read()


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_bridge()
