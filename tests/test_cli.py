from __future__ import annotations

import json
import re
import sys
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_bridge.main import agent_bridge
from agent_bridge.repository import StateRepository

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Goals, Tasks, Plans, Chat"),
]

FENCE = "`" * 3


def _invoke(args: list[str], db_path: Path, **kwargs):
    return CliRunner().invoke(agent_bridge, [*args, "--db-path", str(db_path)], **kwargs)


def _created_id(output: str, label: str) -> str:
    match = re.search(rf"{label} created: (\S+)", output)
    assert match is not None, output
    return match.group(1)


def _echo_backend(monkeypatch, scenario: str) -> None:
    monkeypatch.setenv(
        "AGENT_BRIDGE_AMP_COMMAND",
        f"{sys.executable} -m agent_bridge.streaming.echo_agent --scenario {scenario}",
    )


def test_goal_and_task_lifecycle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    created = _invoke(
        [
            "goal",
            "create",
            "--name",
            "Ship MVP",
            "--description",
            "Launch the first usable version",
            "--priority",
            "high",
            "--workspace-path",
            "/work/mvp",
        ],
        db_path,
    )
    assert created.exit_code == 0, created.output
    goal_id = _created_id(created.output, "Goal")

    task = _invoke(
        [
            "task",
            "create",
            "--title",
            "Set up auth",
            "--description",
            "Add sign-in",
            "--goal-id",
            goal_id,
            "--time-frame",
            "no_rush",
        ],
        db_path,
    )
    assert task.exit_code == 0, task.output
    assert "due=-" in task.output
    task_id = _created_id(task.output, "Task")

    listing = _invoke(["task", "list", "--goal-id", goal_id], db_path)
    assert "Tasks: 1" in listing.output
    assert f"{task_id} goal={goal_id} status=todo" in listing.output

    brief = _invoke(["task", "brief", task_id], db_path)
    assert brief.exit_code == 0, brief.output
    assert "→ 1. ⬜ Set up auth ← YOU ARE HERE" in brief.output

    completed = _invoke(
        ["task", "complete", task_id],
        db_path,
        input=(
            "SUMMARY: Added Clerk sign-in and middleware for the api routes.\n"
            "INSIGHT: auth_provider = Clerk\n"
        ),
    )
    assert completed.exit_code == 0, completed.output
    assert f"Task completed: {task_id}" in completed.output
    assert "Insights: 1" in completed.output
    assert f"Goal completed: {goal_id}" in completed.output

    shown = _invoke(["goal", "show", goal_id], db_path)
    assert "Status: done" in shown.output
    assert "auth_provider = Clerk (source=user)" in shown.output

    goals = _invoke(["goal", "list", "--status", "done"], db_path)
    assert "Goals: 1" in goals.output

    goal_brief = _invoke(["goal", "brief", goal_id], db_path)
    assert "## Tasks Overview (1/1 complete)" in goal_brief.output


def test_unknown_ids_are_reported(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    missing_brief = _invoke(["task", "brief", "task-missing"], db_path)
    missing_goal = _invoke(
        ["task", "create", "--title", "x", "--description", "y", "--goal-id", "goal-missing"],
        db_path,
    )
    shown = _invoke(["goal", "show", "goal-missing"], db_path)

    assert missing_brief.exit_code == 1
    assert "Task not found: task-missing" in missing_brief.output
    assert missing_goal.exit_code == 1
    assert "Goal not found: goal-missing" in missing_goal.output
    assert "Goal not found: goal-missing" in shown.output


def test_plan_apply_from_file(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    plan_file = tmp_path / "plan.md"
    plan_file.write_text(
        (
            f'{FENCE}goal\n{{"name": "Launch blog", "description": "Publish the first posts"}}\n'
            f"{FENCE}\n"
            f'{FENCE}tasks\n[{{"title": "Pick theme", "description": "Choose a static theme"}}]\n'
            f"{FENCE}\n"
        ),
        "utf-8",
    )

    applied = _invoke(["plan", "apply", "--input-file", str(plan_file)], db_path)
    empty = _invoke(["plan", "apply"], db_path, input="nothing to see")

    assert applied.exit_code == 0, applied.output
    assert re.search(r"Goal created: \S+ name=Launch blog tasks=1", applied.output)
    assert "No goal or tasks found in plan output." in empty.output


def test_chat_streams_echo_backend(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _echo_backend(monkeypatch, "echo")

    result = _invoke(
        ["chat", "ping", "--backend", "amp", "--sub-chat-id", "sub-cli", "--cwd", str(tmp_path)],
        db_path,
    )

    assert result.exit_code == 0, result.output
    assert "echo: ping" in result.output.splitlines()
    repository = StateRepository(db_path)
    try:
        messages = repository.get_sub_chat("sub-cli").messages
    finally:
        repository.close()
    assert [message["role"] for message in messages] == ["user", "assistant"]
    assert messages[1]["parts"] == [{"type": "text", "text": "echo: ping"}]


def test_chat_json_format_prints_wire_chunks(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _echo_backend(monkeypatch, "echo")

    result = _invoke(
        ["chat", "ping", "--backend", "amp", "--format", "json", "--cwd", str(tmp_path)],
        db_path,
    )

    assert result.exit_code == 0, result.output
    chunks = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    assert [chunk["type"] for chunk in chunks] == [
        "start",
        "text-start",
        "text-delta",
        "text-end",
        "finish",
    ]
    assert chunks[2]["delta"] == "echo: ping"


def test_chat_failure_exits_non_zero(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    _echo_backend(monkeypatch, "auth-failure")

    result = _invoke(["chat", "ping", "--backend", "amp", "--cwd", str(tmp_path)], db_path)

    assert result.exit_code == 1
    assert "[auth-error amp] You need to authenticate with Amp to continue." in result.output
    assert "Turn finished with an error." in result.output


def test_chat_unknown_backend(tmp_path: Path) -> None:
    result = _invoke(
        ["chat", "ping", "--backend", "claude", "--cwd", str(tmp_path)],
        tmp_path / "cli.db",
    )

    assert result.exit_code == 1
    assert "[error not_installed] Unknown backend: claude" in result.output


def test_backends_lists_every_adapter(tmp_path: Path, monkeypatch) -> None:
    _echo_backend(monkeypatch, "echo")
    monkeypatch.setenv("AGENT_BRIDGE_CURSOR_COMMAND", str(tmp_path / "missing-cursor"))

    result = _invoke(["backends"], tmp_path / "cli.db")

    assert result.exit_code == 0, result.output
    assert "Backends: 5" in result.output
    assert "  amp name=Amp resume=no status=available" in result.output
    assert "  cursor name=Cursor resume=no status=missing" in result.output
    assert "copilot name=GitHub Copilot resume=yes" in result.output
