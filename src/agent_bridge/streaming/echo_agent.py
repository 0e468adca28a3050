"""Local fake backend CLI for subprocess adapter tests.

Run as ``python -m agent_bridge.streaming.echo_agent --scenario NAME`` followed
by the adapter's own arguments. Amp-style ``-x PROMPT`` is honored; otherwise
the last argument is the prompt.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any


def _emit(text: str, *, stream: Any = None) -> None:
    target = stream or sys.stdout
    target.write(text)
    target.flush()


def _emit_json(payload: dict[str, Any]) -> None:
    _emit(json.dumps(payload) + "\n")


def main(argv: list[str] | None = None) -> int:
    """Play one deterministic scenario."""

    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("--scenario", default="echo")
    parser.add_argument("-x", dest="execute")
    args, rest = parser.parse_known_args(argv)
    prompt = args.execute if args.execute is not None else (rest[-1] if rest else "")

    scenario = args.scenario
    if scenario == "echo":
        _emit(f"echo: {prompt}\n")
        return 0
    if scenario == "ansi":
        _emit("\x1b[32mgreen\x1b[0m output\r\n")
        return 0
    if scenario == "silent":
        return 0
    if scenario == "auth-failure":
        _emit("Error: not logged in\n", stream=sys.stderr)
        return 1
    if scenario == "crash":
        _emit("partial output\n")
        _emit("segfault in worker\n", stream=sys.stderr)
        return 2
    if scenario == "sleep":
        _emit("working\n")
        time.sleep(30)
        return 0
    if scenario == "jsonl":
        _emit("warming up\n")
        _emit_json({"type": "system", "subtype": "init"})
        _emit_json({"type": "assistant", "text": f"echo: {prompt}"})
        return 0
    if scenario == "jsonl-garbage":
        _emit("not json at all\n")
        return 0
    if scenario == "jsonl-error":
        _emit_json({"type": "error", "message": "something broke"})
        return 1
    if scenario == "codex-jsonl":
        _emit_json({"type": "thread.started", "thread_id": "thread-echo"})
        _emit_json({"type": "turn.started"})
        command = {"id": "item_0", "type": "command_execution", "command": "ls"}
        _emit_json({"type": "item.started", "item": {**command, "status": "in_progress"}})
        _emit_json(
            {
                "type": "item.completed",
                "item": {
                    **command,
                    "status": "completed",
                    "exit_code": 0,
                    "aggregated_output": "README.md\n",
                },
            },
        )
        _emit_json(
            {
                "type": "item.completed",
                "item": {"id": "item_1", "type": "agent_message", "text": f"echo: {prompt}"},
            },
        )
        _emit_json({"type": "turn.completed", "usage": {"input_tokens": 1, "output_tokens": 1}})
        return 0
    if scenario == "codex-failed":
        _emit_json({"type": "thread.started", "thread_id": "thread-echo"})
        _emit_json({"type": "turn.failed", "error": {"message": "stream disconnected"}})
        return 1
    _emit(f"unknown scenario: {scenario}\n", stream=sys.stderr)
    return 64


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
