"""Adapters for CLIs that stream one JSON object per stdout line."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from agent_bridge.models import ErrorKind
from agent_bridge.streaming.base import (
    HISTORY_SEPARATOR,
    TurnEmitter,
    TurnInput,
    compose_prompt,
    no_response_message,
)
from agent_bridge.streaming.chunks import (
    Chunk,
    ErrorChunk,
    SessionIdChunk,
    ToolInputAvailableChunk,
    ToolInputStartChunk,
    ToolOutputAvailableChunk,
    ToolOutputErrorChunk,
)
from agent_bridge.streaming.failures import (
    CODEX_AUTH_PATTERNS,
    DROID_AUTH_PATTERNS,
    FailureClassification,
)
from agent_bridge.streaming.process import OutputEvent, SubprocessAdapter, TurnState
from agent_bridge.streaming.sanitizer import sanitize_output

logger = logging.getLogger(__name__)

_LINE_BUFFER = "line_buffer"
_ERROR_MESSAGE = "error_message"
_PARSED_LINES = "parsed_lines"


class JsonLineAdapter(SubprocessAdapter):
    """Line-buffered JSON stream on stdout; stderr only feeds diagnostics.

    An incomplete trailing line is kept as the prefix of the next read and
    parsed at EOF. Messages of unknown type are ignored.
    """

    def handle_output(
        self,
        event: OutputEvent,
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        text = state.decode(event.stream, event.data)
        if event.stream == "stderr":
            _record_diagnostic(state, text)
            return []
        buffer = state.extra.get(_LINE_BUFFER, "") + text
        *lines, remainder = buffer.split("\n")
        state.extra[_LINE_BUFFER] = remainder
        chunks: list[Chunk] = []
        for line in lines:
            chunks.extend(self._handle_line(line, emitter, state))
        return chunks

    def flush_output(self, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        _record_diagnostic(state, state.decode("stderr", b"", final=True))
        tail = state.extra.pop(_LINE_BUFFER, "") + state.decode("stdout", b"", final=True)
        chunks: list[Chunk] = []
        for line in tail.split("\n"):
            chunks.extend(self._handle_line(line, emitter, state))
        return chunks

    def _handle_line(self, line: str, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            message = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON %s line: %s", self.id, stripped[:200])
            state.diagnostics.append(stripped)
            return []
        if not isinstance(message, dict):
            state.diagnostics.append(stripped)
            return []
        state.extra[_PARSED_LINES] = state.extra.get(_PARSED_LINES, 0) + 1
        return self.handle_message(message, emitter, state)

    def handle_message(
        self,
        message: dict[str, Any],
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        raise NotImplementedError

    def record_error(self, state: TurnState, message: str) -> None:
        """Remember a backend-reported error; it becomes the turn's failure chunk."""

        state.extra.setdefault(_ERROR_MESSAGE, message)

    def handle_exit(self, exit_code: int, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        diagnostics = "\n".join(state.diagnostics)
        reported = state.extra.get(_ERROR_MESSAGE)
        failures: list[Chunk] = []
        if reported is not None:
            classification = self.classify_exit(exit_code, f"{reported}\n{diagnostics}")
            if classification.kind is ErrorKind.PROCESS_CRASH:
                failures.append(
                    ErrorChunk(
                        error_text=f"{self.name} error: {reported}",
                        category=ErrorKind.PROCESS_CRASH,
                        backend=self.id,
                    ),
                )
            else:
                failures.append(
                    self.failure_chunk(classification, exit_code=exit_code, output=reported),
                )
        elif exit_code != 0:
            output = f"{emitter.accumulated}\n{diagnostics}"
            failures.append(
                self.failure_chunk(
                    self.classify_exit(exit_code, output),
                    exit_code=exit_code,
                    output=diagnostics,
                ),
            )
        elif not emitter.has_output and state.diagnostics and not state.extra.get(_PARSED_LINES):
            failures.append(
                ErrorChunk(
                    error_text=f"{self.name} produced output that could not be parsed.",
                    category=ErrorKind.PROTOCOL_ERROR,
                    backend=self.id,
                ),
            )

        chunks: list[Chunk] = []
        if not emitter.has_output and not failures:
            chunks.extend(emitter.text(no_response_message(self.name)))
        chunks.extend(emitter.finish(*failures))
        return chunks


def _record_diagnostic(state: TurnState, text: str) -> None:
    cleaned = sanitize_output(text)
    if cleaned:
        state.diagnostics.append(cleaned)


_DROID_DEFAULT_MODEL = "claude-opus-4-5-20251101"
_DROID_MODELS: dict[str, str] = {
    "opus": "claude-opus-4-5-20251101",
    "sonnet": "claude-sonnet-4-5-20250929",
    "haiku": "claude-haiku-4-5-20251001",
}


def resolve_droid_model(model: str | None) -> str:
    if not model or not model.strip():
        return _DROID_DEFAULT_MODEL
    if "/" in model:
        return model
    return _DROID_MODELS.get(model.strip().lower(), model)


class DroidAdapter(JsonLineAdapter):
    """Factory Droid in `exec -o stream-json` mode."""

    id = "droid"
    name = "Droid"
    auth_patterns = DROID_AUTH_PATTERNS

    def __init__(
        self,
        *,
        command: Sequence[str] = ("droid",),
        kill_grace_seconds: float = 5.0,
        default_model: str | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            command=command,
            kill_grace_seconds=kill_grace_seconds,
            default_model=default_model,
            extra_env=extra_env,
        )

    def build_args(self, turn: TurnInput) -> list[str]:
        model = resolve_droid_model(turn.model or self.default_model)
        return ["exec", "-o", "stream-json", "--model", model, compose_prompt(turn)]

    def handle_message(
        self,
        message: dict[str, Any],
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        kind = message.get("type")
        if kind == "assistant" or (kind == "message" and message.get("role") == "assistant"):
            return emitter.text(_first_text(message, "text", "content"))
        if kind in ("text", "content"):
            return emitter.text(_first_text(message, "text", "content", "delta"))
        if kind == "error":
            self.record_error(
                state,
                _first_text(message, "message", "error") or "Unknown error from Droid",
            )
        return []


class CodexAdapter(JsonLineAdapter):
    """OpenAI Codex CLI in `exec --json` mode; threads resume by id."""

    id = "codex"
    name = "OpenAI Codex"
    supports_resume = True
    auth_patterns = CODEX_AUTH_PATTERNS

    def build_args(self, turn: TurnInput) -> list[str]:
        args = ["exec", "--json", "--skip-git-repo-check"]
        model = turn.model or self.default_model
        if model:
            args.extend(["--model", model])
        if turn.session_id:
            args.extend(["resume", turn.session_id])
        args.append(self._prompt(turn))
        return args

    def _prompt(self, turn: TurnInput) -> str:
        parts: list[str] = []
        if turn.system_prompt:
            parts.append(
                "[SYSTEM INSTRUCTIONS - Follow these guidelines for all responses]\n"
                f"{turn.system_prompt}\n[END SYSTEM INSTRUCTIONS]",
            )
        if turn.context_history:
            parts.append(turn.context_history)
        parts.append(turn.prompt)
        return HISTORY_SEPARATOR.join(parts)

    def failure_text(
        self,
        classification: FailureClassification,
        *,
        exit_code: int | None,
        output: str,
    ) -> str:
        if classification.kind is ErrorKind.NOT_INSTALLED:
            return "Codex CLI not found. Install it with: npm i -g @openai/codex"
        if classification.is_auth:
            return "OpenAI authentication required. Run 'codex login' or set OPENAI_API_KEY."
        return super().failure_text(classification, exit_code=exit_code, output=output)

    def handle_message(
        self,
        message: dict[str, Any],
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        kind = message.get("type")
        if kind == "thread.started":
            thread_id = message.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                return [SessionIdChunk(session_id=thread_id)]
            return []
        if kind in ("item.started", "item.completed"):
            item = message.get("item")
            if isinstance(item, dict):
                return self._handle_item(kind, item, emitter)
            return []
        if kind == "turn.failed":
            error = message.get("error")
            detail = error.get("message") if isinstance(error, dict) else None
            self.record_error(state, detail or "Unknown Codex error")
        elif kind == "error":
            self.record_error(state, _first_text(message, "message") or "Unknown Codex error")
        return []

    def _handle_item(
        self,
        kind: str,
        item: dict[str, Any],
        emitter: TurnEmitter,
    ) -> list[Chunk]:
        item_type = item.get("type")
        item_id = str(item.get("id") or "")
        if item_type == "agent_message" and kind == "item.completed":
            text = _first_text(item, "text")
            if not text:
                return []
            return emitter.text(text if text.endswith("\n") else f"{text}\n")
        if item_type != "command_execution" or not item_id:
            return []
        if kind == "item.started":
            return [
                *emitter.close_text(),
                ToolInputStartChunk(tool_call_id=item_id, tool_name="Bash"),
                ToolInputAvailableChunk(
                    tool_call_id=item_id,
                    tool_name="Bash",
                    input={"command": item.get("command", "")},
                ),
            ]
        output = item.get("aggregated_output", "")
        exit_code = item.get("exit_code")
        if item.get("status") == "failed" or (isinstance(exit_code, int) and exit_code != 0):
            return [
                ToolOutputErrorChunk(
                    tool_call_id=item_id,
                    error_text=str(output) or f"Command exited with code {exit_code}",
                ),
            ]
        return [ToolOutputAvailableChunk(tool_call_id=item_id, output=output)]


def _first_text(message: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return ""
