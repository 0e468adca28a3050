"""Adapters for CLIs that print plain text to stdout/stderr."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence

from agent_bridge.models import ErrorKind
from agent_bridge.streaming.base import (
    HISTORY_SEPARATOR,
    TurnEmitter,
    TurnInput,
    compose_prompt,
    no_response_message,
)
from agent_bridge.streaming.chunks import Chunk
from agent_bridge.streaming.failures import (
    AMP_AUTH_PATTERNS,
    CURSOR_AUTH_PATTERNS,
    FailureClassification,
)
from agent_bridge.streaming.process import OutputEvent, SubprocessAdapter, TurnState
from agent_bridge.streaming.sanitizer import sanitize_output, sanitize_stream_output


class TextStreamAdapter(SubprocessAdapter):
    """Every non-empty sanitized buffer becomes one text delta."""

    sanitize: Callable[[str], str] = staticmethod(sanitize_output)

    @property
    def fallback_message(self) -> str:
        return no_response_message(self.name)

    def handle_output(
        self,
        event: OutputEvent,
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        return emitter.text(self.sanitize(state.decode(event.stream, event.data)))

    def flush_output(self, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        chunks: list[Chunk] = []
        for stream in list(state.decoders):
            chunks.extend(emitter.text(self.sanitize(state.decode(stream, b"", final=True))))
        return chunks

    def failure_notice(self, classification: FailureClassification) -> str | None:
        """Extra text appended to the response before the failure chunk."""

        return None

    def handle_exit(self, exit_code: int, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        chunks: list[Chunk] = []
        failures: list[Chunk] = []
        if exit_code != 0:
            output = emitter.accumulated
            classification = self.classify_exit(exit_code, output)
            notice = self.failure_notice(classification)
            if notice:
                chunks.extend(emitter.text(notice))
            failures.append(
                self.failure_chunk(classification, exit_code=exit_code, output=output),
            )
        if not emitter.has_output:
            chunks.extend(emitter.text(self.fallback_message))
        chunks.extend(emitter.finish(*failures))
        return chunks


class AmpAdapter(TextStreamAdapter):
    """Amp CLI in execute mode (`amp -x`)."""

    id = "amp"
    name = "Amp"
    auth_patterns = AMP_AUTH_PATTERNS

    def __init__(
        self,
        *,
        command: Sequence[str] = ("amp",),
        kill_grace_seconds: float = 5.0,
        default_model: str | None = None,
        api_key: str | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        env = dict(extra_env or {})
        if api_key:
            env["AMP_API_KEY"] = api_key
        super().__init__(
            command=command,
            kill_grace_seconds=kill_grace_seconds,
            default_model=default_model,
            extra_env=env,
        )

    def build_args(self, turn: TurnInput) -> list[str]:
        model = turn.model or self.default_model
        mode = "rush" if model == "rush" else "smart"
        return ["-x", compose_prompt(turn), "--mode", mode, "--no-ide"]

    def failure_text(
        self,
        classification: FailureClassification,
        *,
        exit_code: int | None,
        output: str,
    ) -> str:
        if classification.kind is ErrorKind.AUTH_REQUIRED:
            return "You need to authenticate with Amp to continue."
        if classification.kind is ErrorKind.BILLING_OR_QUOTA:
            return "Amp execute mode requires paid credits. Add credits at https://ampcode.com/pay"
        if classification.kind is ErrorKind.PROCESS_CRASH and exit_code is not None:
            return f"Amp exited with code {exit_code}. Make sure Amp is properly configured."
        return super().failure_text(classification, exit_code=exit_code, output=output)


_CURSOR_MODELS: dict[str, str] = {
    "auto": "auto",
    "sonnet": "sonnet-4.5",
    "opus": "opus-4.5",
    "haiku": "auto",
    "claude-4.5-sonnet": "sonnet-4.5",
    "claude-4.5-opus": "opus-4.5",
    "claude-opus-4.5": "opus-4.5",
    "claude-sonnet-4.5": "sonnet-4.5",
}

_CURSOR_LOGIN_NOTICE = (
    "\n\n**Authentication Required**\n\n"
    "Please authenticate with Cursor by running this command in your terminal:\n\n"
    "```\ncursor-agent login\n```\n\n"
    "Or set the `CURSOR_API_KEY` environment variable."
)


def resolve_cursor_model(model: str | None) -> str:
    if not model or not model.strip():
        return "auto"
    return _CURSOR_MODELS.get(model, model)


class CursorAdapter(TextStreamAdapter):
    """Cursor Agent CLI in print mode; the root system prompt is sent inline."""

    id = "cursor"
    name = "Cursor"
    auth_patterns = CURSOR_AUTH_PATTERNS
    sanitize = staticmethod(sanitize_stream_output)

    def build_args(self, turn: TurnInput) -> list[str]:
        parts = [part for part in (turn.system_prompt, turn.context_history) if part]
        parts.append(f"User: {turn.prompt}")
        return [
            "--print",
            "--output-format",
            "text",
            "--force",
            "--model",
            resolve_cursor_model(turn.model or self.default_model),
            HISTORY_SEPARATOR.join(parts),
        ]

    def failure_notice(self, classification: FailureClassification) -> str | None:
        if classification.is_auth:
            return _CURSOR_LOGIN_NOTICE
        return None

    def failure_text(
        self,
        classification: FailureClassification,
        *,
        exit_code: int | None,
        output: str,
    ) -> str:
        if classification.is_auth:
            return (
                "Authentication required. Run 'cursor-agent login' in your terminal "
                "to authenticate."
            )
        return super().failure_text(classification, exit_code=exit_code, output=output)
