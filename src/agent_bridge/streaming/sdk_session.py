"""GitHub Copilot adapter on the long-lived `github-copilot-sdk` session client."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.engine.plan_tools import ToolCall, ToolSpec
from agent_bridge.models import ErrorKind, TurnMode
from agent_bridge.streaming.ask_user import AskUserBridge
from agent_bridge.streaming.base import (
    LiveHandles,
    TurnEmitter,
    TurnHandle,
    TurnInput,
    new_id,
    next_or_cancel,
)
from agent_bridge.streaming.chunks import (
    AuthErrorChunk,
    Chunk,
    ErrorChunk,
    SessionIdChunk,
    ToolInputAvailableChunk,
    ToolInputStartChunk,
    ToolOutputAvailableChunk,
    ToolOutputErrorChunk,
)
from agent_bridge.streaming.failures import (
    COPILOT_AUTH_PATTERNS,
    classify_exception,
    classify_failure,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Any]
ToolFactory = Callable[[ToolSpec, Callable[[str], ToolCall]], Any]

_TOOL_NAMES: dict[str, str] = {
    "bash": "Bash",
    "write_bash": "Bash",
    "read_bash": "Bash",
    "stop_bash": "Bash",
    "list_bash": "Bash",
    "view": "Read",
    "grep": "Grep",
    "glob": "Glob",
    "edit": "Edit",
    "create": "Write",
    "web_search": "WebSearch",
    "web_fetch": "WebFetch",
    "task": "Task",
    "report_intent": "ReportIntent",
    "update_todo": "TodoWrite",
    "ask_user": "AskUserQuestion",
    "store_memory": "StoreMemory",
    "create_goal": "CreateGoal",
    "create_task": "CreateTask",
}

_COPILOT_MODELS: dict[str, str] = {
    "claude-4.5-sonnet": "claude-sonnet-4.5",
    "claude-4-sonnet": "claude-sonnet-4",
    "sonnet": "claude-sonnet-4",
    "sonnet-4.5": "claude-sonnet-4.5",
    "sonnet-4": "claude-sonnet-4",
}


def normalize_tool_name(tool_name: str) -> str:
    mapped = _TOOL_NAMES.get(tool_name.lower())
    if mapped:
        return mapped
    return tool_name[:1].upper() + tool_name[1:]


def resolve_copilot_model(model: str | None) -> str | None:
    """None keeps the Copilot default model."""

    if not model or not model.strip():
        return None
    normalized = model.strip().lower()
    return _COPILOT_MODELS.get(normalized, model)


def default_client_factory(cli_path: str | None = None) -> ClientFactory:
    """Copilot SDK client factory with lazy import."""

    def build() -> Any:
        from copilot import CopilotClient

        options: dict[str, Any] = {}
        if cli_path:
            options["cli_path"] = cli_path
        return CopilotClient(options)

    return build


def sdk_tool(spec: ToolSpec, bind: Callable[[str], ToolCall]) -> Any:
    """Wrap a ToolSpec as a Copilot SDK tool; results go back as JSON text."""

    from copilot.types import Tool

    async def handler(invocation: Any) -> dict[str, Any]:
        arguments = _field(invocation, "arguments") or {}
        tool_call_id = _field(invocation, "tool_call_id") or new_id("tool")
        result = await spec.handler(arguments, bind(tool_call_id))
        return {
            "textResultForLlm": json.dumps(result, ensure_ascii=False),
            "resultType": "failure" if "error" in result else "success",
        }

    return Tool(
        name=spec.name,
        description=spec.description,
        handler=handler,
        parameters=spec.parameters,
    )


@dataclass(slots=True)
class _MessageState:
    """Per-turn delta/full-message deduplication."""

    received_deltas: bool = False
    seen_messages: set[str] = field(default_factory=set)


@dataclass(slots=True)
class _Queued:
    event: Any = None
    chunk: Chunk | None = None


class CopilotAdapter:
    """Streams a turn through a resumable Copilot session.

    The client is started once and shared by all turns. Sessions are never
    destroyed after a turn so the next message can resume them.
    """

    id = "copilot"
    name = "GitHub Copilot"
    supports_resume = True
    auth_patterns = COPILOT_AUTH_PATTERNS

    def __init__(  # noqa: PLR0913
        self,
        *,
        cli_path: str | None = None,
        inactivity_timeout_seconds: float = 600.0,
        default_model: str | None = None,
        plan_tools: Sequence[ToolSpec] = (),
        ask_user: AskUserBridge | None = None,
        client_factory: ClientFactory | None = None,
        tool_factory: ToolFactory = sdk_tool,
    ) -> None:
        self.cli_path = cli_path
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.default_model = default_model
        self.plan_tools = list(plan_tools)
        self.ask_user = ask_user
        self._client_factory = client_factory or default_client_factory(cli_path)
        self._tool_factory = tool_factory
        self._client: Any = None
        self._client_lock: asyncio.Lock | None = None
        self._handles: LiveHandles[TurnHandle] = LiveHandles()
        self._aborts: set[asyncio.Task[None]] = set()

    async def is_available(self) -> bool:
        return shutil.which(self.cli_path or "copilot") is not None

    def cancel(self, sub_chat_id: str) -> bool:
        handle = self._handles.pop(sub_chat_id)
        if handle is None:
            return False
        logger.info("Cancelling copilot session for sub-chat %s", sub_chat_id)
        handle.request_cancel()
        if self.ask_user is not None:
            self.ask_user.cancel_owner(sub_chat_id)
        return True

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.stop()

    async def _ensure_client(self) -> Any:
        if self._client_lock is None:
            self._client_lock = asyncio.Lock()
        async with self._client_lock:
            if self._client is None:
                client = self._client_factory()
                await client.start()
                logger.info("Copilot client started")
                self._client = client
        return self._client

    def _session_tools(self, turn: TurnInput, emit: Callable[[Chunk], None]) -> list[Any]:
        if turn.mode is not TurnMode.PLAN or not self.plan_tools:
            return []

        def bind(tool_call_id: str) -> ToolCall:
            return ToolCall(
                tool_call_id=tool_call_id,
                owner=turn.sub_chat_id,
                mode=turn.mode,
                emit=emit,
                chat_id=turn.chat_id,
                cwd=str(turn.cwd),
            )

        return [self._tool_factory(spec, bind) for spec in self.plan_tools]

    async def _open_session(self, client: Any, turn: TurnInput, tools: list[Any]) -> Any:
        if turn.session_id:
            try:
                session = await client.resume_session(
                    turn.session_id,
                    {"tools": tools} if tools else {},
                )
            except Exception as error:  # noqa: BLE001
                logger.info(
                    "Could not resume copilot session %s, creating a new one: %s",
                    turn.session_id,
                    error,
                )
            else:
                logger.info("Resumed copilot session %s", turn.session_id)
                return session

        config: dict[str, Any] = {"streaming": True, "working_directory": str(turn.cwd)}
        model = resolve_copilot_model(turn.model or self.default_model)
        if model:
            config["model"] = model
        if turn.system_prompt:
            config["system_message"] = {"mode": "replace", "content": turn.system_prompt}
        if tools:
            config["tools"] = tools
        return await client.create_session(config)

    async def chat(self, turn: TurnInput) -> AsyncIterator[Chunk]:
        emitter = TurnEmitter()
        loop = asyncio.get_running_loop()
        handle = TurnHandle(sub_chat_id=turn.sub_chat_id, loop=loop)
        displaced = self._handles.claim(turn.sub_chat_id, handle)
        if displaced is not None:
            displaced.request_cancel()

        queue: asyncio.Queue[_Queued] = asyncio.Queue()

        def push(item: _Queued) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, item)

        unsubscribe: Callable[[], None] | None = None
        session: Any = None
        try:
            for chunk in emitter.start():
                yield chunk
            client = await self._ensure_client()
            tools = self._session_tools(turn, lambda chunk: push(_Queued(chunk=chunk)))
            session = await self._open_session(client, turn, tools)

            session_id = getattr(session, "session_id", None) or getattr(session, "id", None)
            if session_id:
                yield SessionIdChunk(session_id=str(session_id))

            handle.on_cancel = lambda: self._abort_later(loop, session)
            if handle.cancelled.is_set():
                for chunk in emitter.finish():
                    yield chunk
                return

            unsubscribe = session.on(lambda event: push(_Queued(event=event)))
            await session.send({"prompt": _user_prompt(turn)})

            state = _MessageState()
            while True:
                try:
                    item = await next_or_cancel(
                        queue,
                        handle.cancelled,
                        timeout=self.inactivity_timeout_seconds,
                    )
                except TimeoutError:
                    if self._awaiting_answer(turn.sub_chat_id):
                        continue
                    logger.warning(
                        "Copilot session went silent for %.0fs (sub-chat %s)",
                        self.inactivity_timeout_seconds,
                        turn.sub_chat_id,
                    )
                    await _abort(session)
                    for chunk in emitter.finish(
                        ErrorChunk(
                            error_text=(
                                "Copilot session timed out after "
                                f"{self.inactivity_timeout_seconds:.0f}s of inactivity"
                            ),
                            category=ErrorKind.TIMEOUT,
                            backend=self.id,
                        ),
                    ):
                        yield chunk
                    return
                if item is None:
                    logger.info("Copilot turn cancelled for sub-chat %s", turn.sub_chat_id)
                    for chunk in emitter.finish():
                        yield chunk
                    return
                if item.chunk is not None:
                    yield item.chunk
                    continue
                chunks, done = self._handle_event(item.event, emitter, state)
                for chunk in chunks:
                    yield chunk
                if done:
                    return
        except Exception as error:
            logger.warning("Copilot turn failed: %s", error)
            for chunk in emitter.finish(self._exception_chunk(error)):
                yield chunk
        finally:
            if unsubscribe is not None:
                unsubscribe()
            self._handles.release(turn.sub_chat_id, handle)
            if session is not None and not emitter.finished:
                logger.info("Copilot stream closed early, aborting sub-chat %s", turn.sub_chat_id)
                await _abort(session)

    def _abort_later(self, loop: asyncio.AbstractEventLoop, session: Any) -> None:
        task = loop.create_task(_abort(session))
        self._aborts.add(task)
        task.add_done_callback(self._aborts.discard)

    def _awaiting_answer(self, sub_chat_id: str) -> bool:
        """A pending question produces no session events, so silence is expected."""

        return self.ask_user is not None and bool(self.ask_user.pending_ids(sub_chat_id))

    def _exception_chunk(self, error: Exception) -> Chunk:
        classification = classify_exception(error, auth_patterns=self.auth_patterns)
        if classification.kind is ErrorKind.NOT_INSTALLED:
            return ErrorChunk(
                error_text=(
                    "GitHub Copilot CLI not found. "
                    "Install it from: https://github.com/github/copilot-cli"
                ),
                category=ErrorKind.NOT_INSTALLED,
                backend=self.id,
            )
        if classification.is_auth:
            return AuthErrorChunk(
                error_text="GitHub Copilot is not authenticated. Run `copilot /login`.",
                backend=self.id,
            )
        return ErrorChunk(
            error_text=f"Copilot SDK error: {error}",
            category=classification.kind,
            backend=self.id,
        )

    def _handle_event(
        self,
        event: Any,
        emitter: TurnEmitter,
        state: _MessageState,
    ) -> tuple[list[Chunk], bool]:
        kind = _event_type(event)
        data = getattr(event, "data", None)
        if kind == "assistant.message_delta":
            state.received_deltas = True
            return emitter.text(_field(data, "delta_content") or ""), False
        if kind == "assistant.message":
            chunks: list[Chunk] = []
            if not state.received_deltas:
                content = _message_content(data)
                key = content.strip()
                if key and key not in state.seen_messages:
                    state.seen_messages.add(key)
                    chunks = emitter.text(content)
            state.received_deltas = False
            return chunks, False
        if kind == "tool.execution_start":
            tool_call_id = _field(data, "tool_call_id") or new_id("tool")
            tool_name = normalize_tool_name(_field(data, "tool_name") or "unknown")
            return [
                *emitter.close_text(),
                ToolInputStartChunk(tool_call_id=tool_call_id, tool_name=tool_name),
                ToolInputAvailableChunk(
                    tool_call_id=tool_call_id,
                    tool_name=tool_name,
                    input=_field(data, "arguments") or {},
                ),
            ], False
        if kind == "tool.execution_complete":
            return [_tool_result(data)], False
        if kind == "session.error":
            message = _field(data, "message") or "Unknown Copilot SDK error"
            logger.warning("Copilot session error: %s", message)
            classification = classify_failure(
                output=message,
                exit_code=None,
                auth_patterns=self.auth_patterns,
            )
            if classification.is_auth:
                return emitter.finish(AuthErrorChunk(error_text=message, backend=self.id)), True
            return emitter.finish(
                ErrorChunk(error_text=message, category=classification.kind, backend=self.id),
            ), True
        if kind == "session.idle":
            return emitter.finish(), True
        return [], False


async def _abort(session: Any) -> None:
    try:
        await session.abort()
    except Exception as error:  # noqa: BLE001
        logger.info("Copilot abort failed: %s", error)


def _user_prompt(turn: TurnInput) -> str:
    if turn.context_history:
        return f"{turn.context_history}\n\n{turn.prompt}"
    return turn.prompt


def _event_type(event: Any) -> str:
    kind = getattr(event, "type", None)
    return str(getattr(kind, "value", kind))


def _field(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _message_content(data: Any) -> str:
    raw = _field(data, "content")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return "".join(
            str(_field(part, "text"))
            for part in raw
            if _field(part, "type") == "text" and _field(part, "text")
        )
    text = _field(raw, "text")
    if isinstance(text, str):
        return text
    message = _field(data, "message")
    if isinstance(message, str):
        return message
    nested = _field(message, "content")
    return nested if isinstance(nested, str) else ""


def _tool_result(data: Any) -> Chunk:
    tool_call_id = _field(data, "tool_call_id") or ""
    result = _field(data, "result")
    error = _field(data, "error")
    if _field(data, "success") is False and error is not None:
        return ToolOutputErrorChunk(
            tool_call_id=tool_call_id,
            error_text=_field(error, "message") or "Tool execution failed",
        )
    return ToolOutputAvailableChunk(tool_call_id=tool_call_id, output=_field(result, "content"))
