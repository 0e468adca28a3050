"""Turn host: runs one backend turn with context injection and post-turn state updates."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_bridge.config import Settings
from agent_bridge.engine.briefs import (
    build_goal_brief,
    build_task_brief,
    wrap_prompt_with_instructions,
)
from agent_bridge.engine.completion import CompletionRecorder
from agent_bridge.engine.conversation import ContextOptions, build_context
from agent_bridge.engine.plan_output import PLAN_OUTPUT_FORMAT, PlanOutputApplier
from agent_bridge.models import ErrorKind, TurnMode
from agent_bridge.repository import StateRepository
from agent_bridge.streaming.ask_user import AskUserBridge
from agent_bridge.streaming.base import (
    HISTORY_SEPARATOR,
    BackendAdapter,
    TurnEmitter,
    TurnInput,
    new_id,
    no_response_message,
)
from agent_bridge.streaming.chunks import (
    FAILURE_CHUNKS,
    Chunk,
    ErrorChunk,
    FinishChunk,
    SessionIdChunk,
    StartChunk,
    TextDeltaChunk,
    TextEndChunk,
    TextStartChunk,
    ToolInputAvailableChunk,
    ToolOutputAvailableChunk,
    ToolOutputErrorChunk,
)
from agent_bridge.streaming.registry import AdapterRegistry

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, str], None]


@dataclass(frozen=True, slots=True)
class TurnRequest:
    """One user prompt routed to a backend for a sub-chat."""

    sub_chat_id: str
    chat_id: str
    prompt: str
    cwd: Path
    backend_id: str
    mode: TurnMode = TurnMode.AGENT
    session_id: str | None = None
    model: str | None = None
    goal_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class _TurnTranscript:
    """Assistant message assembled from the chunks of one turn."""

    parts: list[dict[str, Any]] = field(default_factory=list)
    open_spans: dict[str, list[str]] = field(default_factory=dict)
    started: bool = False
    failed: bool = False
    finished: bool = False

    def observe(self, chunk: Chunk) -> None:
        if isinstance(chunk, StartChunk):
            self.started = True
        elif isinstance(chunk, TextStartChunk):
            self.open_spans[chunk.id] = []
        elif isinstance(chunk, TextDeltaChunk):
            self.open_spans.setdefault(chunk.id, []).append(chunk.delta)
        elif isinstance(chunk, TextEndChunk):
            self._close_span(chunk.id)
        elif isinstance(chunk, ToolInputAvailableChunk):
            self.parts.append(
                {
                    "type": "tool_use",
                    "toolCallId": chunk.tool_call_id,
                    "toolName": chunk.tool_name,
                    "toolInput": dict(chunk.input),
                },
            )
        elif isinstance(chunk, ToolOutputAvailableChunk):
            self.parts.append(
                {
                    "type": "tool_result",
                    "toolCallId": chunk.tool_call_id,
                    "toolResult": _render_output(chunk.output),
                },
            )
        elif isinstance(chunk, ToolOutputErrorChunk):
            self.parts.append(
                {
                    "type": "tool_result",
                    "toolCallId": chunk.tool_call_id,
                    "toolResult": chunk.error_text,
                    "isError": True,
                },
            )
        elif isinstance(chunk, FAILURE_CHUNKS):
            self.failed = True

    def _close_span(self, span_id: str) -> None:
        deltas = self.open_spans.pop(span_id, None)
        if deltas:
            self.parts.append({"type": "text", "text": "".join(deltas)})

    def close_open_spans(self) -> list[Chunk]:
        """text-end for every span the adapter left open."""

        chunks: list[Chunk] = []
        for span_id in list(self.open_spans):
            self._close_span(span_id)
            chunks.append(TextEndChunk(id=span_id))
        return chunks

    @property
    def text(self) -> str:
        texts = [part["text"] for part in self.parts if part["type"] == "text"]
        texts.extend("".join(deltas) for deltas in self.open_spans.values())
        return "\n".join(texts)


class TurnService:
    """Entry point for running, cancelling and answering turns.

    Owns no global state: the registry, repository and ask-user bridge are
    constructed once by the caller and passed in.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: AdapterRegistry,
        repository: StateRepository,
        ask_user: AskUserBridge,
        settings: Settings,
        system_prompt: str | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.ask_user = ask_user
        self.settings = settings
        self.system_prompt = system_prompt
        self.on_error = on_error
        self.completion = CompletionRecorder(repository)
        self.plan_output = PlanOutputApplier(repository)
        self._active: dict[str, BackendAdapter] = {}
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    async def availability(self) -> dict[str, bool]:
        return {
            adapter.id: await adapter.is_available() for adapter in self.registry.adapters()
        }

    def submit_answer(
        self,
        tool_call_id: str,
        *,
        answers: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        return self.ask_user.submit_answer(tool_call_id, answers=answers, error=error)

    def cancel(self, sub_chat_id: str) -> bool:
        """Stop the live turn of a sub-chat; repeated calls are no-ops."""

        with self._lock:
            adapter = self._active.get(sub_chat_id)
            if adapter is not None:
                self._cancelled.add(sub_chat_id)
        self.ask_user.cancel_owner(sub_chat_id)
        if adapter is None:
            return False
        return adapter.cancel(sub_chat_id)

    async def run_turn(self, request: TurnRequest) -> AsyncIterator[Chunk]:
        adapter = self.registry.get(request.backend_id)
        if adapter is None:
            for chunk in _unavailable(request.backend_id, f"Unknown backend: {request.backend_id}"):
                yield chunk
            return
        if not await adapter.is_available():
            message = (
                f"{adapter.name} is not available. "
                "Install its CLI and make sure it is on PATH."
            )
            for chunk in _unavailable(adapter.id, message):
                yield chunk
            return

        turn = self._prepare(request, adapter)
        self.repository.append_message(
            request.sub_chat_id,
            {
                "id": new_id("msg"),
                "role": "user",
                "parts": [{"type": "text", "text": request.prompt}],
            },
        )
        with self._lock:
            self._active[request.sub_chat_id] = adapter
            self._cancelled.discard(request.sub_chat_id)

        transcript = _TurnTranscript()
        status = "complete"
        try:
            try:
                async with aclosing(adapter.chat(turn)) as stream:
                    async for chunk in stream:
                        if isinstance(chunk, FinishChunk):
                            transcript.finished = True
                            break
                        transcript.observe(chunk)
                        if isinstance(chunk, SessionIdChunk):
                            self.repository.save_session_id(request.sub_chat_id, chunk.session_id)
                        yield chunk
            except Exception as error:
                logger.exception("Backend %s turn failed", adapter.id)
                self._report_error(adapter.id, str(error))
                for chunk in self._protocol_failure(transcript, adapter, str(error)):
                    yield chunk
                status = "error"
                return

            if not transcript.finished:
                logger.warning("Backend %s ended without finish", adapter.id)
                self._report_error(adapter.id, "stream ended without finish")
                for chunk in self._protocol_failure(
                    transcript,
                    adapter,
                    "stream ended unexpectedly",
                ):
                    yield chunk
                status = "error"
                return

            for chunk in transcript.close_open_spans():
                yield chunk
            if self._was_cancelled(request.sub_chat_id):
                status = "cancelled"
            elif transcript.failed:
                status = "error"
            elif transcript.text.strip() == no_response_message(adapter.name):
                logger.warning("Backend %s returned no response; state left untouched", adapter.id)
                status = "empty"
            else:
                for chunk in self._after_turn(request, transcript.text):
                    yield chunk
            yield FinishChunk()
        finally:
            with self._lock:
                if self._active.get(request.sub_chat_id) is adapter:
                    del self._active[request.sub_chat_id]
                self._cancelled.discard(request.sub_chat_id)
            transcript.close_open_spans()
            self._save_assistant_message(request, adapter, transcript, status)

    def _prepare(self, request: TurnRequest, adapter: BackendAdapter) -> TurnInput:
        previous = self.repository.get_sub_chat(request.sub_chat_id)
        sub_chat = self.repository.ensure_sub_chat(
            request.sub_chat_id,
            chat_id=request.chat_id,
            mode=request.mode,
            backend_id=adapter.id,
        )

        session_id = request.session_id
        if session_id is None and previous is not None and previous.backend_id == adapter.id:
            session_id = previous.session_id

        context_history: str | None = None
        if not (adapter.supports_resume and session_id) and sub_chat.messages:
            options = ContextOptions(
                max_tokens=self.settings.context.max_tokens,
                max_messages=self.settings.context.max_messages,
                truncate_tool_output=self.settings.context.truncate_tool_output,
                include_header=self.settings.context.include_header,
            )
            context_history = build_context(sub_chat.messages, options)

        return TurnInput(
            sub_chat_id=request.sub_chat_id,
            chat_id=request.chat_id,
            prompt=self._inject_brief(request),
            cwd=request.cwd,
            backend_id=adapter.id,
            mode=request.mode,
            session_id=session_id if adapter.supports_resume else None,
            model=request.model,
            goal_id=request.goal_id,
            task_id=request.task_id,
            context_history=context_history,
            system_prompt=self._system_prompt(request.mode),
        )

    def _inject_brief(self, request: TurnRequest) -> str:
        try:
            if request.task_id:
                brief = build_task_brief(self.repository, request.task_id)
                return wrap_prompt_with_instructions(
                    f"{brief}{HISTORY_SEPARATOR}{request.prompt}",
                )
            if request.goal_id:
                brief = build_goal_brief(self.repository, request.goal_id)
                return f"{brief}{HISTORY_SEPARATOR}{request.prompt}"
        except LookupError as error:
            logger.warning("Could not build brief: %s", error)
        return request.prompt

    def _system_prompt(self, mode: TurnMode) -> str | None:
        if mode is not TurnMode.PLAN:
            return self.system_prompt
        if self.system_prompt:
            return f"{self.system_prompt}\n\n{PLAN_OUTPUT_FORMAT}"
        return PLAN_OUTPUT_FORMAT

    def _after_turn(self, request: TurnRequest, text: str) -> list[Chunk]:
        chunks: list[Chunk] = []
        if request.mode is TurnMode.PLAN:
            try:
                chunks.extend(
                    self.plan_output.apply(
                        text,
                        chat_id=request.chat_id,
                        workspace_path=str(request.cwd),
                    ),
                )
            except Exception as error:
                logger.exception("Failed to apply plan output")
                self._report_error("plan_output", str(error))
        if request.task_id:
            try:
                self.completion.record(request.task_id, text)
            except Exception as error:
                logger.exception("Failed to record completion of task %s", request.task_id)
                self._report_error("completion", str(error))
        return chunks

    def _protocol_failure(
        self,
        transcript: _TurnTranscript,
        adapter: BackendAdapter,
        detail: str,
    ) -> list[Chunk]:
        chunks: list[Chunk] = [] if transcript.started else [StartChunk()]
        chunks.extend(transcript.close_open_spans())
        chunks.append(
            ErrorChunk(
                error_text=f"{adapter.name} stream failed: {detail}",
                category=ErrorKind.PROTOCOL_ERROR,
                backend=adapter.id,
            ),
        )
        chunks.append(FinishChunk())
        transcript.failed = True
        return chunks

    def _was_cancelled(self, sub_chat_id: str) -> bool:
        with self._lock:
            return sub_chat_id in self._cancelled

    def _report_error(self, source: str, message: str) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(source, message)
        except Exception:
            logger.exception("Error callback failed")

    def _save_assistant_message(
        self,
        request: TurnRequest,
        adapter: BackendAdapter,
        transcript: _TurnTranscript,
        status: str,
    ) -> None:
        if not transcript.parts:
            return
        try:
            self.repository.append_message(
                request.sub_chat_id,
                {
                    "id": new_id("msg"),
                    "role": "assistant",
                    "parts": transcript.parts,
                    "metadata": {"backend": adapter.id, "status": status},
                },
            )
        except Exception:
            logger.exception("Failed to persist assistant message for %s", request.sub_chat_id)


def _unavailable(backend_id: str, message: str) -> list[Chunk]:
    emitter = TurnEmitter()
    return [
        *emitter.start(),
        *emitter.text(message),
        *emitter.finish(
            ErrorChunk(error_text=message, category=ErrorKind.NOT_INSTALLED, backend=backend_id),
        ),
    ]


def _render_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)
