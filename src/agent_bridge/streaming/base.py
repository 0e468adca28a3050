"""Backend adapter interface and per-turn streaming bookkeeping."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, Protocol, TypeVar
from uuid import uuid4

from agent_bridge.models import TurnMode
from agent_bridge.streaming.chunks import (
    Chunk,
    FinishChunk,
    StartChunk,
    TextDeltaChunk,
    TextEndChunk,
    TextStartChunk,
)

T = TypeVar("T")
H = TypeVar("H")

HISTORY_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True, slots=True)
class TurnInput:
    """Inputs for one prompt-in/response-out exchange; immutable for the turn."""

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
    context_history: str | None = None
    system_prompt: str | None = None


def compose_prompt(turn: TurnInput, *, include_system_prompt: bool = False) -> str:
    """Prefix the prompt with re-sent history (and optionally the system prompt)."""

    prompt = turn.prompt
    if turn.context_history:
        prompt = f"{turn.context_history}{HISTORY_SEPARATOR}User: {turn.prompt}"
    if include_system_prompt and turn.system_prompt:
        prompt = f"{turn.system_prompt}{HISTORY_SEPARATOR}{prompt}"
    return prompt


class BackendAdapter(Protocol):
    """Capability surface shared by every backend family."""

    id: str
    name: str
    supports_resume: bool

    async def is_available(self) -> bool:
        """Probe whether the backend can run here; never blocks on the backend."""

    def chat(self, turn: TurnInput) -> AsyncIterator[Chunk]:
        """Run one turn and yield its ordered chunks, ending with exactly one finish."""

    def cancel(self, sub_chat_id: str) -> bool:
        """Stop the live turn of a sub-chat; False when nothing was running."""


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def no_response_message(backend_name: str) -> str:
    """Diagnostic shown in place of a response when a backend printed nothing."""

    return (
        f"No response received from {backend_name}. "
        "Check that the CLI is installed and configured correctly."
    )


@dataclass(slots=True)
class TurnHandle:
    """Live handle of one running turn, owned by its adapter."""

    sub_chat_id: str
    loop: asyncio.AbstractEventLoop
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    on_cancel: Callable[[], None] | None = None

    def request_cancel(self) -> None:
        """Signal cancellation; safe from any thread."""

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._signal()
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self._signal)

    def _signal(self) -> None:
        if self.cancelled.is_set():
            return
        self.cancelled.set()
        if self.on_cancel is not None:
            self.on_cancel()


class LiveHandles(Generic[H]):
    """Keyed map of live handles; the lock never spans an await."""

    def __init__(self) -> None:
        self._items: dict[str, H] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, handle: H) -> H | None:
        """Register handle, returning the one it displaced."""

        with self._lock:
            previous = self._items.get(key)
            self._items[key] = handle
        return previous

    def release(self, key: str, handle: H) -> None:
        """Drop handle unless a newer turn already replaced it."""

        with self._lock:
            if self._items.get(key) is handle:
                del self._items[key]

    def pop(self, key: str) -> H | None:
        with self._lock:
            return self._items.pop(key, None)

    def get(self, key: str) -> H | None:
        with self._lock:
            return self._items.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class TurnEmitter:
    """Span bookkeeping and the exactly-once terminal sequence for one turn."""

    def __init__(self) -> None:
        self._text_id: str | None = None
        self._text_parts: list[str] = []
        self.finished = False

    @property
    def accumulated(self) -> str:
        return "".join(self._text_parts)

    @property
    def has_output(self) -> bool:
        return bool(self.accumulated.strip())

    def start(self) -> list[Chunk]:
        return [StartChunk()]

    def text(self, delta: str) -> list[Chunk]:
        """Emit a delta, opening the span lazily."""

        if self.finished or not delta:
            return []
        chunks: list[Chunk] = []
        if self._text_id is None:
            self._text_id = new_id("text")
            chunks.append(TextStartChunk(id=self._text_id))
        self._text_parts.append(delta)
        chunks.append(TextDeltaChunk(id=self._text_id, delta=delta))
        return chunks

    def close_text(self) -> list[Chunk]:
        if self._text_id is None:
            return []
        text_id, self._text_id = self._text_id, None
        return [TextEndChunk(id=text_id)]

    def finish(self, *failures: Chunk) -> list[Chunk]:
        """Terminal sequence: close the open span, failures, then finish.

        Later calls return nothing so competing terminal paths stay harmless.
        """

        if self.finished:
            return []
        chunks = self.close_text()
        self.finished = True
        chunks.extend(failures)
        chunks.append(FinishChunk())
        return chunks


async def next_or_cancel(
    queue: asyncio.Queue[T],
    cancelled: asyncio.Event,
    *,
    timeout: float | None = None,
) -> T | None:
    """Wait for the next queue item; None when cancelled first.

    Raises TimeoutError when neither arrives within `timeout` seconds.
    """

    if cancelled.is_set():
        return None
    getter = asyncio.ensure_future(queue.get())
    waiter = asyncio.ensure_future(cancelled.wait())
    try:
        done, _ = await asyncio.wait(
            {getter, waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (getter, waiter):
            if not task.done():
                task.cancel()
    if waiter in done or cancelled.is_set():
        return None
    if getter in done:
        return getter.result()
    raise TimeoutError
