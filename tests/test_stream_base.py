from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest
from conftest import chunk_types, make_turn

from agent_bridge.streaming.base import (
    LiveHandles,
    TurnEmitter,
    TurnHandle,
    compose_prompt,
    next_or_cancel,
)
from agent_bridge.streaming.chunks import ErrorChunk, TextDeltaChunk, TextStartChunk

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Turn Lifecycle"),
]


def test_emitter_opens_span_lazily_and_finishes_once() -> None:
    emitter = TurnEmitter()

    chunks = [*emitter.start(), *emitter.text(""), *emitter.text("Hel"), *emitter.text("lo")]
    chunks += emitter.finish(ErrorChunk(error_text="boom"))
    chunks += emitter.finish()

    assert chunk_types(chunks) == [
        "start",
        "text-start",
        "text-delta",
        "text-delta",
        "text-end",
        "error",
        "finish",
    ]
    assert isinstance(chunks[1], TextStartChunk)
    assert isinstance(chunks[2], TextDeltaChunk)
    assert chunks[1].id == chunks[2].id == chunks[3].id == chunks[4].id
    assert emitter.accumulated == "Hello"
    assert emitter.text("late") == []


def test_close_text_starts_a_new_span_afterwards() -> None:
    emitter = TurnEmitter()
    first = emitter.text("a")
    closed = emitter.close_text()
    second = emitter.text("b")

    assert closed[0].id == first[0].id
    assert second[0].id != first[0].id
    assert emitter.close_text() != []
    assert emitter.close_text() == []


def test_live_handles_release_keeps_newer_handle() -> None:
    loop = asyncio.new_event_loop()
    try:
        handles: LiveHandles[TurnHandle] = LiveHandles()
        old = TurnHandle(sub_chat_id="sub-1", loop=loop)
        new = TurnHandle(sub_chat_id="sub-1", loop=loop)

        assert handles.claim("sub-1", old) is None
        assert handles.claim("sub-1", new) is old
        handles.release("sub-1", old)
        assert handles.get("sub-1") is new
        assert handles.pop("sub-1") is new
        assert handles.pop("sub-1") is None
        assert len(handles) == 0
    finally:
        loop.close()


@pytest.mark.asyncio
async def test_request_cancel_runs_callback_once() -> None:
    calls: list[str] = []
    handle = TurnHandle(sub_chat_id="sub-1", loop=asyncio.get_running_loop())
    handle.on_cancel = lambda: calls.append("cancel")

    handle.request_cancel()
    handle.request_cancel()

    assert handle.cancelled.is_set()
    assert calls == ["cancel"]


@pytest.mark.asyncio
async def test_next_or_cancel_prefers_cancellation_and_times_out() -> None:
    queue: asyncio.Queue[int] = asyncio.Queue()
    cancelled = asyncio.Event()

    queue.put_nowait(1)
    assert await next_or_cancel(queue, cancelled) == 1

    with pytest.raises(TimeoutError):
        await next_or_cancel(queue, cancelled, timeout=0.01)

    cancelled.set()
    queue.put_nowait(2)
    assert await next_or_cancel(queue, cancelled) is None


def test_compose_prompt_prefixes_history(tmp_path: Path) -> None:
    turn = make_turn(tmp_path, context_history="# Conversation History", system_prompt="Be brief")

    assert compose_prompt(turn) == "# Conversation History\n\n---\n\nUser: hello"
    assert compose_prompt(turn, include_system_prompt=True).startswith("Be brief\n\n---\n\n")
    assert compose_prompt(make_turn(tmp_path)) == "hello"
