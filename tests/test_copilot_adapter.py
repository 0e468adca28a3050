from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import allure
import pytest
from conftest import chunk_types, collect, make_turn

from agent_bridge.engine.plan_tools import ToolSpec
from agent_bridge.models import ErrorKind, TurnMode
from agent_bridge.streaming.ask_user import AskUserBridge, AskUserOutcome
from agent_bridge.streaming.chunks import (
    AskUserQuestionChunk,
    AuthErrorChunk,
    ErrorChunk,
    SessionIdChunk,
    TextDeltaChunk,
    ToolInputAvailableChunk,
    ToolOutputAvailableChunk,
    UserQuestion,
)
from agent_bridge.streaming.sdk_session import (
    CopilotAdapter,
    normalize_tool_name,
    resolve_copilot_model,
)

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Copilot SDK Adapter"),
]


def _event(kind: str, **data: Any) -> SimpleNamespace:
    return SimpleNamespace(type=kind, data=data)


class FakeSession:
    def __init__(self, session_id: str, script: list[Any], config: dict[str, Any]) -> None:
        self.session_id = session_id
        self.script = script
        self.config = config
        self.handlers: list[Any] = []
        self.sent: list[dict[str, Any]] = []
        self.aborted = 0

    def on(self, handler: Any) -> Any:
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    async def send(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)
        for step in self.script:
            if callable(step):
                step(self)
                continue
            for handler in list(self.handlers):
                handler(step)

    async def abort(self) -> None:
        self.aborted += 1


class FakeClient:
    def __init__(self, script: list[Any], *, resume_error: Exception | None = None) -> None:
        self.script = script
        self.resume_error = resume_error
        self.started = 0
        self.stopped = 0
        self.created: list[dict[str, Any]] = []
        self.resumed: list[str] = []
        self.sessions: list[FakeSession] = []

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1

    async def create_session(self, config: dict[str, Any]) -> FakeSession:
        self.created.append(config)
        session = FakeSession(f"session-{len(self.sessions) + 1}", self.script, config)
        self.sessions.append(session)
        return session

    async def resume_session(self, session_id: str, config: dict[str, Any]) -> FakeSession:
        if self.resume_error is not None:
            raise self.resume_error
        self.resumed.append(session_id)
        session = FakeSession(session_id, self.script, config)
        self.sessions.append(session)
        return session


def _adapter(client: FakeClient, **kwargs: Any) -> CopilotAdapter:
    return CopilotAdapter(client_factory=lambda: client, **kwargs)


@pytest.mark.asyncio
async def test_deltas_tools_and_idle_make_one_turn(tmp_path: Path) -> None:
    client = FakeClient(
        [
            _event("assistant.message_delta", delta_content="Hel"),
            _event("assistant.message_delta", delta_content="lo"),
            _event("assistant.message", content="Hello"),
            _event("tool.execution_start", tool_call_id="c1", tool_name="bash", arguments={"a": 1}),
            _event(
                "tool.execution_complete",
                tool_call_id="c1",
                success=True,
                result={"content": "ok"},
            ),
            _event("session.idle"),
        ],
    )
    adapter = _adapter(client)

    chunks = await collect(adapter.chat(make_turn(tmp_path, "hi")))

    assert chunk_types(chunks) == [
        "start",
        "session-id",
        "text-start",
        "text-delta",
        "text-delta",
        "text-end",
        "tool-input-start",
        "tool-input-available",
        "tool-output-available",
        "finish",
    ]
    assert chunks[1] == SessionIdChunk(session_id="session-1")
    tool_input = chunks[7]
    assert isinstance(tool_input, ToolInputAvailableChunk)
    assert tool_input.tool_name == "Bash"
    assert isinstance(chunks[8], ToolOutputAvailableChunk)
    assert chunks[8].output == "ok"
    assert client.sessions[0].sent == [{"prompt": "hi"}]
    assert client.sessions[0].handlers == []


@pytest.mark.asyncio
async def test_full_message_without_deltas_is_emitted_once(tmp_path: Path) -> None:
    client = FakeClient(
        [
            _event("assistant.message", content="Answer"),
            _event("assistant.message", content="Answer"),
            _event("session.idle"),
        ],
    )

    chunks = await collect(_adapter(client).chat(make_turn(tmp_path)))

    deltas = [chunk.delta for chunk in chunks if isinstance(chunk, TextDeltaChunk)]
    assert deltas == ["Answer"]


@pytest.mark.asyncio
async def test_session_error_classifies_auth(tmp_path: Path) -> None:
    client = FakeClient([_event("session.error", message="User is not logged in")])

    chunks = await collect(_adapter(client).chat(make_turn(tmp_path)))

    assert chunk_types(chunks) == ["start", "session-id", "auth-error", "finish"]
    assert isinstance(chunks[2], AuthErrorChunk)
    assert chunks[2].backend == "copilot"


@pytest.mark.asyncio
async def test_failed_resume_creates_new_session_with_config(tmp_path: Path) -> None:
    client = FakeClient([_event("session.idle")], resume_error=RuntimeError("expired"))
    adapter = _adapter(client, default_model="sonnet")
    turn = make_turn(
        tmp_path,
        session_id="old-session",
        system_prompt="Rules",
        context_history="History",
    )

    chunks = await collect(adapter.chat(turn))

    assert chunk_types(chunks) == ["start", "session-id", "finish"]
    assert client.created == [
        {
            "streaming": True,
            "working_directory": str(tmp_path),
            "model": "claude-sonnet-4",
            "system_message": {"mode": "replace", "content": "Rules"},
        },
    ]
    assert client.sessions[0].sent == [{"prompt": "History\n\nhello"}]


@pytest.mark.asyncio
async def test_resume_reuses_client_and_session(tmp_path: Path) -> None:
    client = FakeClient([_event("session.idle")])
    adapter = _adapter(client)

    await collect(adapter.chat(make_turn(tmp_path)))
    chunks = await collect(adapter.chat(make_turn(tmp_path, session_id="session-1")))
    await adapter.close()

    assert client.started == 1
    assert client.resumed == ["session-1"]
    assert chunks[1] == SessionIdChunk(session_id="session-1")
    assert client.stopped == 1


@pytest.mark.asyncio
async def test_inactivity_timeout_aborts_session(tmp_path: Path) -> None:
    client = FakeClient([])
    adapter = _adapter(client, inactivity_timeout_seconds=0.05)

    chunks = await collect(adapter.chat(make_turn(tmp_path)))

    assert chunk_types(chunks) == ["start", "session-id", "error", "finish"]
    assert isinstance(chunks[2], ErrorChunk)
    assert chunks[2].category is ErrorKind.TIMEOUT
    assert client.sessions[0].aborted == 1


@pytest.mark.asyncio
async def test_cancel_aborts_session_and_finishes(tmp_path: Path) -> None:
    client = FakeClient([_event("assistant.message_delta", delta_content="partial")])
    adapter = _adapter(client)
    chunks = []

    async for chunk in adapter.chat(make_turn(tmp_path)):
        chunks.append(chunk)
        if isinstance(chunk, TextDeltaChunk):
            assert adapter.cancel("sub-1") is True
    await asyncio.sleep(0)

    assert chunk_types(chunks)[-2:] == ["text-end", "finish"]
    assert client.sessions[0].aborted == 1
    assert adapter.cancel("sub-1") is False


@pytest.mark.asyncio
async def test_closing_stream_early_aborts_session(tmp_path: Path) -> None:
    client = FakeClient([_event("assistant.message_delta", delta_content="partial")])
    adapter = _adapter(client)
    stream = adapter.chat(make_turn(tmp_path))

    async for chunk in stream:
        if isinstance(chunk, TextDeltaChunk):
            break
    await stream.aclose()

    assert client.sessions[0].aborted == 1
    assert adapter.cancel("sub-1") is False


@pytest.mark.asyncio
async def test_finished_turn_does_not_abort_session(tmp_path: Path) -> None:
    client = FakeClient([_event("session.idle")])

    await collect(_adapter(client).chat(make_turn(tmp_path)))

    assert client.sessions[0].aborted == 0


@pytest.mark.asyncio
async def test_pending_question_suspends_inactivity_timeout(tmp_path: Path) -> None:
    bridge = AskUserBridge(plan_timeout_seconds=5)
    outcomes: list[AskUserOutcome] = []
    waiters: list[asyncio.Task[None]] = []

    async def ask_then_idle(session: FakeSession) -> None:
        outcome = await bridge.ask(
            owner="sub-1",
            tool_call_id="tool-1",
            questions=(UserQuestion(question="Which DB?"),),
            mode=TurnMode.PLAN,
            emit=lambda chunk: None,
        )
        outcomes.append(outcome)
        for handler in list(session.handlers):
            handler(_event("session.idle"))

    def start_question(session: FakeSession) -> None:
        waiters.append(asyncio.get_running_loop().create_task(ask_then_idle(session)))

    client = FakeClient([start_question])
    adapter = _adapter(client, inactivity_timeout_seconds=0.1, ask_user=bridge)
    asyncio.get_running_loop().call_later(
        0.35,
        lambda: bridge.submit_answer("tool-1", answers={"Which DB?": "SQLite"}),
    )

    chunks = await asyncio.wait_for(
        collect(adapter.chat(make_turn(tmp_path, mode=TurnMode.PLAN))),
        timeout=5,
    )

    assert chunk_types(chunks) == ["start", "session-id", "finish"]
    assert outcomes[0].answers == {"Which DB?": "SQLite"}
    assert client.sessions[0].aborted == 0


@pytest.mark.asyncio
async def test_plan_mode_registers_tools_and_forwards_their_chunks(tmp_path: Path) -> None:
    bound: dict[str, Any] = {}

    def tool_factory(spec: ToolSpec, bind: Any) -> str:
        bound[spec.name] = bind
        return f"tool:{spec.name}"

    async def handler(arguments: Any, call: Any) -> dict[str, Any]:
        return {}

    def ask_from_tool(session: FakeSession) -> None:
        call = bound["ask_user"]("tool-7")
        assert call.owner == "sub-1"
        assert call.mode is TurnMode.PLAN
        call.emit(
            AskUserQuestionChunk(tool_use_id="tool-7", questions=(UserQuestion(question="Why?"),)),
        )

    client = FakeClient([_event("session.idle")])
    adapter = _adapter(
        client,
        plan_tools=[ToolSpec(name="ask_user", description="", parameters={}, handler=handler)],
        tool_factory=tool_factory,
    )

    agent_chunks = await collect(adapter.chat(make_turn(tmp_path)))
    client.script = [ask_from_tool, _event("session.idle")]
    plan_chunks = await collect(adapter.chat(make_turn(tmp_path, mode=TurnMode.PLAN)))

    assert "tools" not in client.created[0]
    assert client.created[1]["tools"] == ["tool:ask_user"]
    assert chunk_types(agent_chunks) == ["start", "session-id", "finish"]
    assert chunk_types(plan_chunks) == ["start", "session-id", "ask-user-question", "finish"]


@pytest.mark.asyncio
async def test_missing_cli_is_not_installed(tmp_path: Path) -> None:
    class MissingClient(FakeClient):
        async def start(self) -> None:
            raise FileNotFoundError("copilot")

    chunks = await collect(_adapter(MissingClient([])).chat(make_turn(tmp_path)))

    assert chunk_types(chunks) == ["start", "error", "finish"]
    assert chunks[1].category is ErrorKind.NOT_INSTALLED
    assert chunks[1].error_text.startswith("GitHub Copilot CLI not found.")


def test_tool_names_and_models_are_normalized() -> None:
    assert normalize_tool_name("view") == "Read"
    assert normalize_tool_name("customTool") == "CustomTool"
    assert resolve_copilot_model("") is None
    assert resolve_copilot_model("claude-4.5-sonnet") == "claude-sonnet-4.5"
    assert resolve_copilot_model("gpt-5") == "gpt-5"
