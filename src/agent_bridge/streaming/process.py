"""Subprocess lifecycle shared by CLI-backed adapters."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_bridge.models import ErrorKind
from agent_bridge.streaming.base import (
    LiveHandles,
    TurnEmitter,
    TurnHandle,
    TurnInput,
    next_or_cancel,
)
from agent_bridge.streaming.chunks import AuthErrorChunk, Chunk, ErrorChunk
from agent_bridge.streaming.failures import (
    FailureClassification,
    classify_exception,
    classify_failure,
    failure_message,
)

logger = logging.getLogger(__name__)

PLAIN_OUTPUT_ENV: dict[str, str] = {
    "TERM": "xterm-256color",
    "NO_COLOR": "1",
    "CLICOLOR": "0",
    "FORCE_COLOR": "0",
}

_READ_SIZE = 4096


@dataclass(slots=True)
class OutputEvent:
    """One queue item produced by the pipe readers."""

    stream: str
    data: bytes = b""
    exit_code: int | None = None

    @property
    def is_exit(self) -> bool:
        return self.stream == "exit"


@dataclass(slots=True)
class TurnState:
    """Mutable per-turn parsing state owned by the running `chat` call."""

    decoders: dict[str, codecs.IncrementalDecoder] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def decode(self, stream: str, data: bytes, *, final: bool = False) -> str:
        decoder = self.decoders.get(stream)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self.decoders[stream] = decoder
        return decoder.decode(data, final)


async def spawn_backend(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
) -> asyncio.subprocess.Process:
    """Start backend with closed stdin and piped output."""

    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=dict(env),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


def start_pumps(
    process: asyncio.subprocess.Process,
    queue: asyncio.Queue[OutputEvent],
) -> list[asyncio.Task[None]]:
    """Read stdout/stderr concurrently; an exit event follows both EOFs."""

    async def pump(reader: asyncio.StreamReader | None, stream: str) -> None:
        if reader is None:
            return
        while True:
            data = await reader.read(_READ_SIZE)
            if not data:
                return
            await queue.put(OutputEvent(stream=stream, data=data))

    stdout_task = asyncio.create_task(pump(process.stdout, "stdout"))
    stderr_task = asyncio.create_task(pump(process.stderr, "stderr"))

    async def wait_exit() -> None:
        await asyncio.gather(stdout_task, stderr_task)
        exit_code = await process.wait()
        await queue.put(OutputEvent(stream="exit", exit_code=exit_code))

    return [stdout_task, stderr_task, asyncio.create_task(wait_exit())]


async def terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    """SIGTERM, then SIGKILL once the grace period runs out."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _send_sigterm(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return


class SubprocessAdapter:
    """Template for adapters that run one CLI process per turn.

    Subclasses build argv, decode output events into chunks and decide the
    terminal chunks from the exit code.
    """

    id = "subprocess"
    name = "Subprocess"
    supports_resume = False
    auth_patterns: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        command: Sequence[str],
        kill_grace_seconds: float = 5.0,
        default_model: str | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError(f"{self.name} command must not be empty.")
        self.command = list(command)
        self.kill_grace_seconds = kill_grace_seconds
        self.default_model = default_model
        self.extra_env = dict(extra_env or {})
        self._handles: LiveHandles[TurnHandle] = LiveHandles()

    async def is_available(self) -> bool:
        executable = self.command[0]
        if os.sep in executable:
            return os.access(executable, os.X_OK)
        return shutil.which(executable) is not None

    def cancel(self, sub_chat_id: str) -> bool:
        handle = self._handles.pop(sub_chat_id)
        if handle is None:
            return False
        logger.info("Cancelling %s turn for sub-chat %s", self.id, sub_chat_id)
        handle.request_cancel()
        return True

    def build_args(self, turn: TurnInput) -> list[str]:
        raise NotImplementedError

    def build_env(self, turn: TurnInput) -> dict[str, str]:
        env = os.environ.copy()
        env.update(PLAIN_OUTPUT_ENV)
        env.update(self.extra_env)
        return env

    def handle_output(
        self,
        event: OutputEvent,
        emitter: TurnEmitter,
        state: TurnState,
    ) -> list[Chunk]:
        raise NotImplementedError

    def flush_output(self, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        """Drain decoder/line buffers once both pipes hit EOF."""

        return []

    def handle_exit(self, exit_code: int, emitter: TurnEmitter, state: TurnState) -> list[Chunk]:
        raise NotImplementedError

    def failure_chunk(
        self,
        classification: FailureClassification,
        *,
        exit_code: int | None,
        output: str,
    ) -> Chunk:
        text = self.failure_text(classification, exit_code=exit_code, output=output)
        if classification.is_auth:
            return AuthErrorChunk(error_text=text, backend=self.id)
        return ErrorChunk(error_text=text, category=classification.kind, backend=self.id)

    def failure_text(
        self,
        classification: FailureClassification,
        *,
        exit_code: int | None,
        output: str,
    ) -> str:
        return failure_message(
            classification,
            backend_name=self.name,
            exit_code=exit_code,
            output=output,
        )

    def classify_exit(self, exit_code: int, output: str) -> FailureClassification:
        return classify_failure(
            output=output,
            exit_code=exit_code,
            auth_patterns=self.auth_patterns,
        )

    async def chat(self, turn: TurnInput) -> AsyncIterator[Chunk]:
        emitter = TurnEmitter()
        state = TurnState()
        handle = TurnHandle(sub_chat_id=turn.sub_chat_id, loop=asyncio.get_running_loop())
        displaced = self._handles.claim(turn.sub_chat_id, handle)
        if displaced is not None:
            displaced.request_cancel()

        process: asyncio.subprocess.Process | None = None
        pumps: list[asyncio.Task[None]] = []
        try:
            for chunk in emitter.start():
                yield chunk
            argv = [*self.command, *self.build_args(turn)]
            try:
                process = await spawn_backend(argv, cwd=turn.cwd, env=self.build_env(turn))
            except OSError as error:
                logger.warning("Failed to start %s: %s", self.id, error)
                classification = classify_exception(error, auth_patterns=self.auth_patterns)
                for chunk in emitter.finish(
                    self.failure_chunk(classification, exit_code=None, output=str(error)),
                ):
                    yield chunk
                return

            logger.info("Spawned %s pid=%s for sub-chat %s", self.id, process.pid, turn.sub_chat_id)
            spawned = process
            handle.on_cancel = lambda: _send_sigterm(spawned)
            if handle.cancelled.is_set():
                _send_sigterm(spawned)

            queue: asyncio.Queue[OutputEvent] = asyncio.Queue()
            pumps = start_pumps(process, queue)
            exit_code: int | None = None
            while True:
                event = await next_or_cancel(queue, handle.cancelled)
                if event is None:
                    break
                if event.is_exit:
                    exit_code = event.exit_code
                    break
                for chunk in self.handle_output(event, emitter, state):
                    yield chunk

            if handle.cancelled.is_set() or exit_code is None:
                logger.info("%s turn cancelled for sub-chat %s", self.id, turn.sub_chat_id)
                for chunk in emitter.finish():
                    yield chunk
                return

            for chunk in self.flush_output(emitter, state):
                yield chunk
            logger.info("%s exited with code %s", self.id, exit_code)
            for chunk in self.handle_exit(exit_code, emitter, state):
                yield chunk
        except Exception as error:
            logger.exception("%s stream failed", self.id)
            for chunk in emitter.finish(
                ErrorChunk(
                    error_text=f"{self.name} stream failed: {error}",
                    category=ErrorKind.PROTOCOL_ERROR,
                    backend=self.id,
                ),
            ):
                yield chunk
        finally:
            for task in pumps:
                if not task.done():
                    task.cancel()
            if process is not None:
                await terminate_process(process, grace_seconds=self.kill_grace_seconds)
            self._handles.release(turn.sub_chat_id, handle)
