"""Pending clarifying-question table bridging an in-flight stream and the user."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.models import TurnMode
from agent_bridge.streaming.chunks import (
    AskUserQuestionChunk,
    AskUserQuestionTimeoutChunk,
    Chunk,
    QuestionOption,
    UserQuestion,
)

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
CANCELLED_REASON = "cancelled"


@dataclass(slots=True)
class AskUserOutcome:
    """Resolution of one question: either answers or an error reason."""

    answers: dict[str, Any] | None = None
    error: str | None = None

    @property
    def answered(self) -> bool:
        return self.answers is not None

    def to_tool_result(self) -> dict[str, Any]:
        if self.answers is not None:
            return {"answers": self.answers}
        return {"error": self.error or "No answer received"}


@dataclass(slots=True)
class _PendingQuestion:
    owner: str
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future[AskUserOutcome] = field(repr=False)


class AskUserBridge:
    """Single-slot resolvers keyed by tool-call id with bounded waits.

    The lock guards dictionary access only and is never held across an await.
    Resolution pops the entry under the lock, so each question resolves once.
    """

    def __init__(
        self,
        *,
        plan_timeout_seconds: float = 600.0,
        default_timeout_seconds: float = 60.0,
    ) -> None:
        self.plan_timeout_seconds = plan_timeout_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self._pending: dict[str, _PendingQuestion] = {}
        self._lock = threading.Lock()

    def timeout_for(self, mode: TurnMode) -> float:
        if mode is TurnMode.PLAN:
            return self.plan_timeout_seconds
        return self.default_timeout_seconds

    async def ask(  # noqa: PLR0913
        self,
        *,
        owner: str,
        tool_call_id: str,
        questions: Iterable[UserQuestion],
        mode: TurnMode,
        emit: Callable[[Chunk], None],
    ) -> AskUserOutcome:
        """Publish a question through `emit` and wait for its resolution."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future[AskUserOutcome] = loop.create_future()
        with self._lock:
            if tool_call_id in self._pending:
                raise ValueError(f"Question already pending for tool call: {tool_call_id}")
            self._pending[tool_call_id] = _PendingQuestion(owner=owner, loop=loop, future=future)

        timeout = self.timeout_for(mode)
        emit(
            AskUserQuestionChunk(
                tool_use_id=tool_call_id,
                questions=tuple(questions),
                timeout_seconds=timeout,
            ),
        )
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            logger.info("Question %s timed out after %.0fs", tool_call_id, timeout)
            emit(AskUserQuestionTimeoutChunk(tool_use_id=tool_call_id))
            return AskUserOutcome(error=TIMEOUT_REASON)
        finally:
            with self._lock:
                self._pending.pop(tool_call_id, None)

    def submit_answer(
        self,
        tool_call_id: str,
        *,
        answers: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        """Resolve a pending question; returns False when nothing is pending."""

        if answers is None and error is None:
            raise ValueError("Either answers or error must be provided.")
        with self._lock:
            pending = self._pending.pop(tool_call_id, None)
        if pending is None:
            return False
        outcome = (
            AskUserOutcome(answers=dict(answers))
            if answers is not None
            else AskUserOutcome(error=error)
        )
        _deliver(pending, outcome)
        return True

    def cancel_owner(self, owner: str) -> int:
        """Resolve every question of a cancelled turn with a cancelled outcome."""

        with self._lock:
            tool_call_ids = [key for key, item in self._pending.items() if item.owner == owner]
            cancelled = [self._pending.pop(key) for key in tool_call_ids]
        for pending in cancelled:
            _deliver(pending, AskUserOutcome(error=CANCELLED_REASON))
        return len(cancelled)

    def pending_ids(self, owner: str | None = None) -> list[str]:
        with self._lock:
            return [
                key for key, item in self._pending.items() if owner is None or item.owner == owner
            ]


def build_questions(question: str, choices: Iterable[str] = ()) -> tuple[UserQuestion, ...]:
    """Shape a single free-form question with optional choices."""

    return (
        UserQuestion(
            question=question,
            header="Question",
            options=tuple(QuestionOption(label=choice) for choice in choices),
        ),
    )


def _deliver(pending: _PendingQuestion, outcome: AskUserOutcome) -> None:
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is pending.loop:
        _set_if_pending(pending.future, outcome)
        return
    if pending.loop.is_closed():
        return
    pending.loop.call_soon_threadsafe(_set_if_pending, pending.future, outcome)


def _set_if_pending(future: asyncio.Future[AskUserOutcome], outcome: AskUserOutcome) -> None:
    if not future.done():
        future.set_result(outcome)
