"""Normalized chunk protocol emitted by every backend adapter."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from agent_bridge.models import ErrorKind


class _ChunkBase:
    __slots__ = ()

    type: ClassVar[str]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape; unset optional fields are omitted."""

        payload: dict[str, Any] = {"type": self.type}
        payload.update(_wire_fields(self))
        return payload


@dataclass(frozen=True, slots=True)
class StartChunk(_ChunkBase):
    type: ClassVar[str] = "start"


@dataclass(frozen=True, slots=True)
class FinishChunk(_ChunkBase):
    type: ClassVar[str] = "finish"


@dataclass(frozen=True, slots=True)
class SessionIdChunk(_ChunkBase):
    type: ClassVar[str] = "session-id"

    session_id: str


@dataclass(frozen=True, slots=True)
class TextStartChunk(_ChunkBase):
    type: ClassVar[str] = "text-start"

    id: str


@dataclass(frozen=True, slots=True)
class TextDeltaChunk(_ChunkBase):
    type: ClassVar[str] = "text-delta"

    id: str
    delta: str


@dataclass(frozen=True, slots=True)
class TextEndChunk(_ChunkBase):
    type: ClassVar[str] = "text-end"

    id: str


@dataclass(frozen=True, slots=True)
class ToolInputStartChunk(_ChunkBase):
    type: ClassVar[str] = "tool-input-start"

    tool_call_id: str
    tool_name: str


@dataclass(frozen=True, slots=True)
class ToolInputAvailableChunk(_ChunkBase):
    type: ClassVar[str] = "tool-input-available"

    tool_call_id: str
    tool_name: str
    input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolOutputAvailableChunk(_ChunkBase):
    type: ClassVar[str] = "tool-output-available"

    tool_call_id: str
    output: Any = None


@dataclass(frozen=True, slots=True)
class ToolOutputErrorChunk(_ChunkBase):
    type: ClassVar[str] = "tool-output-error"

    tool_call_id: str
    error_text: str


@dataclass(frozen=True, slots=True)
class ErrorChunk(_ChunkBase):
    type: ClassVar[str] = "error"

    error_text: str
    category: ErrorKind | None = None
    backend: str | None = None


@dataclass(frozen=True, slots=True)
class AuthErrorChunk(_ChunkBase):
    """Backend needs re-authentication; `backend` routes the re-auth flow."""

    type: ClassVar[str] = "auth-error"

    error_text: str
    backend: str


@dataclass(frozen=True, slots=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class UserQuestion:
    question: str
    header: str = "Question"
    options: tuple[QuestionOption, ...] = ()
    multi_select: bool = False


@dataclass(frozen=True, slots=True)
class AskUserQuestionChunk(_ChunkBase):
    type: ClassVar[str] = "ask-user-question"

    tool_use_id: str
    questions: tuple[UserQuestion, ...]
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class AskUserQuestionTimeoutChunk(_ChunkBase):
    type: ClassVar[str] = "ask-user-question-timeout"

    tool_use_id: str


@dataclass(frozen=True, slots=True)
class CreatedTaskRef:
    id: str
    title: str


@dataclass(frozen=True, slots=True)
class TasksCreatedChunk(_ChunkBase):
    type: ClassVar[str] = "tasks-created"

    tasks: tuple[CreatedTaskRef, ...]


@dataclass(frozen=True, slots=True)
class GoalCreatedChunk(_ChunkBase):
    type: ClassVar[str] = "goal-created"

    goal_id: str
    goal_name: str
    task_count: int


Chunk = (
    StartChunk
    | FinishChunk
    | SessionIdChunk
    | TextStartChunk
    | TextDeltaChunk
    | TextEndChunk
    | ToolInputStartChunk
    | ToolInputAvailableChunk
    | ToolOutputAvailableChunk
    | ToolOutputErrorChunk
    | ErrorChunk
    | AuthErrorChunk
    | AskUserQuestionChunk
    | AskUserQuestionTimeoutChunk
    | TasksCreatedChunk
    | GoalCreatedChunk
)

FAILURE_CHUNKS: tuple[type, ...] = (ErrorChunk, AuthErrorChunk)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _wire_fields(value)
    if isinstance(value, tuple | list):
        return [_wire_value(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _wire_value(item) for key, item in value.items()}
    return value


def _wire_fields(instance: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for item in dataclasses.fields(instance):
        value = getattr(instance, item.name)
        if value is None:
            continue
        payload[_camel(item.name)] = _wire_value(value)
    return payload
