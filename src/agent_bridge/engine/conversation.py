"""Conversation history rendering for backends without native session resume."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.streaming.base import HISTORY_SEPARATOR

HISTORY_HEADER = "# Conversation History\n\n"


@dataclass(slots=True)
class MessagePart:
    """One text, tool-use or tool-result part of a stored message."""

    type: str
    text: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_result: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MessagePart:
        tool_input = payload.get("toolInput", payload.get("tool_input"))
        tool_result = payload.get("toolResult", payload.get("tool_result"))
        return cls(
            type=str(payload.get("type", "text")),
            text=payload.get("text"),
            tool_name=payload.get("toolName", payload.get("tool_name")),
            tool_input=dict(tool_input) if isinstance(tool_input, Mapping) else None,
            tool_result=tool_result if tool_result is None else str(tool_result),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            payload["text"] = self.text
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        if self.tool_input is not None:
            payload["toolInput"] = self.tool_input
        if self.tool_result is not None:
            payload["toolResult"] = self.tool_result
        return payload


@dataclass(slots=True)
class ChatMessage:
    """Stored chat message in the persisted JSON shape."""

    id: str
    role: str
    parts: list[MessagePart] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ChatMessage:
        raw_parts = payload.get("parts") or []
        return cls(
            id=str(payload.get("id", "")),
            role=str(payload.get("role", "user")),
            parts=[MessagePart.from_dict(part) for part in raw_parts if isinstance(part, Mapping)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "parts": [part.to_dict() for part in self.parts]}


@dataclass(frozen=True, slots=True)
class ContextOptions:
    max_tokens: int = 8_000
    max_messages: int = 20
    truncate_tool_output: int = 500
    include_header: bool = True


@dataclass(frozen=True, slots=True)
class ContextStats:
    total_messages: int
    included_messages: int
    estimated_tokens: int
    truncated: bool


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token."""

    return math.ceil(len(text) / 4)


def truncate(text: str, max_length: int) -> str:
    """Cut to `max_length` characters including a trailing ellipsis."""

    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_message(message: ChatMessage, truncate_tool_output: int) -> str:
    role = "User" if message.role == "user" else "Assistant"
    parts: list[str] = []
    for part in message.parts:
        if part.type == "text" and part.text:
            parts.append(part.text)
        elif part.type == "tool_use" and part.tool_name:
            rendered = json.dumps(part.tool_input or {}, indent=2, ensure_ascii=False)
            parts.append(f"[Tool: {part.tool_name}]\n{truncate(rendered, truncate_tool_output)}")
        elif part.type == "tool_result" and part.tool_result:
            parts.append(f"[Result]\n{truncate(part.tool_result, truncate_tool_output)}")
    return f"{role}:\n" + "\n".join(parts)


def _select(messages: Sequence[ChatMessage], options: ContextOptions) -> list[str]:
    recent = list(messages)[-options.max_messages :] if options.max_messages > 0 else []
    formatted: list[str] = []
    total_tokens = 0
    for message in reversed(recent):
        text = format_message(message, options.truncate_tool_output)
        tokens = estimate_tokens(text)
        if total_tokens + tokens > options.max_tokens:
            break
        formatted.append(text)
        total_tokens += tokens
    formatted.reverse()
    return formatted


def build_context(
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    options: ContextOptions | None = None,
) -> str:
    """Render the most recent messages, newest first within the token budget.

    The output is chronological and joined by the history separator; older
    messages are dropped once adding one more would exceed the budget.
    """

    opts = options or ContextOptions()
    formatted = _select(_coerce(messages), opts)
    header = HISTORY_HEADER if opts.include_header else ""
    return header + HISTORY_SEPARATOR.join(formatted)


def context_stats(
    messages: Iterable[ChatMessage | Mapping[str, Any]],
    options: ContextOptions | None = None,
) -> ContextStats:
    opts = options or ContextOptions()
    parsed = _coerce(messages)
    included = len(_select(parsed, opts))
    return ContextStats(
        total_messages=len(parsed),
        included_messages=included,
        estimated_tokens=estimate_tokens(build_context(parsed, opts)),
        truncated=len(parsed) > included,
    )


def _coerce(messages: Iterable[ChatMessage | Mapping[str, Any]]) -> list[ChatMessage]:
    return [
        message if isinstance(message, ChatMessage) else ChatMessage.from_dict(message)
        for message in messages
    ]
