"""Core domain models used across layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallState(str, Enum):
    """Lifecycle of a tool call stored on an assistant message."""

    REQUESTED = "requested"
    OUTPUT_AVAILABLE = "output-available"
    REJECTED = "rejected"
    APPROVAL_REQUIRED = "approval-required"


class TurnOutcome(str, Enum):
    DONE = "done"
    AWAITING_CLIENT = "awaiting-client"
    FAILED = "failed"


@dataclass(slots=True)
class TextPart:
    text: str


@dataclass(slots=True)
class ToolCallRecord:
    """Tool call owned by the assistant message that issued it."""

    call_id: str
    tool_name: str
    input: dict[str, Any]
    state: ToolCallState = ToolCallState.REQUESTED
    output: Any = None


MessagePart = Union[TextPart, ToolCallRecord]


@dataclass(slots=True)
class ChatMessage:
    """Durable multi-part conversation message."""

    role: Role
    parts: list[MessagePart] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_text(cls, role: Role, text: str) -> ChatMessage:
        return cls(role=role, parts=[TextPart(text)])

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallRecord]:
        return [part for part in self.parts if isinstance(part, ToolCallRecord)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "role": self.role.value,
            "parts": [_part_to_dict(part) for part in self.parts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            role=Role(data["role"]),
            parts=[_part_from_dict(part) for part in data.get("parts", [])],
            message_id=data["id"],
        )


def _part_to_dict(part: MessagePart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    return {
        "type": "tool-call",
        "call_id": part.call_id,
        "tool_name": part.tool_name,
        "input": part.input,
        "state": part.state.value,
        "output": part.output,
    }


def _part_from_dict(data: dict[str, Any]) -> MessagePart:
    if data["type"] == "text":
        return TextPart(data["text"])
    return ToolCallRecord(
        call_id=data["call_id"],
        tool_name=data["tool_name"],
        input=data.get("input") or {},
        state=ToolCallState(data["state"]),
        output=data.get("output"),
    )


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class TurnResult:
    """What one orchestrated turn produced."""

    outcome: TurnOutcome
    passes: int
    parts: list[MessagePart] = field(default_factory=list)
    text: str | None = None
    pending_call: ToolCallRecord | None = None


@dataclass(slots=True)
class ScheduledReminder:
    """Represents a persisted reminder waiting to fire."""

    id: int
    conversation_id: str
    message: str
    run_at: str
    status: str
