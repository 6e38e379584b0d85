from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class OperationMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"


# ------------------------------
# Tool calls and tagged results
# ------------------------------


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class ToolOk:
    value: Any

    ok = True

    def render(self) -> Any:
        return self.value


@dataclass(frozen=True)
class ToolErr:
    kind: str
    message: str

    ok = False

    def render(self) -> str:
        return f"Error: {self.message}"


ToolResult = Union[ToolOk, ToolErr]


@dataclass(frozen=True)
class ToolContext:
    """Caller-scoped identity passed through to tool handlers."""

    project_id: Optional[str] = None
    acting_user_id: Optional[str] = None


# ------------------------------
# Conversation turns
# ------------------------------

USER = "user"
MODEL = "model"


@dataclass(frozen=True)
class Turn:
    """One entry of a project conversation.

    Exactly one of `text`, `tool_call` or `tool_result` is set. Tool results
    keep the call they answer so the transcript can be replayed as-is.
    """

    role: str
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None

    @classmethod
    def user_text(cls, text: str) -> "Turn":
        return cls(role=USER, text=text)

    @classmethod
    def model_text(cls, text: str) -> "Turn":
        return cls(role=MODEL, text=text)

    @classmethod
    def model_tool_call(cls, call: ToolCall) -> "Turn":
        return cls(role=MODEL, tool_call=call)

    @classmethod
    def user_tool_result(cls, call: ToolCall, result: ToolResult) -> "Turn":
        return cls(role=USER, tool_call=call, tool_result=result)

    @property
    def is_tool_call(self) -> bool:
        return self.role == MODEL and self.tool_call is not None

    @property
    def is_tool_result(self) -> bool:
        return self.role == USER and self.tool_result is not None

    def rendered_result(self) -> str:
        if self.tool_result is None:
            return ""
        value = self.tool_result.render()
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)


@dataclass(frozen=True)
class ChatEntry:
    role: str
    text: str
