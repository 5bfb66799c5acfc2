"""Core data models shared by the registry, dispatcher, pruner and autopilot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from mcp import types
from pydantic import BaseModel, Field

from src.mcpchat.errors import ErrorCode

# Separator between server and tool in the flat key exposed to the model
KEY_SEPARATOR = "_"


def make_tool_key(server_name: str, tool_name: str) -> str:
    """Returns the flat key like 'server_tool' the model calls a tool by."""
    return f"{server_name}{KEY_SEPARATOR}{tool_name}"


@dataclass(frozen=True)
class ToolDescriptor:
    """One tool as advertised by one server. Refreshed only by re-listing."""
    server_name: str
    tool_name: str
    description: str
    parameter_schema: dict = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return make_tool_key(self.server_name, self.tool_name)

    @classmethod
    def from_mcp(cls, server_name: str, tool: types.Tool) -> "ToolDescriptor":
        return cls(
            server_name=server_name,
            tool_name=tool.name,
            description=tool.description or f"Tool {tool.name} from {server_name}",
            parameter_schema=dict(tool.inputSchema or {}),
        )


@dataclass
class ToolSuccess:
    payload: Any
    ok: Literal[True] = field(default=True, init=False)

    def to_payload(self) -> Any:
        return self.payload


@dataclass
class ToolFailure:
    """Structured, recoverable tool error handed back to the model."""
    code: ErrorCode
    message: str
    server: str
    tool: str
    available_tools: Optional[list[str]] = None
    suggested_alternatives: Optional[list[str]] = None
    connected_servers: Optional[list[str]] = None
    ok: Literal[False] = field(default=False, init=False)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": True,
            "code": self.code.value,
            "message": self.message,
            "server": self.server,
            "tool": self.tool,
        }
        if self.available_tools is not None:
            payload["availableTools"] = self.available_tools
        if self.suggested_alternatives is not None:
            payload["suggestedAlternatives"] = self.suggested_alternatives
        if self.connected_servers is not None:
            payload["connectedServers"] = self.connected_servers
        return payload


ToolCallResult = Union[ToolSuccess, ToolFailure]


class ToolCall(BaseModel):
    """A tool invocation requested by the model, addressed by flat key."""
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ConversationTurn(BaseModel):
    """One entry of the append-only conversation transcript."""
    role: Literal["user", "assistant", "tool", "system"]
    content: str = ""
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[Any] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AutopilotState:
    enabled: bool = False
    current_turn: int = 0
    max_turns: int = 10
    error_count: int = 0
    is_generating: bool = False
    last_generated_at: Optional[datetime] = None
