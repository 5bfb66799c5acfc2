"""Shared fakes for tests: an in-memory stand-in for ServerConnection."""

from typing import Any, Callable, Optional

from mcp import types

from src.mcpchat.config import ServerConfig
from src.mcpchat.errors import ServerConnectionError
from src.mcpchat.models import ConversationTurn, ToolCall

BROKEN_COMMAND = "definitely-not-a-real-binary"


def make_tool(name: str, description: str = "", input_schema: Optional[dict] = None) -> types.Tool:
    schema = input_schema if input_schema is not None else {"type": "object", "properties": {}}
    return types.Tool(name=name, description=description, inputSchema=schema)


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


class FakeConnection:
    """Behaves like ServerConnection without spawning anything.

    Tools are looked up in ``catalogs[config.name]``; tool behaviour comes
    from ``handlers[(server, tool)]`` (a callable taking the arguments).
    """

    catalogs: dict[str, list[types.Tool]] = {}
    handlers: dict[tuple[str, str], Callable[[dict], Any]] = {}
    resources: dict[str, list[types.Resource]] = {}
    instances: list["FakeConnection"] = []
    closed: list[str] = []

    def __init__(self, config: ServerConfig, connection_timeout: float = 30.0):
        self.name = config.name
        self.config = config
        self.session = None
        self.connect_calls = 0
        self.close_calls = 0
        self.calls: list[tuple[str, dict]] = []
        FakeConnection.instances.append(self)

    @classmethod
    def reset(cls) -> None:
        cls.catalogs = {}
        cls.handlers = {}
        cls.resources = {}
        cls.instances = []
        cls.closed = []

    @property
    def connected(self) -> bool:
        return self.session is not None

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.config.command == BROKEN_COMMAND:
            raise ServerConnectionError(self.name, f"Failed to connect: [Errno 2] No such file: '{BROKEN_COMMAND}'")
        self.session = object()

    async def list_tools(self) -> list[types.Tool]:
        if not self.connected:
            raise ServerConnectionError(self.name, "Not connected")
        return list(self.catalogs.get(self.name, []))

    async def list_resources(self) -> list[types.Resource]:
        if not self.connected:
            raise ServerConnectionError(self.name, "Not connected")
        return list(self.resources.get(self.name, []))

    async def call_tool(self, tool_name: str, arguments: dict) -> Any:
        self.calls.append((tool_name, arguments))
        handler = self.handlers.get((self.name, tool_name))
        if handler is None:
            return text_result(f"{tool_name} ok")
        return handler(arguments)

    async def close(self) -> None:
        self.close_calls += 1
        FakeConnection.closed.append(self.name)
        self.session = None


def server(name: str, command: str = "npx") -> ServerConfig:
    return ServerConfig(name=name, command=command, args=["-y", f"@example/{name}"])


def tool_turn(key: str, result: Any) -> ConversationTurn:
    return ConversationTurn(role="tool", tool_call=ToolCall(name=key, arguments={}), tool_result=result)


def snapshot(page: str) -> str:
    return f"Page snapshot:\n<html><body><h1>{page}</h1></body></html>"
