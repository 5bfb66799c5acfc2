from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, Optional
import asyncio
import os

from mcp import types
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamable_http_client

from src.mcpchat.config import ServerConfig
from src.mcpchat.errors import ServerConnectionError, error_message
from src.utils.logger import get_logger


def build_server_env(overrides: dict[str, str]) -> dict[str, str]:
    """The caller's environment with server-specific overrides on top."""
    merged_env = os.environ.copy()
    merged_env.update(overrides)
    return merged_env


class ServerConnection:
    """
    Owns the transport session to one MCP tool server.

    The stdio process (or HTTP stream) and the ClientSession live on a
    per-connection AsyncExitStack, so closing one connection can never tear
    down another.
    """

    def __init__(self, config: ServerConfig, connection_timeout: float = 30.0):
        self.name = config.name
        self.config = config
        self.session: Optional[ClientSession] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self.connected_at: Optional[datetime] = None
        self._connection_timeout = connection_timeout
        self._stack: Optional[AsyncExitStack] = None
        self.logger = get_logger(f"ServerConnection.{config.name}")

    @property
    def connected(self) -> bool:
        return self.session is not None

    async def connect(self) -> None:
        """Start the server, run the MCP handshake. No-op when already connected.

        Raises:
            ServerConnectionError: if the config is unusable, the process or
                endpoint cannot be reached, or the handshake fails or times out.
        """
        if self.session is not None:
            return

        command = self.config.command
        url = self.config.url
        if not command and not url:
            raise ServerConnectionError(self.name, "No command or URL provided")

        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            if command:
                self.logger.info(f"🔌 Starting stdio server: {command} {' '.join(self.config.args)}")
                params = StdioServerParameters(
                    command=command,
                    args=self.config.args,
                    env=build_server_env(self.config.env),
                )
                read, write = await stack.enter_async_context(stdio_client(params))
                session = await stack.enter_async_context(ClientSession(read, write))
                init_result = await self._initialize(session)
            else:
                session, init_result = await self._connect_url_server(url, stack)
        except asyncio.TimeoutError:
            await self._discard_stack(stack)
            raise ServerConnectionError(
                self.name, f"Handshake timed out after {self._connection_timeout}s"
            )
        except Exception as e:
            await self._discard_stack(stack)
            raise ServerConnectionError(self.name, f"Failed to connect: {error_message(e)}") from e

        self._stack = stack
        self.session = session
        self.capabilities = init_result.capabilities
        self.connected_at = datetime.now(timezone.utc)
        self.logger.info(f"✅ Connected to {self.name}")

    async def _initialize(self, session: ClientSession) -> types.InitializeResult:
        return await asyncio.wait_for(session.initialize(), timeout=self._connection_timeout)

    async def _connect_url_server(
        self, url: str, server_stack: AsyncExitStack
    ) -> tuple[ClientSession, types.InitializeResult]:
        """Connect to a URL-based server and run the handshake.

        Opening either transport does no I/O, so the handshake is what tells
        an SSE-only endpoint apart. Unless config.type == 'sse', Streamable
        HTTP is tried first on its own stack; if it cannot complete the
        handshake that stack is discarded and legacy SSE is used instead.
        """
        if self.config.type != "sse":
            http_stack = AsyncExitStack()
            try:
                await http_stack.__aenter__()
                read, write, _ = await http_stack.enter_async_context(
                    streamable_http_client(url)
                )
                client = await http_stack.enter_async_context(ClientSession(read, write))
                init_result = await self._initialize(client)
                await server_stack.enter_async_context(http_stack)
                self.logger.info(f"🌐 Connected to '{self.name}' via Streamable HTTP")
                return client, init_result
            except Exception as e:
                await self._discard_stack(http_stack)
                self.logger.debug(f"Streamable HTTP failed for '{self.name}', trying SSE: {error_message(e)}")

        read, write = await server_stack.enter_async_context(sse_client(url=url))
        client = await server_stack.enter_async_context(ClientSession(read, write))
        init_result = await self._initialize(client)
        self.logger.info(f"🌐 Connected to '{self.name}' via SSE")
        return client, init_result

    async def _discard_stack(self, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception as e:
            self.logger.debug(f"Error while discarding half-open transport: {e}")

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise ServerConnectionError(self.name, "Not connected")
        return self.session

    async def list_tools(self) -> list[types.Tool]:
        session = self._require_session()
        result = await session.list_tools()
        return list(result.tools or [])

    async def list_resources(self) -> list[types.Resource]:
        session = self._require_session()
        result = await session.list_resources()
        return list(result.resources or [])

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        session = self._require_session()
        return await session.call_tool(tool_name, arguments)

    async def close(self) -> None:
        """Release the transport. Safe to call more than once."""
        stack, self._stack = self._stack, None
        self.session = None
        self.capabilities = None
        self.connected_at = None
        if stack is None:
            return
        try:
            await stack.aclose()
            self.logger.info(f"🔌 Disconnected from {self.name}")
        except Exception as e:
            self.logger.warning(f"⚠️ Error closing transport for '{self.name}': {e}")
