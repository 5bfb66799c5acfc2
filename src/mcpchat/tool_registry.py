from typing import Any, Callable, Dict, Iterable, Optional

from mcp import types

from src.mcpchat.config import ServerConfig
from src.mcpchat.errors import ServerNotFoundError
from src.mcpchat.models import KEY_SEPARATOR, ToolDescriptor, make_tool_key
from src.mcpchat.server_connection import ServerConnection
from src.utils.logger import get_logger

# Fragments of a requested key must be longer than this to be matched
MIN_FRAGMENT_LENGTH = 3
MAX_SUGGESTIONS = 5


def find_similar_tools(
    requested_name: str,
    catalog: Iterable[tuple[str, str]],
    limit: int = MAX_SUGGESTIONS,
) -> list[str]:
    """Suggest catalog tools for a name that does not exist.

    The requested key is split on the key separator; fragments longer than
    three characters are matched case-insensitively as substrings of each
    catalog tool name. Returns up to ``limit`` flat keys, in catalog order.
    This is a heuristic: duplicate and empty results are both valid.
    """
    fragments = [
        part.lower()
        for part in requested_name.split(KEY_SEPARATOR)
        if len(part) > MIN_FRAGMENT_LENGTH
    ]
    if not fragments:
        return []

    suggestions: list[str] = []
    for server_name, tool_name in catalog:
        lowered = tool_name.lower()
        if any(fragment in lowered for fragment in fragments):
            suggestions.append(make_tool_key(server_name, tool_name))
            if len(suggestions) >= limit:
                break
    return suggestions


class ToolRegistry:
    """
    Aggregates server connections by name and exposes their live catalogs.

    The connection map is the only mutable shared state; it changes only in
    connect/disconnect, which run before and after calls are served.
    """

    def __init__(
        self,
        connection_factory: Callable[..., ServerConnection] = ServerConnection,
        connection_timeout: float = 30.0,
    ):
        self.connections: Dict[str, ServerConnection] = {}
        self._connection_factory = connection_factory
        self._connection_timeout = connection_timeout
        self.logger = get_logger("ToolRegistry")

    async def connect(self, config: ServerConfig) -> ServerConnection:
        """Connect one server. A second connect for a connected name is a no-op.

        Raises:
            ServerConnectionError: if the connection cannot be established.
        """
        existing = self.connections.get(config.name)
        if existing is not None and existing.connected:
            self.logger.debug(f"'{config.name}' already connected")
            return existing

        connection = self._connection_factory(
            config, connection_timeout=self._connection_timeout
        )
        await connection.connect()
        # Re-insert so dict order stays connect order
        self.connections.pop(config.name, None)
        self.connections[config.name] = connection
        return connection

    async def connect_all(self, configs: Iterable[ServerConfig]) -> list[str]:
        """Attempt every configured server; return the names that connected.

        Each attempt is independent: a misconfigured server is logged and
        skipped so the others still come up.
        """
        attempted: list[str] = []
        for config in configs:
            if config.name in attempted:
                self.logger.warning(f"⚠️ Duplicate server name '{config.name}' in config, skipping")
                continue
            attempted.append(config.name)
            try:
                await self.connect(config)
            except Exception as e:
                self.logger.error(f"❌ Failed to connect to MCP server {config.name}: {e}")

        connected = [name for name in attempted if self.is_connected(name)]
        self.logger.info(f"🔌 Connected {len(connected)}/{len(attempted)} server(s): {', '.join(sorted(connected))}")
        return connected

    async def disconnect(self, name: str) -> None:
        """Close one connection and forget it.

        Every transport entered by ``connect_all`` holds anyio cancel scopes
        opened on the same task, and those must be exited newest first. Closing
        a connection that is not the most recent one from that task can fail
        with a cancel-scope error; use ``disconnect_all`` for shutdown.
        """
        connection = self.connections.pop(name, None)
        if connection is None:
            return
        await connection.close()

    async def disconnect_all(self) -> None:
        """Close every connection, most recently connected first."""
        for name in reversed(list(self.connections.keys())):
            await self.disconnect(name)

    def connected_servers(self) -> list[str]:
        return [name for name, conn in self.connections.items() if conn.connected]

    def is_connected(self, name: str) -> bool:
        connection = self.connections.get(name)
        return connection is not None and connection.connected

    def get_connection(self, name: str) -> ServerConnection:
        connection = self.connections.get(name)
        if connection is None or not connection.connected:
            raise ServerNotFoundError(name)
        return connection

    async def list_tools(self, server_name: str) -> list[ToolDescriptor]:
        """Live tool catalog of one server. Remote failures propagate."""
        tools = await self.get_connection(server_name).list_tools()
        return [ToolDescriptor.from_mcp(server_name, tool) for tool in tools]

    async def list_resources(self, server_name: str) -> list[types.Resource]:
        return await self.get_connection(server_name).list_resources()

    async def catalog(self) -> list[ToolDescriptor]:
        """Descriptors from every connected server; failing servers are skipped."""
        descriptors: list[ToolDescriptor] = []
        for server_name in self.connected_servers():
            try:
                descriptors.extend(await self.list_tools(server_name))
            except Exception as e:
                self.logger.warning(f"⚠️ Failed to get tools from {server_name}: {e}")
        return descriptors

    async def list_all_tools(self) -> list[tuple[str, str]]:
        """Flattened ``(server_name, tool_name)`` pairs across connected servers."""
        return [(d.server_name, d.tool_name) for d in await self.catalog()]

    @staticmethod
    def find_similar_tools(
        requested_name: str,
        catalog: Iterable[tuple[str, str]],
        limit: int = MAX_SUGGESTIONS,
    ) -> list[str]:
        return find_similar_tools(requested_name, catalog, limit)

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: Optional[dict[str, Any]]
    ) -> types.CallToolResult:
        return await self.get_connection(server_name).call_tool(tool_name, arguments or {})
