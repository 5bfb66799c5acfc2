from __future__ import annotations
import json
from typing import Optional
from src.mcpchat.config import MCPChatSettings, ServerConfig, load_server_configs
from src.mcpchat.session import ChatSession
from src.mcpchat.tool_registry import ToolRegistry
from src.utils.logger import get_logger

logger = get_logger("cli")


def cmd_servers(settings: Optional[MCPChatSettings] = None) -> str:
    configs = load_server_configs(settings)
    if not configs:
        return "No servers configured."

    lines = ["Configured MCP servers", "=" * 40]
    for config in configs:
        lines.append(f"\n{config.name}")
        if config.command:
            lines.append(f"  Command:  {config.command} {' '.join(config.args)}".rstrip())
        elif config.url:
            lines.append(f"  URL:      {config.url}")
        else:
            lines.append("  ⚠ no command or URL")
        if config.env:
            lines.append(f"  Env:      {', '.join(sorted(config.env))}")
    return "\n".join(lines)


async def cmd_tools(
    server_filter: Optional[str] = None,
    settings: Optional[MCPChatSettings] = None,
    configs: Optional[list[ServerConfig]] = None,
    registry: Optional[ToolRegistry] = None,
) -> str:
    settings = settings or MCPChatSettings()
    async with ChatSession(settings=settings, registry=registry) as session:
        connected = await session.start(configs)
        if not connected:
            logger.warning("⚠️ None of the configured servers could be reached")
            return "No servers connected."
        tools = await session.tools()

    by_server: dict[str, list[str]] = {}
    for tool in tools.values():
        if server_filter and tool.server_name != server_filter:
            continue
        by_server.setdefault(tool.server_name, []).append(tool.name)

    lines = []
    for server_name in sorted(by_server):
        if lines:
            lines.append("")
        lines.append(f"[{server_name}] ({len(by_server[server_name])} tools)")
        lines.extend(f"  {key}" for key in sorted(by_server[server_name]))
    return "\n".join(lines) if lines else f"No tools found for: {server_filter}"


async def cmd_call(
    tool_key: str,
    arguments: str = "{}",
    settings: Optional[MCPChatSettings] = None,
    configs: Optional[list[ServerConfig]] = None,
    registry: Optional[ToolRegistry] = None,
) -> str:
    try:
        parsed = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError as e:
        return f"❌ Arguments are not valid JSON: {e}"
    if not isinstance(parsed, dict):
        return "❌ Arguments must be a JSON object"

    settings = settings or MCPChatSettings()
    async with ChatSession(settings=settings, registry=registry) as session:
        await session.start(configs)
        result = await session.dispatcher.call(tool_key, parsed)
    return json.dumps(result.to_payload(), indent=2, ensure_ascii=False, default=str)
