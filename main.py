import asyncio
import argparse
from src.mcpchat.config import MCPChatSettings
from src.mcpchat.cli import cmd_call, cmd_servers, cmd_tools
from src.utils.logger import configure_logging


def parse_args():
    parser = argparse.ArgumentParser(description="MCP chat tool orchestration")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to a YAML/JSON server config. Defaults to ./config.json, then built-in servers."
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # servers
    sub.add_parser("servers", help="Show configured tool servers")

    # tools
    tools = sub.add_parser("tools", help="Connect to all servers and list tool keys")
    tools.add_argument("--server", type=str, default=None, help="Filter to one server")

    # call
    call = sub.add_parser("call", help="Call one tool by its flat key")
    call.add_argument("tool", help="Flat tool key, e.g. filesystem_read_file")
    call.add_argument("--args", type=str, default="{}", help="JSON object of arguments")

    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    overrides = {}
    if args.config:
        overrides["config"] = args.config
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = MCPChatSettings(**overrides)
    configure_logging(level=settings.log_level)

    if args.command == "servers":
        print(cmd_servers(settings))

    elif args.command == "tools":
        print(asyncio.run(cmd_tools(server_filter=args.server, settings=settings)))

    elif args.command == "call":
        print(asyncio.run(cmd_call(args.tool, args.args, settings=settings)))
