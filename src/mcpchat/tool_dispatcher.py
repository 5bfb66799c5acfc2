from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
import asyncio
import json

from mcp.shared.exceptions import McpError
from pydantic import BaseModel

from src.mcpchat.errors import ArgumentValidationError, ErrorCode, error_message
from src.mcpchat.models import (
    KEY_SEPARATOR,
    ToolCall,
    ToolCallResult,
    ToolDescriptor,
    ToolFailure,
    ToolSuccess,
)
from src.mcpchat.schema_translator import ArgumentValidator
from src.mcpchat.tool_registry import ToolRegistry, find_similar_tools
from src.mcpchat.utils.audit import AuditLogger
from src.utils.logger import get_logger

# HTTP-style code the MCP SDK uses for request read timeouts
_REQUEST_TIMEOUT_CODE = 408


@dataclass
class DispatchableTool:
    """The shape registered with the model-calling layer for one tool."""
    name: str
    description: str
    parameter_schema: dict
    server_name: str
    tool_name: str
    validator: ArgumentValidator = field(repr=False)
    execute: Callable[[Optional[dict]], Awaitable[ToolCallResult]] = field(repr=False)


def _result_text(data: Any) -> str:
    """Concatenated text items of an MCP content list, or the JSON of anything else."""
    content = data.get("content") if isinstance(data, dict) else None
    if isinstance(content, list):
        texts = [item.get("text", "") for item in content if isinstance(item, dict)]
        joined = "\n".join(t for t in texts if t)
        if joined:
            return joined
    try:
        return json.dumps(data, default=str)
    except (TypeError, ValueError):
        return str(data)


def normalize_result(raw: Any) -> Any:
    """Shape a raw tool result for the model.

    A result carrying a non-empty ``content`` field is unwrapped to it;
    anything else is returned whole once it survives a JSON round trip, and
    demoted to a string summary when it does not.
    """
    data = raw
    if isinstance(raw, BaseModel):
        try:
            data = raw.model_dump(mode="json", exclude_none=True)
        except Exception:
            return {"message": str(raw)}

    if isinstance(data, dict) and data.get("content"):
        return data["content"]
    try:
        return json.loads(json.dumps(data))
    except (TypeError, ValueError):
        return {"message": str(data)}


def _failure_code(error: BaseException) -> ErrorCode:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorCode.TOOL_TIMEOUT
    if isinstance(error, McpError) and getattr(error.error, "code", None) == _REQUEST_TIMEOUT_CODE:
        return ErrorCode.TOOL_TIMEOUT
    return ErrorCode.TOOL_EXECUTION_FAILED


class ToolDispatcher:
    """
    The callable tool surface offered to the language-model loop.

    Every call checks the live catalog before invoking, and every failure is
    returned as a ToolFailure. Nothing raised by a server, a transport or a
    schema crosses this boundary.
    """

    def __init__(self, registry: ToolRegistry, audit_logger: Optional[AuditLogger] = None):
        self.registry = registry
        self.audit_logger = audit_logger
        self._validators: Dict[str, tuple[dict, ArgumentValidator]] = {}
        self.logger = get_logger("ToolDispatcher")

    def _validator_for(self, descriptor: ToolDescriptor) -> ArgumentValidator:
        """Validator for a descriptor, rebuilt only when its schema changed."""
        cached = self._validators.get(descriptor.key)
        if cached is not None and cached[0] == descriptor.parameter_schema:
            return cached[1]
        validator = ArgumentValidator.from_schema(descriptor.parameter_schema, descriptor.key)
        self._validators[descriptor.key] = (descriptor.parameter_schema, validator)
        return validator

    async def build_tools(self) -> dict[str, DispatchableTool]:
        """One DispatchableTool per discovered tool, keyed by flat key."""
        tools: dict[str, DispatchableTool] = {}
        for descriptor in await self.registry.catalog():
            key = descriptor.key
            if key in tools:
                existing = tools[key]
                self.logger.warning(
                    f"⚠️ Tool key '{key}' from '{descriptor.server_name}' collides with "
                    f"'{existing.server_name}', keeping the first"
                )
                continue
            tools[key] = DispatchableTool(
                name=key,
                description=descriptor.description,
                parameter_schema=descriptor.parameter_schema,
                server_name=descriptor.server_name,
                tool_name=descriptor.tool_name,
                validator=self._validator_for(descriptor),
                execute=self._bind(descriptor.server_name, descriptor.tool_name),
            )
        self.logger.info(f"🔧 Built {len(tools)} tool(s) for the model")
        return tools

    def _bind(self, server_name: str, tool_name: str) -> Callable[[Optional[dict]], Awaitable[ToolCallResult]]:
        async def execute(arguments: Optional[dict] = None) -> ToolCallResult:
            return await self.execute(server_name, tool_name, arguments)
        return execute

    async def execute(
        self, server_name: str, tool_name: str, arguments: Optional[dict] = None
    ) -> ToolCallResult:
        """Validate, existence-check and invoke one tool. Never raises."""
        key = f"{server_name}{KEY_SEPARATOR}{tool_name}"
        try:
            result = await self._execute(server_name, tool_name, arguments)
        except Exception as e:
            # Last-resort guard; the steps below already convert known failures
            self.logger.error(f"❌ TOOL_ERROR: {key} failed unexpectedly: {e}")
            result = ToolFailure(
                code=ErrorCode.TOOL_EXECUTION_FAILED,
                message=f"Tool execution failed: {error_message(e)}",
                server=server_name,
                tool=tool_name,
                connected_servers=self.registry.connected_servers(),
            )
        self._audit(key, server_name, arguments, result)
        return result

    async def _execute(
        self, server_name: str, tool_name: str, arguments: Optional[dict]
    ) -> ToolCallResult:
        connected = self.registry.connected_servers()
        if server_name not in connected:
            self.logger.warning(f"⚠️ Server '{server_name}' is not connected")
            return ToolFailure(
                code=ErrorCode.TOOL_NOT_FOUND,
                message=f"Server '{server_name}' is not connected.",
                server=server_name,
                tool=tool_name,
                connected_servers=connected,
            )

        try:
            live_tools = await self.registry.list_tools(server_name)
        except Exception as e:
            self.logger.error(f"❌ Could not list tools of '{server_name}': {e}")
            return ToolFailure(
                code=_failure_code(e),
                message=f"Could not list tools of server '{server_name}': {error_message(e)}",
                server=server_name,
                tool=tool_name,
                connected_servers=connected,
            )

        available = [d.tool_name for d in live_tools]
        descriptor = next((d for d in live_tools if d.tool_name == tool_name), None)
        if descriptor is None:
            suggestions = find_similar_tools(
                f"{server_name}{KEY_SEPARATOR}{tool_name}",
                [(d.server_name, d.tool_name) for d in live_tools],
            )
            self.logger.warning(f"⚠️ Tool '{tool_name}' not found on '{server_name}'")
            return ToolFailure(
                code=ErrorCode.TOOL_NOT_FOUND,
                message=f"Tool '{tool_name}' does not exist on server '{server_name}'.",
                server=server_name,
                tool=tool_name,
                available_tools=available,
                suggested_alternatives=suggestions,
            )

        try:
            validated = self._validator_for(descriptor).validate(arguments)
        except ArgumentValidationError as e:
            return ToolFailure(
                code=ErrorCode.TOOL_INVALID_ARGS,
                message=e.message,
                server=server_name,
                tool=tool_name,
                available_tools=available,
            )

        try:
            self.logger.info(f"✅ Calling tool '{tool_name}' on '{server_name}'")
            raw = await self.registry.call_tool(server_name, tool_name, validated)
        except Exception as e:
            self.logger.error(f"❌ TOOL_ERROR: {descriptor.key} failed: {e}")
            return ToolFailure(
                code=_failure_code(e),
                message=f"Tool execution failed: {error_message(e)}",
                server=server_name,
                tool=tool_name,
                available_tools=available,
            )

        if getattr(raw, "isError", False) is True:
            data = raw.model_dump(mode="json", exclude_none=True) if isinstance(raw, BaseModel) else raw
            return ToolFailure(
                code=ErrorCode.TOOL_EXECUTION_FAILED,
                message=f"Tool execution failed: {_result_text(data)}",
                server=server_name,
                tool=tool_name,
                available_tools=available,
            )

        return ToolSuccess(payload=normalize_result(raw))

    async def call(self, tool_key: str, arguments: Optional[dict] = None) -> ToolCallResult:
        """Dispatch by flat key, including keys the catalog has never heard of."""
        connected = self.registry.connected_servers()
        # Longest server name first so 'a_b' wins over 'a' for 'a_b_tool'
        for server_name in sorted(connected, key=len, reverse=True):
            prefix = f"{server_name}{KEY_SEPARATOR}"
            if tool_key.startswith(prefix) and len(tool_key) > len(prefix):
                return await self.execute(server_name, tool_key[len(prefix):], arguments)

        server_name, _, tool_name = tool_key.partition(KEY_SEPARATOR)
        try:
            catalog = await self.registry.list_all_tools()
        except Exception as e:
            self.logger.warning(f"⚠️ Could not build catalog for suggestions: {e}")
            catalog = []
        result = ToolFailure(
            code=ErrorCode.TOOL_NOT_FOUND,
            message=f'Tool "{tool_key}" does not exist. Please use one of the available tools instead.',
            server=server_name if tool_name else "unknown",
            tool=tool_name or tool_key,
            suggested_alternatives=find_similar_tools(tool_key, catalog),
            connected_servers=connected,
        )
        self.logger.warning(f"⚠️ Tool '{tool_key}' not found in any server.")
        self._audit(tool_key, result.server, arguments, result)
        return result

    async def run_tool_calls(self, calls: Iterable[ToolCall]) -> list[tuple[ToolCall, ToolCallResult]]:
        """Run a model response's tool calls one at a time, in request order."""
        results = []
        for tool_call in calls:
            results.append((tool_call, await self.call(tool_call.name, tool_call.arguments)))
        return results

    def _audit(
        self, key: str, server_name: str, arguments: Optional[dict], result: ToolCallResult
    ) -> None:
        if self.audit_logger is None:
            return
        try:
            if result.ok:
                self.audit_logger.log_tool_call(key, server_name, arguments)
            else:
                self.audit_logger.log_tool_failure(
                    key, server_name, arguments, result.code.value, result.message
                )
        except Exception as e:
            self.logger.warning(f"⚠️ Audit logging failed for '{key}': {e}")
