"""
Error taxonomy for tool orchestration.

Exceptions in this module are raised *below* the dispatcher boundary
(connections, registry, schema validation). The dispatcher converts every
one of them into a ``ToolFailure`` so the model loop never sees a raised
fault.
"""

from enum import Enum


class ErrorCode(str, Enum):
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    TOOL_INVALID_ARGS = "TOOL_INVALID_ARGS"


class OrchestrationError(Exception):
    """Base class for orchestration errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.TOOL_EXECUTION_FAILED,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable


class ServerConnectionError(OrchestrationError):
    """A tool server could not be started, handshaken, or is no longer connected."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"[{server_name}] {message}", retryable=True)
        self.server_name = server_name


class ServerNotFoundError(OrchestrationError):
    """No live connection exists for the requested server name."""

    def __init__(self, server_name: str):
        super().__init__(
            f"Not connected to server: {server_name}", code=ErrorCode.TOOL_NOT_FOUND
        )
        self.server_name = server_name


class ArgumentValidationError(OrchestrationError):
    """Call arguments were rejected by a tool's translated schema.

    ``problems`` is a list of ``(path, message)`` tuples, one per offending field.
    """

    def __init__(self, problems: list[tuple[str, str]]):
        self.problems = problems
        summary = "; ".join(f"{path or '<root>'}: {msg}" for path, msg in problems)
        super().__init__(
            f"Invalid arguments: {summary}", code=ErrorCode.TOOL_INVALID_ARGS
        )


def error_message(error: BaseException) -> str:
    """Best-effort human readable message for any exception."""
    if isinstance(error, OrchestrationError):
        return error.message
    # anyio task groups inside the SDK transports wrap the real cause
    nested = getattr(error, "exceptions", None)
    if nested:
        return error_message(nested[0])
    text = str(error)
    return text if text else type(error).__name__
