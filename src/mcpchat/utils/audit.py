"""
Audit trail for dispatched tool calls.

Every dispatcher outcome (success or structured failure) becomes one JSONL
line, written through a dedicated loguru sink with rotation support.
"""

from typing import Any, Dict, Optional
from pathlib import Path
from datetime import datetime, timezone
import json
import re

from loguru import logger

from src.mcpchat.config import AuditConfig

_SENSITIVE_KEYS = re.compile(
    r"(api[_-]?key|token|password|passwd|secret|credential|auth|bearer)",
    re.IGNORECASE,
)
_REDACTED = "***REDACTED***"


def sanitize_arguments(args: Any) -> Any:
    """Recursively redact sensitive values from an arguments mapping."""
    if isinstance(args, list):
        return [sanitize_arguments(item) for item in args]
    if not isinstance(args, dict):
        return args
    sanitized = {}
    for key, value in args.items():
        if _SENSITIVE_KEYS.search(str(key)):
            sanitized[key] = _REDACTED
        else:
            sanitized[key] = sanitize_arguments(value)
    return sanitized


class AuditLogger:
    """Writes tool call outcomes to ``<log_dir>/audit.jsonl``."""

    def __init__(self, config: Optional[AuditConfig] = None):
        self.config = config or AuditConfig()

        self.log_path = Path(self.config.log_dir)
        self.log_path.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_path / "audit.jsonl"

        self._sink_id = logger.add(
            str(self.log_file),
            format="{message}",  # Raw JSON, no formatting
            rotation=self.config.rotation,
            retention=self.config.retention,
            compression=self.config.compression,
            enqueue=True,
            filter=lambda record: record["extra"].get("audit_sink") == id(self),
        )

    def log_tool_call(
        self,
        tool_key: str,
        server_name: str,
        arguments: Optional[Dict[str, Any]],
    ) -> None:
        self._write_entry({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "tool_call",
            "tool": tool_key,
            "server": server_name,
            "arguments": sanitize_arguments(arguments),
            "status": "success",
        })

    def log_tool_failure(
        self,
        tool_key: str,
        server_name: str,
        arguments: Optional[Dict[str, Any]],
        code: str,
        error: str,
    ) -> None:
        self._write_entry({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "tool_call",
            "tool": tool_key,
            "server": server_name,
            "arguments": sanitize_arguments(arguments),
            "status": "error",
            "code": code,
            "error": error,
        })

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        json_line = json.dumps(entry, separators=(",", ":"), default=str)
        logger.bind(audit=True, audit_sink=id(self)).info(json_line)

    def close(self) -> None:
        """Flush pending lines and remove the sink from loguru."""
        sink_id, self._sink_id = self._sink_id, None
        if sink_id is not None:
            logger.remove(sink_id)
