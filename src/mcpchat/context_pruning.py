"""
Bounding of conversation history that carries large, repetitive tool payloads.

Browser-automation tools return a full page snapshot after almost every step.
Once a newer snapshot exists the older ones are dead weight in the prompt, so
each pass keeps the newest ``retention`` payloads of every prunable class and
rewrites older ones to a short placeholder. Turns are never removed or
reordered, and the placeholder is never itself classified as prunable, which
makes a pass idempotent.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Protocol, Sequence

from src.mcpchat.models import KEY_SEPARATOR, ConversationTurn
from src.utils.logger import get_logger

logger = get_logger("ContextPruning")

PRUNED_PLACEHOLDER = "[earlier tool output omitted - superseded]"
DOM_SNAPSHOT_CLASS = "dom_snapshot"

# Browser tools that answer with (an updated) full page snapshot
DOM_SNAPSHOT_TOOL_PATTERNS = (
    "browser_snapshot",
    "browser_take_screenshot",
    "browser_navigate",
    "browser_navigate_back",
    "browser_navigate_forward",
    "browser_click",
    "browser_type",
    "browser_hover",
    "browser_drag",
    "browser_wait_for",
    "browser_select_option",
)

DOM_CONTENT_INDICATORS = (
    "<html",
    "<!doctype html",
    "accessibility tree:",
    "page snapshot:",
    "dom tree:",
    "<body",
    "<?xml version=",
)

LARGE_PAYLOAD_THRESHOLD = 10_000


class PayloadClassifier(Protocol):
    """Returns the prunable class of a tool payload, or None when it must be kept."""

    def __call__(self, server_name: str, tool_name: str, payload: Any) -> Optional[str]: ...


def split_tool_key(tool_key: str) -> tuple[str, str]:
    """Split a flat key on its first separator into (server, tool)."""
    server_name, sep, tool_name = tool_key.partition(KEY_SEPARATOR)
    if not sep or not tool_name:
        return "", tool_key
    return server_name, tool_name


def payload_text(payload: Any) -> str:
    """Flatten a tool payload (string, MCP content list, mapping) into text."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, list):
        return "\n".join(payload_text(item) for item in payload)
    if isinstance(payload, dict):
        if isinstance(payload.get("text"), str):
            return payload["text"]
        if "content" in payload:
            return payload_text(payload["content"])
        try:
            return json.dumps(payload, default=str)
        except (TypeError, ValueError):
            return str(payload)
    return str(payload)


class DomSnapshotClassifier:
    """Flags page snapshots returned by browser-automation servers.

    A payload is prunable when it comes from one of ``servers``, the tool name
    matches a snapshot-returning browser tool, and the text either looks like
    markup/an accessibility tree or exceeds ``size_threshold`` characters.
    """

    def __init__(
        self,
        servers: Iterable[str] = ("playwright",),
        tool_patterns: Iterable[str] = DOM_SNAPSHOT_TOOL_PATTERNS,
        indicators: Iterable[str] = DOM_CONTENT_INDICATORS,
        size_threshold: int = LARGE_PAYLOAD_THRESHOLD,
        payload_class: str = DOM_SNAPSHOT_CLASS,
    ):
        self.servers = frozenset(servers)
        self.tool_patterns = tuple(tool_patterns)
        self.indicators = tuple(i.lower() for i in indicators)
        self.size_threshold = size_threshold
        self.payload_class = payload_class

    def matches_tool(self, server_name: str, tool_name: str) -> bool:
        if server_name not in self.servers:
            return False
        return any(
            pattern in tool_name or tool_name.startswith(pattern.removeprefix("browser_"))
            for pattern in self.tool_patterns
        )

    def __call__(self, server_name: str, tool_name: str, payload: Any) -> Optional[str]:
        if not self.matches_tool(server_name, tool_name):
            return None
        text = payload_text(payload)
        if text == PRUNED_PLACEHOLDER:
            return None
        lowered = text.lower()
        if len(text) > self.size_threshold or any(i in lowered for i in self.indicators):
            return self.payload_class
        return None


class ConversationPruner:
    """Rewrites superseded prunable payloads to a placeholder."""

    def __init__(
        self,
        classifiers: Optional[Sequence[PayloadClassifier]] = None,
        retention: int = 1,
        placeholder: str = PRUNED_PLACEHOLDER,
    ):
        if retention < 0:
            raise ValueError("retention must be >= 0")
        self.classifiers: list[PayloadClassifier] = (
            list(classifiers) if classifiers is not None else [DomSnapshotClassifier()]
        )
        self.retention = retention
        self.placeholder = placeholder

    def classify(self, turn: ConversationTurn) -> Optional[str]:
        """Prunable class of the turn's tool result, or None."""
        if turn.tool_call is None or turn.tool_result is None:
            return None
        if turn.tool_result == self.placeholder:
            return None
        server_name, tool_name = split_tool_key(turn.tool_call.name)
        for classifier in self.classifiers:
            payload_class = classifier(server_name, tool_name, turn.tool_result)
            if payload_class:
                return payload_class
        return None

    def pruning_state(self, turns: Sequence[ConversationTurn]) -> dict[str, int]:
        """How many prunable payloads of each class the conversation holds."""
        counts: dict[str, int] = {}
        for turn in turns:
            payload_class = self.classify(turn)
            if payload_class is not None:
                counts[payload_class] = counts.get(payload_class, 0) + 1
        return counts

    def prune(
        self, turns: Sequence[ConversationTurn], retention: Optional[int] = None
    ) -> list[ConversationTurn]:
        """Return a pruned copy of ``turns``; the input is left untouched.

        Untouched turns are returned as the same objects; rewritten turns are
        copies whose ``tool_result`` is the placeholder.
        """
        keep = self.retention if retention is None else retention
        if keep < 0:
            raise ValueError("retention must be >= 0")

        pruned = list(turns)
        seen: dict[str, int] = {}
        replaced = 0
        # Newest first, so the first `keep` of each class survive
        for index in range(len(pruned) - 1, -1, -1):
            turn = pruned[index]
            payload_class = self.classify(turn)
            if payload_class is None:
                continue
            seen[payload_class] = seen.get(payload_class, 0) + 1
            if seen[payload_class] <= keep:
                logger.debug(f"Preserving {payload_class} #{seen[payload_class]} in turn {index}")
                continue
            pruned[index] = turn.model_copy(update={"tool_result": self.placeholder})
            replaced += 1

        if replaced:
            logger.info(f"🧹 Pruned {replaced} superseded tool payload(s) from conversation history")
        return pruned

    def safe_prune(
        self, turns: Sequence[ConversationTurn], retention: Optional[int] = None
    ) -> list[ConversationTurn]:
        """Like prune, but a failing pass is logged and skipped."""
        try:
            return self.prune(turns, retention)
        except Exception as e:
            logger.error(f"❌ Context pruning failed, sending history unpruned: {e}")
            return list(turns)


def prune(
    turns: Sequence[ConversationTurn],
    retention: int = 1,
    classifiers: Optional[Sequence[PayloadClassifier]] = None,
) -> list[ConversationTurn]:
    """Functional form of ``ConversationPruner.prune``."""
    return ConversationPruner(classifiers, retention=retention).prune(turns)
