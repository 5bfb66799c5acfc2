"""
Autopilot: an optional loop that writes the next user turn itself.

After each completed assistant turn the controller may schedule one
follow-up: wait ``delay_between_turns``, ask the generator for a query based
on the recent (already pruned) history, and deliver it to the session as if
the user had typed it. The loop stops at the turn budget, on ``disable()``,
or when ``error_threshold`` generations have failed.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Optional, Sequence

from src.mcpchat.config import AutopilotConfig
from src.mcpchat.models import AutopilotState, ConversationTurn
from src.utils.logger import get_logger

FollowUpGenerator = Callable[[list[ConversationTurn]], Awaitable[str]]
FollowUpSink = Callable[[str], Awaitable[None]]
HistorySource = Callable[[], Sequence[ConversationTurn]]

_WRAPPING_QUOTES = re.compile(r"^[\"'`]|[\"'`]$")
_LEADING_LABEL = re.compile(r"^(Question|Command|Follow-up|Response|Query|Next):\s*", re.IGNORECASE)
_BRACKETED_PREFIX = re.compile(r"^\[.*?\]\s*")


def clean_generated_query(query: str) -> str:
    """Strip quoting, 'Question:'-style labels and '[Autopilot]'-style prefixes."""
    text = _WRAPPING_QUOTES.sub("", query.strip())
    text = _LEADING_LABEL.sub("", text)
    text = _BRACKETED_PREFIX.sub("", text)
    return text.strip()


class AutopilotController:
    def __init__(
        self,
        generator: FollowUpGenerator,
        deliver: FollowUpSink,
        history: HistorySource,
        config: Optional[AutopilotConfig] = None,
    ):
        self.config = config or AutopilotConfig()
        self.state = AutopilotState(max_turns=self.config.max_consecutive_turns)
        self._generator = generator
        self._deliver = deliver
        self._history = history
        self._pending: Optional[asyncio.Task] = None
        self.logger = get_logger("Autopilot")

    @property
    def enabled(self) -> bool:
        return self.state.enabled

    @property
    def status(self) -> Literal["idle", "enabled", "generating"]:
        if not self.state.enabled:
            return "idle"
        return "generating" if self.state.is_generating else "enabled"

    @property
    def budget_exhausted(self) -> bool:
        return self.state.current_turn >= self.state.max_turns

    @property
    def has_pending_follow_up(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def enable(self) -> None:
        self.state.enabled = True
        self.state.current_turn = 0
        self.state.error_count = 0
        self.state.max_turns = self.config.max_consecutive_turns
        self.logger.info(f"🤖 Autopilot enabled (max {self.state.max_turns} turns)")

    def disable(self) -> None:
        was_enabled = self.state.enabled
        self.state.enabled = False
        self._cancel_pending()
        if was_enabled:
            self.logger.info(f"🛑 Autopilot disabled after {self.state.current_turn} turn(s)")

    def on_turn_completed(self, turn: Optional[ConversationTurn] = None) -> bool:
        """Schedule the next follow-up if enabled and within budget.

        Returns True when a follow-up was scheduled.
        """
        if not self.state.enabled:
            return False
        if self.budget_exhausted:
            self.logger.info(f"Autopilot turn budget of {self.state.max_turns} reached")
            return False
        self._schedule()
        return True

    async def shutdown(self) -> None:
        """Disable and wait for a pending follow-up to finish cancelling."""
        task = self._pending
        self.disable()
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    def _schedule(self) -> None:
        self._cancel_pending()
        task = asyncio.get_running_loop().create_task(
            self._run_follow_up(), name="autopilot-follow-up"
        )
        task.add_done_callback(self._on_task_done)
        self._pending = task

    def _cancel_pending(self) -> None:
        task, self._pending = self._pending, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            exc = task.exception()
            if exc:
                self.logger.error(f"❌ Autopilot task '{task.get_name()}' failed: {exc}")

    async def _run_follow_up(self) -> None:
        await asyncio.sleep(self.config.delay_between_turns)
        if not self.state.enabled:
            return

        self.state.is_generating = True
        try:
            recent = list(self._history())[-self.config.history_depth:]
            query = clean_generated_query(await self._generator(recent))
            if not query:
                raise ValueError("generator returned an empty follow-up")
        except Exception as e:
            self._record_failure(e)
            return
        finally:
            self.state.is_generating = False

        if not self.state.enabled:
            return
        self.state.current_turn += 1
        self.state.last_generated_at = datetime.now(timezone.utc)
        self.logger.info(f"🤖 Autopilot turn {self.state.current_turn}: {query}")

        try:
            await self._deliver(query)
        except Exception as e:
            self._record_failure(e)

    def _record_failure(self, error: Exception) -> None:
        self.state.error_count += 1
        self.logger.error(
            f"❌ Autopilot follow-up failed ({self.state.error_count}/"
            f"{self.config.error_threshold}): {error}"
        )
        if self.state.error_count >= self.config.error_threshold:
            self.logger.warning("⚠️ Too many autopilot errors, disabling")
            self.disable()
            return
        if self.state.enabled:
            self._schedule()
