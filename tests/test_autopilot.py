"""
Tests for AutopilotController: scheduling, turn budget, cancellation and
the consecutive-failure circuit breaker.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from src.mcpchat.autopilot import AutopilotController, clean_generated_query
from src.mcpchat.config import AutopilotConfig
from src.mcpchat.models import ConversationTurn


async def drain(controller: AutopilotController, limit: int = 20) -> None:
    """Wait until no follow-up is pending, following reschedules."""
    for _ in range(limit):
        task = controller._pending
        if task is None:
            return
        await asyncio.gather(task, return_exceptions=True)
    raise AssertionError("autopilot kept rescheduling")


def make_controller(generator=None, deliver=None, history=None, **config):
    config.setdefault("delay_between_turns", 0)
    return AutopilotController(
        generator=generator or AsyncMock(return_value="What else can you find?"),
        deliver=deliver or AsyncMock(),
        history=history or (lambda: []),
        config=AutopilotConfig(**config),
    )


def test_clean_generated_query():
    assert clean_generated_query('"Question: What is next?"') == "What is next?"
    assert clean_generated_query("[Autopilot] check the logs") == "check the logs"
    assert clean_generated_query("  follow-up: dig deeper ") == "dig deeper"
    assert clean_generated_query("plain query") == "plain query"


def test_disabled_controller_schedules_nothing():
    controller = make_controller()
    assert controller.status == "idle"
    assert controller.on_turn_completed() is False


@pytest.mark.asyncio
async def test_follow_up_is_generated_and_delivered():
    generator = AsyncMock(return_value="'Next: summarize the findings'")
    deliver = AsyncMock()
    controller = make_controller(generator, deliver)
    controller.enable()

    assert controller.on_turn_completed() is True
    await drain(controller)

    deliver.assert_awaited_once_with("summarize the findings")
    assert controller.state.current_turn == 1
    assert controller.state.last_generated_at is not None
    assert controller.status == "enabled"


@pytest.mark.asyncio
async def test_generator_sees_recent_history_only():
    history = [ConversationTurn(role="user", content=str(i)) for i in range(12)]
    generator = AsyncMock(return_value="go on")
    controller = make_controller(generator, history=lambda: history, history_depth=5)
    controller.enable()

    controller.on_turn_completed()
    await drain(controller)

    seen = generator.await_args.args[0]
    assert [t.content for t in seen] == ["7", "8", "9", "10", "11"]


@pytest.mark.asyncio
async def test_turn_budget_stops_scheduling():
    controller = make_controller(max_consecutive_turns=2)
    controller.enable()

    for _ in range(2):
        assert controller.on_turn_completed() is True
        await drain(controller)

    assert controller.budget_exhausted
    assert controller.on_turn_completed() is False
    assert controller.enabled


@pytest.mark.asyncio
async def test_circuit_breaker_disables_after_threshold():
    generator = AsyncMock(side_effect=RuntimeError("model unavailable"))
    deliver = AsyncMock()
    controller = make_controller(generator, deliver, error_threshold=3)
    controller.enable()

    controller.on_turn_completed()
    await drain(controller)

    assert generator.await_count == 3
    assert controller.state.error_count == 3
    assert controller.enabled is False
    assert controller.status == "idle"
    deliver.assert_not_awaited()
    assert controller.on_turn_completed() is False


@pytest.mark.asyncio
async def test_empty_generation_counts_as_failure():
    controller = make_controller(AsyncMock(return_value='  ""  '), error_threshold=1)
    controller.enable()

    controller.on_turn_completed()
    await drain(controller)

    assert controller.state.error_count == 1
    assert not controller.enabled


@pytest.mark.asyncio
async def test_delivery_failure_counts_as_failure():
    deliver = AsyncMock(side_effect=RuntimeError("session closed"))
    controller = make_controller(deliver=deliver, error_threshold=1)
    controller.enable()

    controller.on_turn_completed()
    await drain(controller)

    assert controller.state.current_turn == 1
    assert controller.state.error_count == 1
    assert not controller.enabled


@pytest.mark.asyncio
async def test_disable_cancels_pending_follow_up():
    generator = AsyncMock(return_value="never")
    controller = make_controller(generator, delay_between_turns=10)
    controller.enable()
    controller.on_turn_completed()
    task = controller._pending
    assert controller.has_pending_follow_up

    controller.disable()
    await asyncio.gather(task, return_exceptions=True)

    assert task.cancelled()
    assert not controller.has_pending_follow_up
    generator.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_completion_replaces_pending_follow_up():
    controller = make_controller(delay_between_turns=10)
    controller.enable()
    controller.on_turn_completed()
    first = controller._pending

    controller.on_turn_completed()
    await asyncio.gather(first, return_exceptions=True)

    assert first.cancelled()
    assert controller.has_pending_follow_up
    await controller.shutdown()


def test_enable_resets_counters():
    controller = make_controller(max_consecutive_turns=4)
    controller.state.current_turn = 4
    controller.state.error_count = 2

    controller.enable()

    assert controller.state.current_turn == 0
    assert controller.state.error_count == 0
    assert controller.state.max_turns == 4


@pytest.mark.asyncio
async def test_shutdown_waits_for_cancellation():
    controller = make_controller(delay_between_turns=10)
    controller.enable()
    controller.on_turn_completed()
    task = controller._pending

    await controller.shutdown()

    assert task.done()
    assert not controller.enabled
