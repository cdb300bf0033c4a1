"""
Tests for RetryScheduler and StopSignal in bulkdispatch.scheduler.
"""

import asyncio

import pytest

from bulkdispatch.context import OperationContext, OperationState
from bulkdispatch.scheduler import RetryScheduler, StopSignal
from tests.mocks.service import FakeClock


def batched_context(name: str, *, max_retries: int = 1) -> OperationContext:
    context = OperationContext([name], max_retries=max_retries)
    context.mark_batched()
    return context


def test_pop_ready_returns_due_contexts_in_time_order(clock: FakeClock) -> None:
    scheduler = RetryScheduler(clock=clock)
    late = batched_context("late")
    early = batched_context("early")
    scheduler.schedule(late, delay=5.0, consume_budget=False)
    scheduler.schedule(early, delay=1.0, consume_budget=False)

    assert scheduler.pop_ready() == []
    assert scheduler.next_retry_at == clock.now + 1.0

    clock.advance(10.0)
    assert scheduler.pop_ready() == [early, late]
    assert len(scheduler) == 0
    assert scheduler.next_retry_at is None


def test_schedule_returns_retry_time_and_updates_context(clock: FakeClock) -> None:
    scheduler = RetryScheduler(clock=clock)
    context = batched_context("a")

    retry_at = scheduler.schedule(context, delay=2.0, consume_budget=True)

    assert retry_at == clock.now + 2.0
    assert context.next_retry_at == retry_at
    assert context.retries_remaining == 0
    assert context.state is OperationState.RETRY_SCHEDULED


def test_discard_all(clock: FakeClock) -> None:
    scheduler = RetryScheduler(clock=clock)
    context = batched_context("a")
    scheduler.schedule(context, delay=1.0, consume_budget=False)

    assert scheduler.discard_all() == 1
    assert context.state is OperationState.DISCARDED
    assert not scheduler


@pytest.mark.asyncio
async def test_drain_promotes_until_empty() -> None:
    scheduler = RetryScheduler()
    promoted: list[list[OperationContext]] = []
    contexts = [batched_context("a"), batched_context("b")]
    for context in contexts:
        scheduler.schedule(context, delay=0.01, consume_budget=False)

    async def promote(ready: list[OperationContext]) -> None:
        promoted.append(ready)

    discarded = await scheduler.drain(promote=promote, stop_signal=StopSignal())

    assert discarded == 0
    assert [context for batch in promoted for context in batch] == contexts


@pytest.mark.asyncio
async def test_drain_stops_and_discards_when_signalled() -> None:
    scheduler = RetryScheduler()
    context = batched_context("a")
    scheduler.schedule(context, delay=60.0, consume_budget=False)
    stop_signal = StopSignal()

    async def promote(ready: list[OperationContext]) -> None:
        raise AssertionError("nothing should be promoted")

    drain_task = asyncio.create_task(scheduler.drain(promote=promote, stop_signal=stop_signal))
    await asyncio.sleep(delay=0.01)
    stop_signal.set()

    assert await asyncio.wait_for(drain_task, timeout=1.0) == 1
    assert context.state is OperationState.DISCARDED


@pytest.mark.asyncio
async def test_stop_signal_wait_times_out() -> None:
    assert await StopSignal().wait(timeout=0.01) is False


@pytest.mark.asyncio
async def test_stop_signal_polls_external_predicate() -> None:
    flag = {"stop": False}
    signal = StopSignal(should_stop=lambda: flag["stop"], poll_interval=0.01)

    async def raise_flag() -> None:
        await asyncio.sleep(delay=0.03)
        flag["stop"] = True

    setter = asyncio.create_task(raise_flag())
    assert await signal.wait(timeout=5.0) is True
    await setter
    assert signal.is_set
