"""
Tests for the ParallelDispatcher class in bulkdispatch.parallel.
"""

import pytest

from bulkdispatch.context import ExecutionContext, OperationContext, OperationState
from bulkdispatch.models import ItemOutcome
from bulkdispatch.parallel import ParallelDispatcher
from bulkdispatch.settings import DispatchSettings
from tests.mocks.service import FakeMultiRequestService, echo, plain_fault

GROUPS = [ExecutionContext(caller_id=name) for name in ("alice", "bob", "carol")]


@pytest.fixture
def parallel_settings() -> DispatchSettings:
    return DispatchSettings(
        batch_size=2,
        max_retries=1,
        retry_delay_seconds=0.01,
        poll_interval_seconds=0.01,
        max_parallelism=2,
    )


def test_groups_are_pinned_round_robin(parallel_settings: DispatchSettings) -> None:
    dispatcher = ParallelDispatcher(
        client_factory=FakeMultiRequestService, settings=parallel_settings
    )

    assert [dispatcher.worker_for(group) for group in GROUPS] == [0, 1, 0]
    assert dispatcher.worker_for(GROUPS[1]) == 1


@pytest.mark.asyncio
async def test_all_operations_complete(parallel_settings: DispatchSettings) -> None:
    """Test that every operation completes and one group is never in flight twice."""
    service = FakeMultiRequestService(delay=0.005)
    completed: list[OperationContext] = []
    contexts = [
        OperationContext(
            [f"{group.caller_id}-{index}"],
            group_key=group,
            on_complete=completed.append,
        )
        for index in range(5)
        for group in GROUPS
    ]

    async with ParallelDispatcher(
        client_factory=lambda: service, settings=parallel_settings
    ) as dispatcher:
        for context in contexts:
            await dispatcher.enqueue(context)

    assert len(completed) == len(contexts)
    assert all(context.state is OperationState.COMPLETED for context in contexts)
    assert all(count == 1 for count in service.max_in_flight.values())
    for call in service.calls:
        assert {request.split("-")[0] for request in call.requests} == {
            call.execution_context.caller_id
        }
    assert dispatcher.stats.completed == len(contexts)


@pytest.mark.asyncio
async def test_workers_retry_and_report_errors(parallel_settings: DispatchSettings) -> None:
    def outcome_for(request, attempt) -> ItemOutcome:
        if request.startswith("bad"):
            return ItemOutcome.failure(plain_fault())
        return echo(request, attempt)

    service = FakeMultiRequestService(outcome_for=outcome_for)
    errors = []
    dispatcher = ParallelDispatcher(
        client_factory=lambda: service,
        settings=parallel_settings,
        on_error=lambda token, error: errors.append(token),
    )

    await dispatcher.enqueue(OperationContext(["good"], group_key=GROUPS[0]))
    await dispatcher.enqueue(
        OperationContext(["bad"], group_key=GROUPS[1], correlation_token="bad-row")
    )
    stats = await dispatcher.complete()

    assert errors == ["bad-row"]
    assert service.attempts["bad"] == 2
    assert stats.completed == 1
    assert stats.errored == 1
    assert await dispatcher.complete() == stats


@pytest.mark.asyncio
async def test_enqueue_after_complete_is_rejected(parallel_settings: DispatchSettings) -> None:
    dispatcher = ParallelDispatcher(
        client_factory=FakeMultiRequestService, settings=parallel_settings
    )
    await dispatcher.complete()

    with pytest.raises(RuntimeError):
        await dispatcher.enqueue(OperationContext(["late"]))


@pytest.mark.asyncio
async def test_stop_discards_pending_work(parallel_settings: DispatchSettings) -> None:
    service = FakeMultiRequestService()
    dispatcher = ParallelDispatcher(client_factory=lambda: service, settings=parallel_settings)
    context = OperationContext(["a"], group_key=GROUPS[0])

    dispatcher.stop()
    await dispatcher.enqueue(context)
    await dispatcher.complete()

    assert service.calls == []
    assert context.state is OperationState.DISCARDED


@pytest.mark.asyncio
async def test_failed_worker_discards_its_queued_operations(
    parallel_settings: DispatchSettings,
) -> None:
    """Test that operations queued behind a failing worker are discarded, not stranded."""

    def raising_callback(response) -> None:
        raise RuntimeError("callback bug")

    service = FakeMultiRequestService()
    dispatcher = ParallelDispatcher(client_factory=lambda: service, settings=parallel_settings)
    broken = OperationContext(["alice-0"], group_key=GROUPS[0], on_success=raising_callback)
    broken_sibling = OperationContext(["alice-1"], group_key=GROUPS[0])
    queued = [
        OperationContext(["alice-2"], group_key=GROUPS[0]),
        OperationContext(["alice-3"], group_key=GROUPS[0]),
    ]
    other_group = OperationContext(["bob-0"], group_key=GROUPS[1])

    for context in [broken, broken_sibling, *queued, other_group]:
        await dispatcher.enqueue(context)
    with pytest.raises(RuntimeError, match="callback bug"):
        await dispatcher.complete()

    assert broken.state is OperationState.COMPLETED
    assert broken_sibling.state is OperationState.COMPLETED
    assert all(context.state is OperationState.DISCARDED for context in queued)
    assert other_group.state is OperationState.COMPLETED
    assert dispatcher.stats.discarded == 2
    with pytest.raises(RuntimeError):
        await dispatcher.enqueue(OperationContext(["late"], group_key=GROUPS[0]))
