"""
Batch dispatch and retry engine.

A ``Dispatcher`` accumulates operation contexts into bounded, single-group
batches, submits each batch as one multi-request call, routes per-item
outcomes back to the contexts and retries transient failures from a
time-ordered queue. Typical use::

    async with Dispatcher(client=client, settings=settings) as dispatcher:
        for record in records:
            await dispatcher.enqueue(OperationContext([build_request(record)]))

Leaving the ``async with`` block flushes pending work and drains retries.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from dataclasses import asdict, dataclass

import structlog

from bulkdispatch.builder import BatchBuilder, PendingBatch
from bulkdispatch.client import RemoteService
from bulkdispatch.context import ErrorCallback, OperationContext, OperationState
from bulkdispatch.executor import BatchExecutor, BatchReport, ConfirmBatch
from bulkdispatch.scheduler import RetryScheduler, StopSignal
from bulkdispatch.settings import DispatchSettings
from bulkdispatch.throttling import ServiceProtectionClassifier, ThrottlingClassifier

log = structlog.get_logger(__name__)

C = t.TypeVar("C", bound=OperationContext)


@dataclass
class DispatchStats:
    """
    Running totals for one dispatcher.
    """

    batches_submitted: int = 0
    requests_submitted: int = 0
    completed: int = 0
    errored: int = 0
    retries_scheduled: int = 0
    throttled: int = 0
    vetoed: int = 0
    discarded: int = 0

    def record(self, report: BatchReport) -> None:
        if report.submitted:
            self.batches_submitted += 1
            self.requests_submitted += report.request_count
        self.completed += report.completed
        self.errored += report.errored
        self.retries_scheduled += report.retried
        self.throttled += report.throttled
        self.vetoed += report.vetoed
        self.discarded += report.discarded

    def merge(self, other: DispatchStats) -> DispatchStats:
        return DispatchStats(
            **{key: value + getattr(other, key) for key, value in asdict(self).items()}
        )


class Dispatcher(t.Generic[C]):
    """
    Single-worker batch dispatch engine.

    Parameters
    ----------
    client : RemoteService
        Collaborator executing multi-request calls.
    settings : DispatchSettings | None, optional
        Engine configuration. Defaults to ``DispatchSettings()``.
    classifier : ThrottlingClassifier | None, optional
        Throttling classifier. Defaults to ``ServiceProtectionClassifier``.
    confirm_batch : ConfirmBatch | None, optional
        Veto hook invoked once per physical batch before submission.
    on_error : ErrorCallback | None, optional
        Default terminal error callback ``(correlation_token, error)`` for
        contexts without their own.
    should_stop : typing.Callable[[], bool] | None, optional
        External stop predicate, polled at ``settings.poll_interval_seconds``.
    stop_signal : StopSignal | None, optional
        Shared stop signal. Takes precedence over ``should_stop``.
    clock : typing.Callable[[], float], optional
        Monotonic clock used for retry timestamps.
    """

    def __init__(
        self,
        *,
        client: RemoteService,
        settings: DispatchSettings | None = None,
        classifier: ThrottlingClassifier | None = None,
        confirm_batch: ConfirmBatch | None = None,
        on_error: ErrorCallback | None = None,
        should_stop: t.Callable[[], bool] | None = None,
        stop_signal: StopSignal | None = None,
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings if settings is not None else DispatchSettings()
        self._classifier = (
            classifier
            if classifier is not None
            else ServiceProtectionClassifier(
                default_retry_after=self._settings.default_throttle_seconds
            )
        )
        self._on_error = on_error
        self._stop_signal = (
            stop_signal
            if stop_signal is not None
            else StopSignal(
                should_stop=should_stop,
                poll_interval=self._settings.poll_interval_seconds,
            )
        )
        self._builder: BatchBuilder[C] = BatchBuilder(batch_size=self._settings.batch_size)
        self._scheduler: RetryScheduler[C] = RetryScheduler(clock=clock)
        self._executor: BatchExecutor[C] = BatchExecutor(
            client=client,
            classifier=self._classifier,
            scheduler=self._scheduler,
            settings=self._settings,
            stop_signal=self._stop_signal,
            confirm_batch=confirm_batch,
        )
        self._lock = asyncio.Lock()
        self._closed = False
        self.stats = DispatchStats()

        log.debug(
            event="Initialized Dispatcher",
            batch_size=self._settings.batch_size,
            max_retries=self._settings.max_retries,
            retry_delay_seconds=self._settings.retry_delay_seconds,
            exponential_backoff=self._settings.exponential_backoff,
        )

    @property
    def settings(self) -> DispatchSettings:
        return self._settings

    @property
    def pending_count(self) -> int:
        return len(self._builder)

    @property
    def retry_count(self) -> int:
        return len(self._scheduler)

    @property
    def stopped(self) -> bool:
        return self._stop_signal.is_set

    def stop(self) -> None:
        """
        Request cancellation. In-flight calls finish; nothing new is submitted.
        """
        log.info(event="Stop requested")
        self._stop_signal.set()

    async def enqueue(self, context: C) -> None:
        """
        Queue an operation, submitting a batch when the group changes or it fills up.

        Parameters
        ----------
        context : C
            Operation to dispatch.
        """
        if self._closed:
            raise RuntimeError("Cannot enqueue into a closed dispatcher")
        if context.state is not OperationState.PENDING:
            raise ValueError(f"{context!r} has already been dispatched")
        context.apply_default_retries(max_retries=self._settings.max_retries)
        if context.on_error is None:
            context.on_error = self._on_error

        async with self._lock:
            await self._enqueue_locked(context=context)

    async def _enqueue_locked(self, *, context: C) -> None:
        if self._stop_signal.is_set:
            context.discard()
            self.stats.discarded += 1
            return
        errors: list[Exception] = []
        for batch in self._builder.add(context):
            try:
                await self._execute(batch=batch)
            except Exception as error:
                errors.append(error)
        if errors:
            raise errors[0]

    async def _execute(self, *, batch: PendingBatch[C]) -> None:
        report = BatchReport()
        try:
            await self._executor.execute_batch(batch, report=report)
        finally:
            self.stats.record(report)

    async def flush(self) -> None:
        """
        Submit whatever is pending regardless of batch fullness.
        """
        async with self._lock:
            await self._flush_locked()

    async def _flush_locked(self) -> None:
        if self._stop_signal.is_set:
            self.stats.discarded += self._builder.discard_all()
            return
        batch = self._builder.take()
        if batch is not None:
            await self._execute(batch=batch)

    async def _promote(self, contexts: list[C]) -> None:
        errors: list[Exception] = []
        async with self._lock:
            for context in contexts:
                context.mark_pending()
                try:
                    await self._enqueue_locked(context=context)
                except Exception as error:
                    errors.append(error)
            try:
                await self._flush_locked()
            except Exception as error:
                errors.append(error)
        if errors:
            raise errors[0]

    async def process_ready_retries(self) -> int:
        """
        Resubmit retries that are already due, without waiting.

        Returns
        -------
        int
            Number of contexts promoted.
        """
        ready = self._scheduler.pop_ready()
        if ready:
            await self._promote(ready)
        return len(ready)

    async def drain(self) -> None:
        """
        Resubmit scheduled retries until none remain or a stop is requested.

        Contexts still waiting when a stop is observed are discarded without
        success or error callbacks.
        """
        self.stats.discarded += await self._scheduler.drain(
            promote=self._promote,
            stop_signal=self._stop_signal,
        )
        if self._stop_signal.is_set:
            async with self._lock:
                self.stats.discarded += self._builder.discard_all()

    def discard_outstanding(self) -> int:
        """
        Drop pending and retry-scheduled contexts without callbacks.

        Returns
        -------
        int
            Number of contexts discarded.
        """
        discarded = self._builder.discard_all() + self._scheduler.discard_all()
        self.stats.discarded += discarded
        return discarded

    async def close(self) -> DispatchStats:
        """
        Flush pending work, drain retries and refuse further operations.

        Returns
        -------
        DispatchStats
            Final totals.
        """
        if self._closed:
            return self.stats
        try:
            await self.flush()
            await self.drain()
        finally:
            self._closed = True
        log.info(event="Dispatcher closed", **asdict(self.stats))
        return self.stats

    async def __aenter__(self) -> Dispatcher[C]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        if exc_type is not None:
            self.stop()
        await self.close()
