"""
Bounded worker pool running several dispatchers side by side.

Each group key is pinned to one worker for the lifetime of the pool, so two
batches for the same group are never in flight at the same time.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import typing as t
from dataclasses import dataclass, field

import structlog

from bulkdispatch.client import RemoteService
from bulkdispatch.context import ErrorCallback, OperationContext
from bulkdispatch.engine import Dispatcher, DispatchStats
from bulkdispatch.executor import ConfirmBatch
from bulkdispatch.logging import logging_context
from bulkdispatch.scheduler import StopSignal
from bulkdispatch.settings import DispatchSettings
from bulkdispatch.throttling import ThrottlingClassifier

log = structlog.get_logger(__name__)

C = t.TypeVar("C", bound=OperationContext)

_END_OF_INPUT = object()


@dataclass
class _Worker(t.Generic[C]):
    index: int
    dispatcher: Dispatcher[C]
    queue: asyncio.Queue[t.Any] = field(default_factory=asyncio.Queue)
    task: asyncio.Task[None] | None = None


class ParallelDispatcher(t.Generic[C]):
    """
    Fan operations out to ``settings.max_parallelism`` dispatchers.

    Parameters
    ----------
    client_factory : typing.Callable[[], RemoteService]
        Creates one client per worker, e.g. one connection each.
    settings : DispatchSettings | None, optional
        Configuration shared by every worker.
    classifier : ThrottlingClassifier | None, optional
        Throttling classifier shared by every worker.
    confirm_batch : ConfirmBatch | None, optional
        Veto hook invoked once per physical batch.
    on_error : ErrorCallback | None, optional
        Default terminal error callback.
    should_stop : typing.Callable[[], bool] | None, optional
        External stop predicate shared by every worker.
    clock : typing.Callable[[], float], optional
        Monotonic clock used for retry timestamps.
    """

    def __init__(
        self,
        *,
        client_factory: t.Callable[[], RemoteService],
        settings: DispatchSettings | None = None,
        classifier: ThrottlingClassifier | None = None,
        confirm_batch: ConfirmBatch | None = None,
        on_error: ErrorCallback | None = None,
        should_stop: t.Callable[[], bool] | None = None,
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings if settings is not None else DispatchSettings()
        self._stop_signal = StopSignal(
            should_stop=should_stop,
            poll_interval=self._settings.poll_interval_seconds,
        )
        self._workers: list[_Worker[C]] = [
            _Worker(
                index=index,
                dispatcher=Dispatcher(
                    client=client_factory(),
                    settings=self._settings,
                    classifier=classifier,
                    confirm_batch=confirm_batch,
                    on_error=on_error,
                    stop_signal=self._stop_signal,
                    clock=clock,
                ),
            )
            for index in range(self._settings.max_parallelism)
        ]
        self._assignments: dict[t.Hashable, _Worker[C]] = {}
        self._next_worker = itertools.cycle(self._workers)
        self._started = False
        self._input_complete = False

        log.debug(
            event="Initialized ParallelDispatcher",
            max_parallelism=self._settings.max_parallelism,
            batch_size=self._settings.batch_size,
        )

    @property
    def stats(self) -> DispatchStats:
        total = DispatchStats()
        for worker in self._workers:
            total = total.merge(worker.dispatcher.stats)
        return total

    def worker_for(self, group_key: t.Hashable) -> int:
        """
        Return the index of the worker that owns a group, assigning one if needed.
        """
        worker = self._assignments.get(group_key)
        if worker is None:
            worker = next(self._next_worker)
            self._assignments[group_key] = worker
            log.debug(event="Assigned group to worker", group=repr(group_key), worker=worker.index)
        return worker.index

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for worker in self._workers:
            worker.task = asyncio.create_task(
                coro=self._run_worker(worker=worker),
                name=f"bulkdispatch_worker_{worker.index}",
            )

    def stop(self) -> None:
        log.info(event="Stop requested")
        self._stop_signal.set()

    async def enqueue(self, context: C) -> None:
        """
        Route an operation to the worker owning its group.

        Parameters
        ----------
        context : C
            Operation to dispatch.
        """
        if self._input_complete:
            raise RuntimeError("Cannot enqueue after complete() was called")
        self.start()
        worker = self._workers[self.worker_for(context.group_key)]
        if worker.task is not None and worker.task.done():
            # Surface the worker's failure to the producer.
            await worker.task
        await worker.queue.put(context)

    async def _run_worker(self, *, worker: _Worker[C]) -> None:
        dispatcher = worker.dispatcher
        with logging_context(worker=worker.index):
            try:
                while True:
                    item = await worker.queue.get()
                    if item is _END_OF_INPUT:
                        break
                    await dispatcher.enqueue(t.cast(C, item))
                    await dispatcher.process_ready_retries()
                await dispatcher.close()
            except Exception:
                # No await between here and the raise, so producers cannot
                # queue behind a dead worker.
                discarded = self._discard_queued(worker=worker) + dispatcher.discard_outstanding()
                log.error(event="Worker failed", discarded=discarded)
                raise
            log.debug(event="Worker finished")

    @staticmethod
    def _discard_queued(*, worker: _Worker[C]) -> int:
        discarded = 0
        while not worker.queue.empty():
            item = worker.queue.get_nowait()
            if item is not _END_OF_INPUT:
                t.cast(C, item).discard()
                discarded += 1
        worker.dispatcher.stats.discarded += discarded
        return discarded

    async def complete(self) -> DispatchStats:
        """
        Signal end of input, then wait for every worker to flush and drain.

        Returns
        -------
        DispatchStats
            Totals across all workers.
        """
        self.start()
        if not self._input_complete:
            self._input_complete = True
            for worker in self._workers:
                await worker.queue.put(_END_OF_INPUT)
        results = await asyncio.gather(
            *(t.cast(asyncio.Task[None], w.task) for w in self._workers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        stats = self.stats
        log.info(event="All parallel operations completed", completed=stats.completed)
        return stats

    async def __aenter__(self) -> ParallelDispatcher[C]:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: t.Any,
    ) -> None:
        if exc_type is not None:
            self.stop()
        await self.complete()
