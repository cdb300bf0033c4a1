"""
Time-ordered retry queue and the cancellation signal shared by the engine.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
import typing as t

import structlog

from bulkdispatch.context import OperationContext

log = structlog.get_logger(__name__)

C = t.TypeVar("C", bound=OperationContext)


class StopSignal:
    """
    Cancellation signal observed at every engine loop boundary.

    The signal is set either explicitly with ``set()`` or by an external
    predicate (e.g. a host application's "is stopping" flag), which is polled
    every ``poll_interval`` seconds while waiting.

    Parameters
    ----------
    should_stop : typing.Callable[[], bool] | None, optional
        External stop predicate.
    poll_interval : float, optional
        Seconds between predicate checks while waiting.
    """

    def __init__(
        self,
        *,
        should_stop: t.Callable[[], bool] | None = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._event = asyncio.Event()
        self._should_stop = should_stop
        self._poll_interval = poll_interval

    def set(self) -> None:
        self._event.set()

    @property
    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        if self._should_stop is not None and self._should_stop():
            self._event.set()
            return True
        return False

    async def wait(self, *, timeout: float) -> bool:
        """
        Wait up to ``timeout`` seconds for the signal.

        Parameters
        ----------
        timeout : float
            Maximum time to wait in seconds.

        Returns
        -------
        bool
            ``True`` if the signal was set before the timeout elapsed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while not self.is_set:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            # Without an external predicate the event alone wakes us.
            slice_seconds = remaining
            if self._should_stop is not None:
                slice_seconds = min(remaining, self._poll_interval)
            try:
                await asyncio.wait_for(self._event.wait(), timeout=slice_seconds)
            except TimeoutError:
                continue
        return True


class RetryScheduler(t.Generic[C]):
    """
    Hold operation contexts until their retry time is reached.

    Parameters
    ----------
    clock : typing.Callable[[], float], optional
        Monotonic clock in seconds.
    """

    def __init__(self, *, clock: t.Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, C]] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)

    def now(self) -> float:
        return self._clock()

    def schedule(self, context: C, *, delay: float, consume_budget: bool) -> float:
        """
        Schedule a context for retry.

        Parameters
        ----------
        context : C
            Context whose batch attempt failed.
        delay : float
            Seconds to wait before the context may be resubmitted.
        consume_budget : bool
            Whether the retry counts against the context's retry budget.

        Returns
        -------
        float
            Clock time at which the context becomes ready.
        """
        retry_at = self._clock() + max(0.0, delay)
        context.schedule_retry(retry_at=retry_at, consume_budget=consume_budget)
        heapq.heappush(self._heap, (retry_at, next(self._sequence), context))
        return retry_at

    @property
    def next_retry_at(self) -> float | None:
        if not self._heap:
            return None
        return self._heap[0][0]

    def pop_ready(self) -> list[C]:
        """
        Remove and return every context whose retry time has been reached.

        Returns
        -------
        list[C]
            Ready contexts ordered by retry time.
        """
        now = self._clock()
        ready: list[C] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, context = heapq.heappop(self._heap)
            ready.append(context)
        return ready

    def discard_all(self) -> int:
        discarded = len(self._heap)
        for _, _, context in self._heap:
            context.discard()
        self._heap.clear()
        return discarded

    async def drain(
        self,
        *,
        promote: t.Callable[[list[C]], t.Awaitable[None]],
        stop_signal: StopSignal,
    ) -> int:
        """
        Resubmit retries until none remain or the stop signal is set.

        Parameters
        ----------
        promote : typing.Callable[[list[C]], typing.Awaitable[None]]
            Coroutine function re-enqueuing ready contexts and flushing them.
        stop_signal : StopSignal
            Cancellation signal. Contexts still waiting when it is set are discarded.

        Returns
        -------
        int
            Number of contexts discarded because of a stop request.
        """
        while self._heap and not stop_signal.is_set:
            ready = self.pop_ready()
            if ready:
                log.debug(event="Promoting retries", ready_count=len(ready), waiting=len(self))
                await promote(ready)
                continue

            next_retry_at = t.cast(float, self.next_retry_at)
            wait_seconds = max(0.0, next_retry_at - self._clock())
            log.info(
                event="Waiting for next retry batch",
                wait_seconds=round(wait_seconds, 1),
                waiting=len(self),
            )
            await stop_signal.wait(timeout=wait_seconds)

        discarded = 0
        if self._heap and stop_signal.is_set:
            discarded = self.discard_all()
            log.info(event="Stopped with retries outstanding", discarded=discarded)
        return discarded
