"""
In-memory multi-request service used by engine tests.
"""

import asyncio
import typing as t
from collections import Counter
from dataclasses import dataclass

from bulkdispatch.context import ExecutionContext
from bulkdispatch.models import Fault, ItemOutcome
from bulkdispatch.throttling import REQUEST_LIMIT_ERROR_CODE, RETRY_AFTER_DETAIL

OutcomeFactory = t.Callable[[t.Any, int], ItemOutcome]


def throttle_fault(*, seconds: float) -> Fault:
    """Build a service-protection fault asking to retry after ``seconds``."""
    return Fault(
        error_code=REQUEST_LIMIT_ERROR_CODE,
        message="Number of requests exceeded the limit",
        error_details={RETRY_AFTER_DETAIL: seconds},
    )


def plain_fault(*, code: int = -2147220891, message: str = "Operation failed") -> Fault:
    """Build an ordinary, non-throttling fault."""
    return Fault(error_code=code, message=message)


def echo(request: t.Any, attempt: int) -> ItemOutcome:
    return ItemOutcome.success(response={"request": request, "attempt": attempt})


@dataclass
class RecordedCall:
    requests: list[t.Any]
    execution_context: ExecutionContext | None


class FakeMultiRequestService:
    """
    Record multi-request calls and answer them from an outcome factory.

    Parameters
    ----------
    outcome_for : OutcomeFactory | None
        Called with ``(request, attempt)`` where ``attempt`` counts how many
        times that request has been submitted, starting at 1.
    delay : float
        Seconds each call takes.
    """

    def __init__(self, *, outcome_for: OutcomeFactory | None = None, delay: float = 0.0) -> None:
        self.calls: list[RecordedCall] = []
        self.attempts: Counter[t.Any] = Counter()
        self._outcome_for = outcome_for or echo
        self._delay = delay
        self._failures: list[Exception] = []
        self.in_flight: Counter[t.Hashable] = Counter()
        self.max_in_flight: Counter[t.Hashable] = Counter()

    def fail_next_call(self, error: Exception) -> None:
        """Raise ``error`` from the next call instead of returning outcomes."""
        self._failures.append(error)

    async def execute_multiple(
        self,
        requests: t.Sequence[t.Any],
        *,
        execution_context: ExecutionContext | None = None,
    ) -> list[ItemOutcome]:
        self.calls.append(
            RecordedCall(requests=list(requests), execution_context=execution_context)
        )
        self.in_flight[execution_context] += 1
        self.max_in_flight[execution_context] = max(
            self.max_in_flight[execution_context], self.in_flight[execution_context]
        )
        try:
            await asyncio.sleep(delay=self._delay)
            if self._failures:
                raise self._failures.pop(0)
            outcomes = []
            for request in requests:
                self.attempts[request] += 1
                outcomes.append(self._outcome_for(request, self.attempts[request]))
            return outcomes
        finally:
            self.in_flight[execution_context] -= 1


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
