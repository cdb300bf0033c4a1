"""
Per-operation state carried through batching, retry and completion.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass
from enum import StrEnum

import structlog

from bulkdispatch.exceptions import OperationError
from bulkdispatch.models import Fault

log = structlog.get_logger(__name__)

SuccessCallback = t.Callable[[t.Any], None]
FaultHandler = t.Callable[[Fault], bool]
ErrorCallback = t.Callable[[t.Any, OperationError], None]


class OperationState(StrEnum):
    PENDING = "pending"
    BATCHED = "batched"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    ERRORED = "errored"
    DISCARDED = "discarded"


TERMINAL_STATES = frozenset(
    {OperationState.COMPLETED, OperationState.ERRORED, OperationState.DISCARDED}
)


@dataclass(frozen=True)
class ExecutionContext:
    """
    Batch-scoped execution settings passed to the remote service.

    Operations whose execution contexts differ are never combined into the
    same physical batch, so an ``ExecutionContext`` doubles as a group key.

    Parameters
    ----------
    caller_id : str | None
        Identity the batch is executed as.
    bypass_business_logic : tuple[str, ...]
        Downstream automation types to bypass (e.g. ``"CustomSync"``).
    bypass_step_ids : tuple[str, ...]
        Specific automation step identifiers to bypass.
    """

    caller_id: str | None = None
    bypass_business_logic: tuple[str, ...] = ()
    bypass_step_ids: tuple[str, ...] = ()

    def to_parameters(self) -> dict[str, str]:
        """
        Build multi-request parameters for this context.

        Returns
        -------
        dict[str, str]
            Bypass parameters, omitted when empty.
        """
        parameters: dict[str, str] = {}
        if self.bypass_business_logic:
            parameters["BypassBusinessLogicExecution"] = ",".join(self.bypass_business_logic)
        if self.bypass_step_ids:
            parameters["BypassBusinessLogicExecutionStepIds"] = ",".join(self.bypass_step_ids)
        return parameters

    def to_headers(self) -> dict[str, str]:
        if self.caller_id is None:
            return {}
        return {"CallerObjectId": self.caller_id}


class OperationContext:
    """
    One logical operation expanding to one or more wire requests.

    Parameters
    ----------
    requests : typing.Sequence[typing.Any]
        Wire requests submitted together, in order, whenever this operation is batched.
    on_success : typing.Sequence[SuccessCallback | None] | SuccessCallback | None, optional
        Callback per wire request, invoked with that request's response. A
        single callable applies to the first request only.
    on_fault : FaultHandler | None, optional
        Hook returning ``True`` when a fault should be treated as success.
    on_error : ErrorCallback | None, optional
        Terminal error callback ``(correlation_token, error)``. The dispatcher
        default is used when omitted.
    on_complete : typing.Callable[[OperationContext], None] | None, optional
        Invoked once after every wire request succeeded or was fault-handled.
    correlation_token : typing.Any, optional
        Caller value returned with terminal errors.
    group_key : typing.Hashable, optional
        Partition key. Operations with different keys never share a batch.
    max_retries : int | None, optional
        Retry budget for non-throttling failures. The dispatcher default is
        used when omitted.
    """

    def __init__(
        self,
        requests: t.Sequence[t.Any],
        *,
        on_success: t.Sequence[SuccessCallback | None] | SuccessCallback | None = None,
        on_fault: FaultHandler | None = None,
        on_error: ErrorCallback | None = None,
        on_complete: t.Callable[[OperationContext], None] | None = None,
        correlation_token: t.Any = None,
        group_key: t.Hashable = None,
        max_retries: int | None = None,
    ) -> None:
        if not requests:
            raise ValueError("An operation context requires at least one request")
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        self.requests: list[t.Any] = list(requests)
        if on_success is None:
            callbacks: list[SuccessCallback | None] = []
        elif callable(on_success):
            callbacks = [on_success]
        else:
            callbacks = list(on_success)
        if len(callbacks) > len(self.requests):
            raise ValueError("More success callbacks than requests")
        self.on_success: list[SuccessCallback | None] = callbacks + [None] * (
            len(self.requests) - len(callbacks)
        )
        self.on_fault = on_fault
        self.on_error = on_error
        self.on_complete = on_complete
        self.correlation_token = correlation_token
        self.group_key = group_key
        self.max_retries = max_retries
        self.retries_remaining = max_retries if max_retries is not None else 0
        self.next_retry_at: float | None = None
        self.attempts = 0
        self.state = OperationState.PENDING

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} requests={len(self.requests)} "
            f"state={self.state} token={self.correlation_token!r}>"
        )

    def describe(self) -> str:
        """
        Short description used in batch confirmation prompts.
        """
        names = ", ".join(type(request).__name__ for request in self.requests)
        if self.correlation_token is None:
            return names
        return f"{names} ({self.correlation_token!r})"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def apply_default_retries(self, *, max_retries: int) -> None:
        if self.max_retries is None:
            self.max_retries = max_retries
            self.retries_remaining = max_retries

    def _transition(self, *, state: OperationState) -> None:
        if self.is_terminal:
            raise RuntimeError(f"{self!r} already reached terminal state {self.state}")
        self.state = state

    def mark_pending(self) -> None:
        if self.state is not OperationState.RETRY_SCHEDULED:
            raise RuntimeError(f"{self!r} is not waiting for a retry")
        self.state = OperationState.PENDING

    def mark_batched(self) -> None:
        self._transition(state=OperationState.BATCHED)
        self.next_retry_at = None
        self.attempts += 1

    def handle_fault(self, fault: Fault) -> bool:
        """
        Give the caller a chance to treat a fault as expected.
        """
        if self.on_fault is None:
            return False
        return bool(self.on_fault(fault))

    def retry_delay(self, *, base_delay: float, exponential: bool) -> float:
        """
        Compute the backoff before the next non-throttling retry.

        Parameters
        ----------
        base_delay : float
            Fixed short delay in seconds.
        exponential : bool
            Double the delay on each successive attempt.

        Returns
        -------
        float
            Delay in seconds.
        """
        if not exponential:
            return base_delay
        attempt_number = (self.max_retries or 0) - self.retries_remaining + 1
        return base_delay * 2 ** max(0, attempt_number - 1)

    def schedule_retry(self, *, retry_at: float, consume_budget: bool) -> None:
        """
        Move the context into the retry-scheduled state.

        Parameters
        ----------
        retry_at : float
            Clock time before which the context must not be resubmitted.
        consume_budget : bool
            Decrement the retry budget (non-throttling failures only).
        """
        if consume_budget:
            if self.retries_remaining <= 0:
                raise RuntimeError(f"{self!r} has no retries remaining")
            self.retries_remaining -= 1
        self._transition(state=OperationState.RETRY_SCHEDULED)
        self.next_retry_at = retry_at

    def complete(self, *, responses: t.Sequence[tuple[int, t.Any]]) -> None:
        """
        Mark the operation completed and deliver responses.

        Parameters
        ----------
        responses : typing.Sequence[tuple[int, typing.Any]]
            ``(request_index, response)`` pairs for requests that succeeded.
        """
        self._transition(state=OperationState.COMPLETED)
        self.next_retry_at = None
        self.deliver(responses=responses)
        if self.on_complete is not None:
            self.on_complete(self)

    def deliver(self, *, responses: t.Sequence[tuple[int, t.Any]]) -> None:
        for index, response in responses:
            callback = self.on_success[index]
            if callback is not None:
                callback(response)

    def report_error(self, error: OperationError) -> None:
        self._transition(state=OperationState.ERRORED)
        self.next_retry_at = None
        if self.on_error is not None:
            self.on_error(self.correlation_token, error)
        else:
            log.error(
                event="Operation failed",
                correlation_token=repr(self.correlation_token),
                error=str(error),
            )

    def discard(self) -> None:
        if self.is_terminal:
            return
        self.state = OperationState.DISCARDED
        self.next_retry_at = None
