"""
Submission of one physical batch and routing of its per-item outcomes.

Every context handed to ``BatchExecutor.execute_batch`` leaves it in exactly
one of these states: completed, errored, retry-scheduled or discarded.
"""

from __future__ import annotations

import typing as t
import uuid
from dataclasses import dataclass, field

import structlog

from bulkdispatch.builder import PendingBatch
from bulkdispatch.client import RemoteService
from bulkdispatch.context import ExecutionContext, OperationContext, OperationState
from bulkdispatch.exceptions import OperationError, ProtocolError
from bulkdispatch.logging import logging_context
from bulkdispatch.models import Fault, ItemOutcome, format_fault_details
from bulkdispatch.scheduler import RetryScheduler, StopSignal
from bulkdispatch.settings import DispatchSettings
from bulkdispatch.throttling import ThrottlingClassifier

log = structlog.get_logger(__name__)

C = t.TypeVar("C", bound=OperationContext)


@dataclass(frozen=True)
class BatchPreview:
    """
    Description of a batch handed to the confirmation hook before submission.

    Parameters
    ----------
    batch_id : str
        Identifier used in logs for this submission.
    group_key : typing.Hashable
        Group shared by the batch.
    contexts : tuple[OperationContext, ...]
        Contexts about to be submitted.
    """

    batch_id: str
    group_key: t.Hashable
    contexts: tuple[OperationContext, ...]

    @property
    def request_count(self) -> int:
        return sum(len(context.requests) for context in self.contexts)

    def describe(self) -> str:
        lines = "\n".join(context.describe() for context in self.contexts)
        return f"Execute batch of requests:\n{lines}"


ConfirmBatch = t.Callable[[BatchPreview], bool]


@dataclass
class BatchReport:
    """
    Per-batch tally of context outcomes.
    """

    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    submitted: bool = False
    request_count: int = 0
    completed: int = 0
    errored: int = 0
    retried: int = 0
    throttled: int = 0
    vetoed: int = 0
    discarded: int = 0


class BatchExecutor(t.Generic[C]):
    """
    Build one multi-request call per batch and demultiplex its outcomes.

    Parameters
    ----------
    client : RemoteService
        Collaborator executing the multi-request call.
    classifier : ThrottlingClassifier
        Decides whether failures are throttling and for how long to back off.
    scheduler : RetryScheduler[C]
        Destination for contexts that must be retried.
    settings : DispatchSettings
        Retry backoff configuration.
    stop_signal : StopSignal
        No batch is started once the signal is set.
    confirm_batch : ConfirmBatch | None, optional
        Veto hook. Returning ``False`` discards the batch without retry.
    """

    def __init__(
        self,
        *,
        client: RemoteService,
        classifier: ThrottlingClassifier,
        scheduler: RetryScheduler[C],
        settings: DispatchSettings,
        stop_signal: StopSignal,
        confirm_batch: ConfirmBatch | None = None,
    ) -> None:
        self._client = client
        self._classifier = classifier
        self._scheduler = scheduler
        self._settings = settings
        self._stop_signal = stop_signal
        self._confirm_batch = confirm_batch

    async def execute_batch(
        self,
        batch: PendingBatch[C],
        *,
        report: BatchReport | None = None,
    ) -> BatchReport:
        """
        Submit a batch and route every outcome.

        An exception raised by a caller hook is re-raised only after every
        other context of the batch has been routed. A context whose own hook
        raised before it reached a final state is discarded.

        Parameters
        ----------
        batch : PendingBatch[C]
            Contexts sharing one group key.
        report : BatchReport | None, optional
            Tally to fill in. Lets the caller read the counts even when a
            caller hook raises.

        Returns
        -------
        BatchReport
            Tally of what happened to each context.
        """
        if report is None:
            report = BatchReport()
        with logging_context(batch_id=report.batch_id):
            return await self._execute_batch(batch=batch, report=report)

    async def _execute_batch(self, *, batch: PendingBatch[C], report: BatchReport) -> BatchReport:
        contexts = batch.contexts
        if not contexts:
            return report

        if self._stop_signal.is_set:
            for context in contexts:
                context.discard()
            report.discarded = len(contexts)
            log.info(event="Stop requested, batch discarded", context_count=len(contexts))
            return report

        preview = BatchPreview(
            batch_id=report.batch_id,
            group_key=batch.group_key,
            contexts=tuple(contexts),
        )
        try:
            confirmed = self._confirm_batch is None or self._confirm_batch(preview)
        except Exception:
            for context in contexts:
                context.discard()
            report.discarded = len(contexts)
            log.error(
                event="Confirmation hook raised, batch discarded",
                context_count=len(contexts),
            )
            raise
        if not confirmed:
            for context in contexts:
                context.discard()
            report.vetoed = len(contexts)
            log.info(
                event="Batch declined by confirmation hook",
                context_count=len(contexts),
            )
            return report

        requests: list[t.Any] = []
        offsets: list[int] = []
        for context in contexts:
            context.mark_batched()
            offsets.append(len(requests))
            requests.extend(context.requests)

        report.submitted = True
        report.request_count = len(requests)
        execution_context = (
            batch.group_key if isinstance(batch.group_key, ExecutionContext) else None
        )
        log.info(
            event="Submitting batch",
            group=repr(batch.group_key),
            context_count=len(contexts),
            request_count=len(requests),
        )

        try:
            outcomes = list(
                await self._client.execute_multiple(
                    requests,
                    execution_context=execution_context,
                )
            )
            if len(outcomes) != len(requests):
                raise ProtocolError(
                    f"Expected {len(requests)} outcomes, received {len(outcomes)}"
                )
        except Exception as error:
            self._handle_transport_failure(contexts=contexts, error=error, report=report)
            return report

        self._for_each_context(
            contexts=contexts,
            report=report,
            action=lambda position, context: self._route_context(
                context=context,
                outcomes=outcomes[offsets[position] : offsets[position] + len(context.requests)],
                report=report,
            ),
        )

        log.debug(
            event="Batch processed",
            completed=report.completed,
            errored=report.errored,
            retried=report.retried,
            throttled=report.throttled,
        )
        return report

    def _retry_or_fail(
        self,
        *,
        context: C,
        error: OperationError,
        report: BatchReport,
        partial_responses: t.Sequence[tuple[int, t.Any]] = (),
    ) -> None:
        if context.retries_remaining > 0:
            delay = context.retry_delay(
                base_delay=self._settings.retry_delay_seconds,
                exponential=self._settings.exponential_backoff,
            )
            self._scheduler.schedule(context, delay=delay, consume_budget=True)
            report.retried += 1
            log.info(
                event="Operation failed, will retry",
                correlation_token=repr(context.correlation_token),
                delay_seconds=delay,
                attempt=context.attempts,
                retries_remaining=context.retries_remaining,
                error=str(error),
            )
            return

        context.deliver(responses=partial_responses)
        report.errored += 1
        context.report_error(error)

    def _handle_transport_failure(
        self,
        *,
        contexts: list[C],
        error: Exception,
        report: BatchReport,
    ) -> None:
        decision = self._classifier.classify(error)
        if decision.is_throttling:
            log.warning(
                event="Batch throttled by service protection",
                retry_after_seconds=decision.retry_after,
                context_count=len(contexts),
            )
            for context in contexts:
                self._scheduler.schedule(
                    context, delay=decision.retry_after, consume_budget=False
                )
            report.throttled += len(contexts)
            return

        log.warning(
            event="Batch call failed",
            error_type=type(error).__name__,
            error=str(error),
        )
        self._for_each_context(
            contexts=contexts,
            report=report,
            action=lambda _, context: self._retry_or_fail(
                context=context,
                error=OperationError(
                    str(error) or type(error).__name__,
                    correlation_token=context.correlation_token,
                    cause=error,
                ),
                report=report,
            ),
        )

    def _for_each_context(
        self,
        *,
        contexts: list[C],
        report: BatchReport,
        action: t.Callable[[int, C], None],
    ) -> None:
        """
        Apply ``action`` to every context, re-raising the first hook exception afterwards.
        """
        first_error: Exception | None = None
        for position, context in enumerate(contexts):
            try:
                action(position, context)
            except Exception as error:
                if context.state is OperationState.BATCHED:
                    context.discard()
                    report.discarded += 1
                log.error(
                    event="Operation callback raised",
                    correlation_token=repr(context.correlation_token),
                    error_type=type(error).__name__,
                    error=str(error),
                )
                if first_error is None:
                    first_error = error
        if first_error is not None:
            raise first_error

    def _route_context(
        self,
        *,
        context: C,
        outcomes: list[ItemOutcome],
        report: BatchReport,
    ) -> None:
        throttle_delay: float | None = None
        faults: list[Fault] = []
        responses: list[tuple[int, t.Any]] = []

        for index, outcome in enumerate(outcomes):
            if outcome.fault is None:
                responses.append((index, outcome.response))
                continue

            decision = self._classifier.classify(outcome.fault)
            if decision.is_throttling:
                throttle_delay = max(throttle_delay or 0.0, decision.retry_after)
            elif context.handle_fault(outcome.fault):
                log.debug(
                    event="Fault handled by operation",
                    correlation_token=repr(context.correlation_token),
                    request_index=index,
                    error_code=outcome.fault.error_code,
                )
            else:
                faults.append(outcome.fault)

        # The whole context is resubmitted, never individual requests.
        if throttle_delay is not None:
            log.info(
                event="Request in batch throttled by service protection",
                correlation_token=repr(context.correlation_token),
                retry_after_seconds=throttle_delay,
            )
            self._scheduler.schedule(context, delay=throttle_delay, consume_budget=False)
            report.throttled += 1
            return

        if faults:
            first_fault = faults[0]
            self._retry_or_fail(
                context=context,
                error=OperationError(
                    format_fault_details(fault=first_fault),
                    correlation_token=context.correlation_token,
                    fault=first_fault,
                    faults=faults,
                ),
                report=report,
                partial_responses=responses,
            )
            return

        report.completed += 1
        context.complete(responses=responses)
