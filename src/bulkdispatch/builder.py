"""
Accumulation of operation contexts into bounded, single-group batches.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass, field

import structlog

from bulkdispatch.context import OperationContext

log = structlog.get_logger(__name__)

C = t.TypeVar("C", bound=OperationContext)


@dataclass
class PendingBatch(t.Generic[C]):
    """
    Contexts drained from the builder for one physical submission.

    Parameters
    ----------
    group_key : typing.Hashable
        Group shared by every context in the batch.
    contexts : list[C]
        Contexts in enqueue order.
    """

    group_key: t.Hashable
    contexts: list[C] = field(default_factory=list)

    @property
    def request_count(self) -> int:
        return sum(len(context.requests) for context in self.contexts)


class BatchBuilder(t.Generic[C]):
    """
    Collect contexts for the active group until the batch is full.

    Only one group is pending at a time: a context for a different group
    first drains whatever the previous group had accumulated.

    Parameters
    ----------
    batch_size : int
        Maximum number of contexts per batch.
    """

    def __init__(self, *, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._batch_size = batch_size
        self._pending: list[C] = []
        self._active_group: t.Hashable = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def active_group(self) -> t.Hashable:
        return self._active_group

    def add(self, context: C) -> list[PendingBatch[C]]:
        """
        Append a context and return any batches that must be submitted now.

        Parameters
        ----------
        context : C
            Context to append.

        Returns
        -------
        list[PendingBatch[C]]
            Zero, one or two batches: the previous group's leftovers when the
            group changes, and the current group's batch when it is full.
        """
        ready: list[PendingBatch[C]] = []
        if self._pending and context.group_key != self._active_group:
            log.debug(
                event="Group changed, flushing previous group",
                previous_group=repr(self._active_group),
                group=repr(context.group_key),
                pending_count=len(self._pending),
            )
            ready.append(self._take())

        self._active_group = context.group_key
        self._pending.append(context)
        if len(self._pending) >= self._batch_size:
            log.debug(
                event="Batch size reached",
                group=repr(self._active_group),
                batch_size=self._batch_size,
            )
            ready.append(self._take())
        return ready

    def take(self) -> PendingBatch[C] | None:
        """
        Drain whatever is pending regardless of fullness.

        Returns
        -------
        PendingBatch[C] | None
            The pending batch, or ``None`` when nothing is pending.
        """
        if not self._pending:
            return None
        return self._take()

    def _take(self) -> PendingBatch[C]:
        batch = PendingBatch(group_key=self._active_group, contexts=self._pending)
        self._pending = []
        return batch

    def discard_all(self) -> int:
        discarded = len(self._pending)
        for context in self._pending:
            context.discard()
        self._pending = []
        return discarded
