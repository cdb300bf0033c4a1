"""
Classification of service-protection throttling signals.

The dispatch engine never inspects exception types to decide whether to wait:
it asks a ``ThrottlingClassifier`` and receives a ``ThrottleDecision``.
"""

from __future__ import annotations

import re
import typing as t
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from bulkdispatch.exceptions import ServiceFaultError
from bulkdispatch.models import Fault

REQUEST_LIMIT_ERROR_CODE = -2147015902
EXECUTION_TIME_ERROR_CODE = -2147015903
CONCURRENCY_ERROR_CODE = -2147015898
THROTTLING_ERROR_CODES = frozenset(
    {REQUEST_LIMIT_ERROR_CODE, EXECUTION_TIME_ERROR_CODE, CONCURRENCY_ERROR_CODE}
)
RETRY_AFTER_DETAIL = "Retry-After"
DEFAULT_THROTTLE_SECONDS = 5.0

_TIMESPAN_PATTERN = re.compile(
    r"^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{2}):(?P<seconds>\d{2}(?:\.\d+)?)$"
)


@dataclass(frozen=True)
class ThrottleDecision:
    """
    Outcome of classifying a failure.

    Parameters
    ----------
    is_throttling : bool
        ``True`` when the failure is a server-declared throttling rejection.
    retry_after : float
        Seconds the caller must wait before retrying. ``0.0`` when not throttled.
    """

    is_throttling: bool
    retry_after: float = 0.0


NOT_THROTTLED = ThrottleDecision(is_throttling=False)


class ThrottlingClassifier(t.Protocol):
    """
    Decide whether a fault or transport exception is throttling.
    """

    def classify(self, failure: Fault | BaseException) -> ThrottleDecision: ...


def parse_retry_after(value: t.Any, *, now: datetime | None = None) -> float | None:
    """
    Parse a retry-after value into seconds.

    Parameters
    ----------
    value : typing.Any
        Seconds as a number or numeric string, a ``[d.]HH:MM:SS[.fff]``
        timespan, or an HTTP date.
    now : datetime | None, optional
        Reference time for HTTP dates. Defaults to the current UTC time.

    Returns
    -------
    float | None
        Non-negative delay in seconds, or ``None`` when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    text = str(value).strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    match = _TIMESPAN_PATTERN.match(text)
    if match is not None:
        days = int(match.group("days") or 0)
        return (
            days * 86400
            + int(match.group("hours")) * 3600
            + int(match.group("minutes")) * 60
            + float(match.group("seconds"))
        )
    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    reference = now if now is not None else datetime.now(tz=timezone.utc)
    return max(0.0, (retry_at - reference).total_seconds())


class ServiceProtectionClassifier:
    """
    Default classifier for service-protection API limits.

    Parameters
    ----------
    default_retry_after : float
        Delay used when a throttling fault carries no retry-after detail.
    throttling_codes : typing.Iterable[int] | None
        Error codes treated as throttling. Defaults to the service protection codes.
    """

    def __init__(
        self,
        *,
        default_retry_after: float = DEFAULT_THROTTLE_SECONDS,
        throttling_codes: t.Iterable[int] | None = None,
    ) -> None:
        self._default_retry_after = default_retry_after
        self._throttling_codes = (
            frozenset(throttling_codes) if throttling_codes is not None else THROTTLING_ERROR_CODES
        )

    def classify(self, failure: Fault | BaseException) -> ThrottleDecision:
        if isinstance(failure, Fault):
            return self._classify_fault(fault=failure)
        if isinstance(failure, ServiceFaultError):
            return self._classify_fault(fault=failure.fault)
        if isinstance(failure, httpx.HTTPStatusError):
            return self._classify_response(response=failure.response)
        return NOT_THROTTLED

    def _classify_fault(self, *, fault: Fault) -> ThrottleDecision:
        if fault.error_code not in self._throttling_codes:
            return NOT_THROTTLED
        retry_after = parse_retry_after(fault.error_details.get(RETRY_AFTER_DETAIL))
        if retry_after is None:
            retry_after = self._default_retry_after
        return ThrottleDecision(is_throttling=True, retry_after=retry_after)

    def _classify_response(self, *, response: httpx.Response) -> ThrottleDecision:
        if response.status_code != httpx.codes.TOO_MANY_REQUESTS:
            return NOT_THROTTLED
        retry_after = parse_retry_after(response.headers.get(RETRY_AFTER_DETAIL))
        if retry_after is None:
            retry_after = self._default_retry_after
        return ThrottleDecision(is_throttling=True, retry_after=retry_after)
