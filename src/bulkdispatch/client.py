"""
Remote-service collaborator executing one multi-request call per batch.
"""

from __future__ import annotations

import json
import typing as t
import uuid
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import ValidationError

from bulkdispatch.context import ExecutionContext
from bulkdispatch.exceptions import ProtocolError, ServiceFaultError
from bulkdispatch.models import Fault, ItemOutcome, MultiRequestReply
from bulkdispatch.throttling import REQUEST_LIMIT_ERROR_CODE, RETRY_AFTER_DETAIL

log = structlog.get_logger(__name__)

EXECUTE_MULTIPLE_PATH = "/ExecuteMultiple"


class RemoteService(t.Protocol):
    """
    Executes an ordered list of wire requests with continue-on-error semantics.

    Implementations either raise (no per-item results obtained) or return one
    ``ItemOutcome`` per request, in request order.
    """

    async def execute_multiple(
        self,
        requests: t.Sequence[t.Any],
        *,
        execution_context: ExecutionContext | None = None,
    ) -> t.Sequence[ItemOutcome]: ...


class HttpBatchClient:
    """
    JSON-over-HTTP implementation of ``RemoteService``.

    Parameters
    ----------
    base_url : str
        Service base URL or hostname.
    headers : dict[str, str] | None, optional
        Headers sent with every call (e.g. authorization).
    client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
        Factory for the underlying HTTP client.
    path : str, optional
        Multi-request endpoint path.
    """

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str] | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
        path: str = EXECUTE_MULTIPLE_PATH,
    ) -> None:
        self._base_url = self._normalize_base_url(url=base_url)
        self._headers = dict(headers or {})
        self._client_factory: t.Callable[[], httpx.AsyncClient] = (
            client_factory
            if client_factory is not None
            else lambda: httpx.AsyncClient(timeout=120.0)
        )
        self._path = path

    @staticmethod
    def _normalize_base_url(*, url: str) -> str:
        stripped = url.strip().rstrip("/")
        if not stripped:
            raise ValueError("Service base URL cannot be empty")
        if urlparse(url=stripped).scheme:
            return stripped
        return f"https://{stripped}"

    @staticmethod
    def _serialize_request(request: t.Any) -> t.Any:
        model_dump = getattr(request, "model_dump", None)
        if callable(model_dump):
            return model_dump(mode="json", by_alias=True)
        return request

    def build_payload(
        self,
        *,
        requests: t.Sequence[t.Any],
        execution_context: ExecutionContext | None,
    ) -> dict[str, t.Any]:
        """
        Build the JSON body of a multi-request call.

        Parameters
        ----------
        requests : typing.Sequence[typing.Any]
            Wire requests in submission order.
        execution_context : ExecutionContext | None
            Batch-scoped execution settings.

        Returns
        -------
        dict[str, typing.Any]
            JSON-serializable payload.
        """
        payload: dict[str, t.Any] = {
            "RequestId": str(uuid.uuid4()),
            "Settings": {"ContinueOnError": True, "ReturnResponses": True},
            "Requests": [self._serialize_request(request) for request in requests],
        }
        if execution_context is not None:
            parameters = execution_context.to_parameters()
            if parameters:
                payload["Parameters"] = parameters
        return payload

    def _raise_for_fault(self, *, response: httpx.Response) -> None:
        if response.is_success:
            return

        retry_after = response.headers.get(RETRY_AFTER_DETAIL)
        if response.status_code in (
            httpx.codes.TOO_MANY_REQUESTS,
            httpx.codes.SERVICE_UNAVAILABLE,
        ) and retry_after is not None:
            raise ServiceFaultError(
                Fault(
                    error_code=REQUEST_LIMIT_ERROR_CODE,
                    message=f"HTTP {response.status_code}: service protection limit exceeded",
                    error_details={RETRY_AFTER_DETAIL: retry_after},
                )
            )

        try:
            body = response.json()
        except json.JSONDecodeError:
            body = None
        fault_data = body.get("Fault", body.get("fault")) if isinstance(body, dict) else None
        if isinstance(fault_data, dict):
            try:
                fault = Fault.model_validate(fault_data)
            except ValidationError:
                fault = None
            if fault is not None:
                raise ServiceFaultError(fault)
        response.raise_for_status()

    async def execute_multiple(
        self,
        requests: t.Sequence[t.Any],
        *,
        execution_context: ExecutionContext | None = None,
    ) -> list[ItemOutcome]:
        headers = {**self._headers}
        if execution_context is not None:
            headers.update(execution_context.to_headers())
        payload = self.build_payload(requests=requests, execution_context=execution_context)
        url = f"{self._base_url}{self._path}"

        log.debug(
            event="Sending multi-request call",
            url=url,
            request_count=len(requests),
            request_id=payload["RequestId"],
        )
        async with self._client_factory() as client:
            response = await client.post(url=url, json=payload, headers=headers)
        self._raise_for_fault(response=response)

        try:
            reply = MultiRequestReply.model_validate(response.json())
        except (json.JSONDecodeError, ValidationError) as error:
            raise ProtocolError(f"Unreadable multi-request reply: {error}") from error

        outcomes = reply.ordered_outcomes(request_count=len(requests))
        if outcomes is None:
            raise ProtocolError(
                f"Expected {len(requests)} outcomes, received {len(reply.responses)}"
            )
        log.debug(
            event="Received multi-request reply",
            url=url,
            request_count=len(requests),
            fault_count=sum(1 for outcome in outcomes if outcome.is_fault),
        )
        return outcomes
