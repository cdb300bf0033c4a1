import typing as t

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

log = structlog.get_logger(__name__)

NOT_FOUND_ERROR_CODE = -2147220969
NOT_FOUND_MESSAGE = "Does Not Exist"


class Fault(BaseModel):
    """
    Structured error returned by the remote service for one request or a whole call.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    error_code: int = Field(default=0, validation_alias=AliasChoices("error_code", "ErrorCode"))
    message: str = Field(default="", validation_alias=AliasChoices("message", "Message"))
    trace_text: str | None = Field(
        default=None, validation_alias=AliasChoices("trace_text", "TraceText")
    )
    error_details: dict[str, t.Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("error_details", "ErrorDetails"),
    )
    inner_fault: "Fault | None" = Field(
        default=None, validation_alias=AliasChoices("inner_fault", "InnerFault")
    )


class ItemOutcome(BaseModel):
    """
    Result for one wire request of a multi-request call.

    Exactly one of ``response`` or ``fault`` is meaningful: when ``fault`` is
    set the request failed, otherwise ``response`` holds the domain response
    (which may legitimately be ``None``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    request_index: int | None = Field(
        default=None, validation_alias=AliasChoices("request_index", "RequestIndex")
    )
    response: t.Any = Field(default=None, validation_alias=AliasChoices("response", "Response"))
    fault: Fault | None = Field(default=None, validation_alias=AliasChoices("fault", "Fault"))

    @property
    def is_fault(self) -> bool:
        return self.fault is not None

    @classmethod
    def success(cls, response: t.Any = None) -> "ItemOutcome":
        return cls(response=response)

    @classmethod
    def failure(cls, fault: Fault) -> "ItemOutcome":
        return cls(fault=fault)


class MultiRequestReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    responses: list[ItemOutcome] = Field(
        default_factory=list, validation_alias=AliasChoices("responses", "Responses")
    )
    is_faulted: bool = Field(
        default=False, validation_alias=AliasChoices("is_faulted", "IsFaulted")
    )

    @model_validator(mode="before")
    @classmethod
    def unwrap_envelope(cls, data: t.Any):
        if not isinstance(data, dict):
            return data
        results = data.get("Results")
        if isinstance(results, dict):
            return results
        return data

    def ordered_outcomes(self, *, request_count: int) -> list[ItemOutcome] | None:
        """
        Order outcomes by request index.

        Parameters
        ----------
        request_count : int
            Number of wire requests that were submitted.

        Returns
        -------
        list[ItemOutcome] | None
            One outcome per submitted request in submission order, or ``None``
            when the reply does not cover every request exactly once.
        """
        if len(self.responses) != request_count:
            return None
        if all(outcome.request_index is None for outcome in self.responses):
            return list(self.responses)

        ordered: list[ItemOutcome | None] = [None] * request_count
        for position, outcome in enumerate(self.responses):
            index = position if outcome.request_index is None else outcome.request_index
            if not 0 <= index < request_count or ordered[index] is not None:
                return None
            ordered[index] = outcome
        return t.cast(list[ItemOutcome], ordered)


def format_fault_details(*, fault: Fault) -> str:
    """
    Render a fault and its inner faults as text.

    Parameters
    ----------
    fault : Fault
        Fault to render.

    Returns
    -------
    str
        ``Fault <code>: <message>`` followed by the trace text, with inner
        faults appended after a ``---`` separator.
    """
    lines: list[str] = []
    current: Fault | None = fault
    while current is not None:
        if lines:
            lines.append("---")
        lines.append(f"Fault {current.error_code}: {current.message}")
        if current.trace_text:
            lines.append(current.trace_text)
        current = current.inner_fault
    return "\n".join(lines)


def is_not_found_fault(fault: Fault) -> bool:
    """
    Check whether a fault reports that the target record does not exist.
    """
    return fault.error_code == NOT_FOUND_ERROR_CODE or NOT_FOUND_MESSAGE in fault.message


def ignore_not_found(fault: Fault) -> bool:
    """
    ``on_fault`` hook treating a missing record as success (delete-if-exists).
    """
    handled = is_not_found_fault(fault)
    if handled:
        log.debug(event="Record was not present", error_code=fault.error_code)
    return handled
