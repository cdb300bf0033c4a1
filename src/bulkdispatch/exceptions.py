"""
Bulkdispatch-specific runtime exceptions.
"""

from __future__ import annotations

import typing as t

from bulkdispatch.models import Fault, format_fault_details


class DispatchError(Exception):
    """
    Base class for errors raised by the dispatch engine.
    """


class ConfigurationError(DispatchError, ValueError):
    """
    Signal an invalid engine configuration.
    """


class ProtocolError(DispatchError):
    """
    Signal that the remote service replied with a malformed multi-request result.
    """


class ServiceFaultError(DispatchError):
    """
    Transport-level failure carrying a structured service fault.

    Parameters
    ----------
    fault : Fault
        Fault returned by the remote service for the whole call.
    """

    def __init__(self, fault: Fault) -> None:
        super().__init__(format_fault_details(fault=fault))
        self.fault = fault


class OperationError(DispatchError):
    """
    Terminal error reported for one operation context.

    Parameters
    ----------
    message : str
        Human readable error summary.
    correlation_token : typing.Any
        Caller-supplied token identifying the originating input.
    fault : Fault | None
        First unhandled fault observed for the context, if the failure was
        reported per item.
    faults : list[Fault] | None
        Every unhandled fault observed for the context on its final attempt.
    cause : BaseException | None
        Transport exception when the whole batch call failed.
    """

    def __init__(
        self,
        message: str,
        *,
        correlation_token: t.Any = None,
        fault: Fault | None = None,
        faults: list[Fault] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.correlation_token = correlation_token
        self.fault = fault
        self.faults = list(faults) if faults else ([fault] if fault is not None else [])
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause
