"""
Engine configuration.
"""

from __future__ import annotations

import os
import typing as t
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bulkdispatch.exceptions import ConfigurationError

ENV_PREFIX = "BULKDISPATCH_"


class DispatchSettings(BaseModel):
    """
    Tunables exposed to the embedding caller.

    Attributes
    ----------
    batch_size : int
        Maximum number of operation contexts per physical batch. ``1``
        disables batching.
    max_retries : int
        Default retry budget per operation for non-throttling failures.
    retry_delay_seconds : float
        Fixed short backoff before a non-throttling retry.
    exponential_backoff : bool
        Double ``retry_delay_seconds`` on each successive attempt.
    poll_interval_seconds : float
        Granularity at which an external stop predicate is polled while
        waiting for retries.
    max_parallelism : int
        Worker count used by ``ParallelDispatcher``.
    default_throttle_seconds : float
        Backoff used for throttling faults that carry no retry-after value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = Field(default=100, ge=1)
    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=5.0, gt=0)
    exponential_backoff: bool = False
    poll_interval_seconds: float = Field(default=0.1, gt=0)
    max_parallelism: int = Field(default=1, ge=1)
    default_throttle_seconds: float = Field(default=5.0, gt=0)

    @classmethod
    def build(cls, **values: t.Any) -> DispatchSettings:
        """
        Validate settings, raising ``ConfigurationError`` on invalid input.
        """
        try:
            return cls(**values)
        except ValidationError as error:
            raise ConfigurationError(str(error)) from error

    @classmethod
    def from_env(
        cls,
        *,
        prefix: str = ENV_PREFIX,
        dotenv_path: str | Path | None = None,
        load_dotenv_file: bool = True,
        **overrides: t.Any,
    ) -> DispatchSettings:
        """
        Load settings from environment variables.

        Parameters
        ----------
        prefix : str, optional
            Environment variable prefix, e.g. ``BULKDISPATCH_BATCH_SIZE``.
        dotenv_path : str | Path | None, optional
            Explicit ``.env`` file. The nearest ``.env`` is used when omitted.
        load_dotenv_file : bool, optional
            Load the ``.env`` file before reading the environment.
        **overrides : typing.Any
            Values taking precedence over the environment.

        Returns
        -------
        DispatchSettings
            Validated settings.
        """
        if load_dotenv_file:
            load_dotenv(dotenv_path=dotenv_path)
        values: dict[str, t.Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls.build(**values)
