"""Tunables for the resolver and the retry wrapper.

Values come from keyword arguments, the CLI, or ``IAMREACH_*`` environment
variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

MAX_WORKERS_LIMIT = 100

ENV_MAX_WORKERS = "IAMREACH_MAX_WORKERS"
ENV_NAME_SAMPLE_SIZE = "IAMREACH_NAME_SAMPLE_SIZE"
ENV_MAX_RETRIES = "IAMREACH_MAX_RETRIES"
ENV_INITIAL_DELAY = "IAMREACH_INITIAL_DELAY"


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff for throttled gateway calls.

    Attributes:
        max_retries: retries after the first attempt (0 disables retrying)
        initial_delay: delay in seconds before the first retry; doubled on
            every subsequent attempt
    """

    max_retries: int = 3
    initial_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay < 0:
            raise ValueError(
                f"initial_delay must be >= 0, got {self.initial_delay}"
            )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the failed *attempt* (0-based)."""
        return self.initial_delay * (2**attempt)


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class ResolverConfig:
    """Resource limits for AccessResolver.

    Attributes:
        max_workers: concurrent in-flight gateway calls (1..100)
        name_sample_size: permission-set names resolved per bulk call;
            other ARNs keep the raw ARN as display name
        retry: backoff applied to every individual gateway call
    """

    max_workers: int = 10
    name_sample_size: int = 10
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_workers > MAX_WORKERS_LIMIT:
            object.__setattr__(self, "max_workers", MAX_WORKERS_LIMIT)
        if self.name_sample_size < 0:
            raise ValueError(
                f"name_sample_size must be >= 0, got {self.name_sample_size}"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> ResolverConfig:
        """
        Build a config from ``IAMREACH_*`` variables, defaulting the rest.

        Raises:
            ValueError: a variable is set but is not a number.
        """
        defaults = cls()
        retry = RetryConfig(
            max_retries=_env_int(environ, ENV_MAX_RETRIES, defaults.retry.max_retries),
            initial_delay=_env_float(
                environ, ENV_INITIAL_DELAY, defaults.retry.initial_delay
            ),
        )
        return cls(
            max_workers=_env_int(environ, ENV_MAX_WORKERS, defaults.max_workers),
            name_sample_size=_env_int(
                environ, ENV_NAME_SAMPLE_SIZE, defaults.name_sample_size
            ),
            retry=retry,
        )


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
