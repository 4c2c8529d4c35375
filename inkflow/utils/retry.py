"""Exponential backoff and transient-fault classification."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
)
from ..errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Matched against exception class names (including base classes) and messages.
RETRYABLE_MARKERS = (
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "NetworkError",
    "TimeoutError",
    "ConnectError",
    "connection refused",
    "connection reset",
    "timed out",
    "timeout",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "network is unreachable",
)

_RETRYABLE_TYPES = (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.gaierror)


class RetryPolicy(BaseModel):
    """Attempt budget and backoff shape. Delays are in seconds."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    initial_delay: float = Field(default=DEFAULT_INITIAL_DELAY, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1)


def compute_backoff(
    attempt: int,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retrying after the ``attempt``-th failure (1-based)."""
    return initial_delay * multiplier ** (max(attempt, 1) - 1)


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, ValidationError):
        return False
    if isinstance(error, _RETRYABLE_TYPES):
        return True
    names = [cls.__name__ for cls in type(error).__mro__]
    message = str(error).lower()
    for marker in RETRYABLE_MARKERS:
        if any(marker in name for name in names):
            return True
        if marker.lower() in message:
            return True
    return False


class RetryManager:
    """Retries transient failures with exponential backoff."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def get_delay(self, attempt: int) -> float:
        return compute_backoff(
            attempt, self.policy.initial_delay, self.policy.backoff_multiplier
        )

    def is_retryable(self, error: BaseException) -> bool:
        return is_transient_error(error)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if attempt >= self.policy.max_attempts:
            return False
        return self.is_retryable(error)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` until it succeeds or a non-retryable failure occurs."""
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as exc:
                if not self.should_retry(attempt, exc):
                    raise
                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.policy.max_attempts} failed with "
                    f"{type(exc).__name__}: {exc}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                attempt += 1
