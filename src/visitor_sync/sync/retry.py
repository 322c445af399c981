"""Shared retry/backoff policy for the record store and notification clients.

Retries are driven by an explicit tenacity ``AsyncRetrying`` loop rather than
decorators so each client can carry its own tuning (base delay differs per
client) and tests can inject a no-op sleep.

Retry ``i`` (0-indexed) waits ``base_delay * multiplier ** i``. The first
call plus ``max_retries`` retries are attempted; exceptions whose
``retriable`` attribute is False stop the loop immediately. After the last
attempt the final exception is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def is_retriable(exc: BaseException) -> bool:
    """Retry anything not explicitly marked ``retriable = False``."""
    if not isinstance(exc, Exception):
        return False
    return bool(getattr(exc, "retriable", True))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff tuning.

    Args:
        max_retries: Retries after the first attempt.
        base_delay_ms: Delay before the first retry.
        multiplier: Growth factor between consecutive delays.
        sleep: Awaitable sleep used between attempts (tests pass a no-op).
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    multiplier: float = 2.0
    sleep: SleepFn = field(default=asyncio.sleep, compare=False, repr=False)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_seconds(self, retry_index: int) -> float:
        """Delay before retry ``retry_index`` (0-indexed), in seconds."""
        return (self.base_delay_ms / 1000.0) * (self.multiplier**retry_index)

    def retrying(self, operation: str) -> AsyncRetrying:
        """Build the tenacity loop for one logical operation."""

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retry.scheduled",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                delay_ms=int(retry_state.next_action.sleep * 1000) if retry_state.next_action else 0,
                error=str(exc),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay_ms / 1000.0,
                exp_base=self.multiplier,
            ),
            retry=retry_if_exception(is_retriable),
            before_sleep=_log_retry,
            sleep=self.sleep,
            reraise=True,
        )


async def call_with_retry(
    policy: RetryPolicy,
    operation: str,
    func: Callable[[int], Awaitable[T]],
) -> T:
    """Run ``func(attempt_number)`` under ``policy``.

    The attempt number (1-based) is passed through so callers can report
    which attempt succeeded.
    """
    async for attempt in policy.retrying(operation):
        with attempt:
            return await func(attempt.retry_state.attempt_number)
    raise AssertionError("unreachable: tenacity re-raises on exhaustion")
