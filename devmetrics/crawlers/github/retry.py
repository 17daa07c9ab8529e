"""Bounded retry for source calls.

Transient failures back off exponentially; rate limits wait for the hinted
duration. Each attempt is capped by a per-call timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from devmetrics.config.settings import settings
from devmetrics.errors import RETRYABLE_ERRORS, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    max_rate_limit_wait_seconds: float = 900.0
    timeout_seconds: Optional[float] = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.GITHUB_MAX_RETRIES),
            backoff_base_seconds=settings.GITHUB_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.GITHUB_BACKOFF_MAX_SECONDS,
            max_rate_limit_wait_seconds=settings.GITHUB_RATE_LIMIT_MAX_WAIT_SECONDS,
            timeout_seconds=settings.GITHUB_TIMEOUT_SECONDS,
        )

    def is_retryable(self, error: BaseException) -> bool:
        if not isinstance(error, RETRYABLE_ERRORS):
            return False
        if isinstance(error, RateLimitedError):
            return error.retry_after <= self.max_rate_limit_wait_seconds
        return True

    def delay_for(self, attempt: int, error: Optional[BaseException]) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""

        if isinstance(error, RateLimitedError) and error.retry_after > 0:
            return error.retry_after
        exponent = max(attempt - 1, 0)
        return min(self.backoff_base_seconds * (2**exponent), self.backoff_max_seconds)

    def wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.delay_for(retry_state.attempt_number, error)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    resource: str,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run `operation` until it succeeds, fails permanently or attempts run out.

    The last error is re-raised unchanged once the policy gives up.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying source call",
            extra={
                "resource": resource,
                "attempt": retry_state.attempt_number,
                "error_kind": getattr(error, "kind", type(error).__name__),
                "wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
            },
        )

    async for attempt in AsyncRetrying(
        sleep=sleep or asyncio.sleep,
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait,
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await _call_with_timeout(operation, policy.timeout_seconds, resource)

    raise RuntimeError("unreachable")  # pragma: no cover


async def _call_with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_seconds: Optional[float],
    resource: str,
) -> T:
    if not timeout_seconds:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise TransientError(f"Source call timed out after {timeout_seconds}s", resource=resource) from exc
