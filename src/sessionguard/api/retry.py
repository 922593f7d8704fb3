"""Bounded retry with backoff for transient failures.

Transient: no response received (timeout, reset, DNS) or a 5xx status.
Everything else is permanent and propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from ..errors import ApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE"})
IDEMPOTENCY_HEADER = "idempotency-key"


def backoff_delay(attempt: int, base_delay: float, strategy: str = "linear") -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    if strategy == "exponential":
        return base_delay * (2 ** (attempt - 1))
    return base_delay * attempt


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.transient


def is_retryable_method(method: str | None, headers: Mapping[str, str] | None = None) -> bool:
    """Whether a request may be resent without risking duplicate side effects."""
    if method is None or method.upper() in IDEMPOTENT_METHODS:
        return True
    return any(k.lower() == IDEMPOTENCY_HEADER for k in (headers or {}))


class RetryPolicy:
    """Wraps an outbound call with error classification and backoff.

    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        response = await policy.run(lambda: pipeline.send(descriptor), method="GET")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        strategy: str = "linear",
        retry_unsafe_methods: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if strategy not in ("linear", "exponential"):
            raise ValueError(f"Unknown backoff strategy: {strategy}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.strategy = strategy
        self.retry_unsafe_methods = retry_unsafe_methods
        self._sleep = sleep

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        method: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> T:
        """Run ``call`` until it succeeds, fails permanently, or runs out of attempts."""
        retryable = self.retry_unsafe_methods or is_retryable_method(method, headers)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except ApiError as e:
                if not is_transient(e) or not retryable or attempt >= self.max_attempts:
                    raise
                delay = backoff_delay(attempt, self.base_delay, self.strategy)
                logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e.message,
                    delay,
                )
                await self._sleep(delay)


async def with_retry(
    call: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> T:
    """Retry ``call`` on transient errors with linear backoff."""
    return await RetryPolicy(max_attempts, base_delay).run(call)
