"""Retry policy shared by the remote puller and the outbound delivery queue."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, FrozenSet, TypeVar

from storesync.errors import PermanentRemoteError, RateLimitedError, RetryExhaustedError, TransientRemoteError

if TYPE_CHECKING:
    from storesync.common.json_logger import JsonLogger
    from storesync.config import Config

T = TypeVar("T")

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({408, 425, 429, 500, 502, 503, 504})

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    factor: float = 2.0
    max_delay_seconds: float = 300.0
    retryable_statuses: FrozenSet[int] = field(default=RETRYABLE_STATUSES)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the ``attempt``-th failure (1-based)."""

        if attempt < 1:
            return 0.0
        delay = self.base_delay_seconds * (self.factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def is_retryable_status(self, status_code: int | None) -> bool:
        if status_code is None:
            return True
        return status_code in self.retryable_statuses

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, PermanentRemoteError):
            return False
        if isinstance(exc, TransientRemoteError):
            return self.is_retryable_status(exc.status_code)
        return False

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        logger: "JsonLogger | None" = None,
        phase: str = "retry",
        sleep: Sleep = asyncio.sleep,
        **log_fields: Any,
    ) -> T:
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                last_error = exc
                if self.exhausted(attempt):
                    break
                delay = self.delay_for(attempt)
                if isinstance(exc, RateLimitedError) and exc.retry_after:
                    delay = max(delay, min(exc.retry_after, self.max_delay_seconds))
                if logger is not None:
                    logger.warn(
                        phase=phase,
                        message="transient failure; retrying",
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(exc),
                        **log_fields,
                    )
                await sleep(delay)

        raise RetryExhaustedError(
            f"gave up after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_error=last_error,
        )


def policy_from_config(config: "Config") -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_max_attempts,
        base_delay_seconds=config.retry_base_delay_seconds,
        max_delay_seconds=config.retry_max_delay_seconds,
    )
