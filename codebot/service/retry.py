from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from codebot.config import Settings
from codebot.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base_delay * multiplier**(n-1)`` capped at ``max_delay``.

    With the defaults a call is tried three times, sleeping 1s then 2s
    between attempts.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based) before the next one."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        name: str = "operation",
    ) -> T:
        """Await ``operation()`` until it succeeds or attempts run out.

        Only exceptions matching ``retry_on`` (and accepted by
        ``should_retry`` when given) are retried; the last one is re-raised.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as exc:
                retryable = should_retry(exc) if should_retry else True
                if not retryable or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retrying_after_failure",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await self.sleep(delay)
                attempt += 1
