"""Bounded retry with linearly increasing backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry a coroutine factory up to `attempts` times in total.

    The wait before retry number n (1-based) is `backoff_seconds * n`, so the
    defaults wait 1s and then 2s.
    """

    attempts: int = 3
    backoff_seconds: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def delay_for(self, retry_number: int) -> float:
        return max(0.0, self.backoff_seconds * retry_number)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        label: str = "call",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """Await `fn()` until it succeeds; re-raise the last error when out of attempts."""
        total = max(1, int(self.attempts))
        attempt = 1
        while True:
            try:
                return await fn()
            except self.retry_on as exc:
                if attempt >= total:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label,
                    attempt,
                    total,
                    exc,
                    delay,
                )
                await sleep(delay)
                attempt += 1
