from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .logger import setup_logger

logger = setup_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: float = 1000
    multiplier: float = 2.0
    max_delay_ms: float = 10000

    def delay_for(self, attempt: int) -> float:
        """Backoff in milliseconds after the zero-based ``attempt`` failed."""
        delay = self.base_delay_ms * (self.multiplier ** attempt)
        return min(delay, self.max_delay_ms)


async def with_retry(
    operation: Callable[[int], Awaitable[Any]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
) -> Any:
    """Run ``operation(attempt)`` until it succeeds or retries are exhausted.

    Exceptions outside ``retry_on`` propagate immediately. After the last
    allowed attempt the retryable exception propagates as well.
    """
    attempt = 0
    while True:
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt >= policy.max_retries:
                logger.warning(f"giving up after {attempt + 1} attempts: {e}")
                raise
            delay_ms = policy.delay_for(attempt)
            if on_retry:
                on_retry(attempt, e, delay_ms)
            logger.info(f"attempt {attempt + 1} failed ({e}); retrying in {delay_ms:.0f}ms")
            await sleep(delay_ms / 1000)
            attempt += 1
