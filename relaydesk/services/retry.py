"""Retry with exponential backoff for flaky external calls (LLM, delivery)."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 0.5,
    *,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` up to ``max_retries + 1`` times.

    The delay starts at ``initial_delay`` seconds and doubles after each
    failure (no jitter). The last error is re-raised once attempts run out.
    """
    delay = initial_delay
    last_error: Optional[BaseException] = None
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            if attempt >= max_retries:
                break
            logger.warning(
                f"[RETRY] {label} failed (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)
            delay *= 2
    logger.error(f"[RETRY] {label} failed after {max_retries + 1} attempts: {last_error}")
    raise last_error
