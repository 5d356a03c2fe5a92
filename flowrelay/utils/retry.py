from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import PermanentError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int, initial: float, factor: float = 2.0, jitter: float = 0.0
) -> float:
    """Compute exponential backoff for a zero-based ``attempt``."""
    delay = initial * factor**attempt
    return delay + random.uniform(0, jitter) if jitter else delay


async def schedule_retry(delay: float) -> None:
    """Sleep ``delay`` seconds before the next attempt."""
    await asyncio.sleep(delay)


async def execute_with_retry(
    action: Callable[[], Awaitable[T]],
    max_retries: int,
    delay_ms: float,
    context: str,
) -> T:
    """Run ``action`` until it succeeds or ``max_retries`` retries are used.

    The wait doubles after every failed attempt, starting at ``delay_ms``.
    Errors derived from :class:`PermanentError` are re-raised immediately.

    Raises:
        RetryExhaustedError: After ``max_retries + 1`` failed attempts. The
            message embeds the attempt count and the last error message.
    """
    max_retries = max(0, int(max_retries))
    last_error: BaseException | None = None

    for attempt in range(max_retries + 1):
        try:
            return await action()
        except PermanentError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt < max_retries:
                delay = compute_backoff(attempt, delay_ms)
                logger.warning(
                    f"[{context}] Attempt {attempt + 1} failed, retrying in {delay:.0f}ms: {exc}"
                )
                await schedule_retry(delay / 1000)
            else:
                logger.error(f"[{context}] All {max_retries + 1} attempts failed")

    raise RetryExhaustedError(context, max_retries + 1, last_error)
