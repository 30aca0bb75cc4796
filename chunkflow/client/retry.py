"""Bounded exponential backoff with cooperative cancellation.

Shared by the single-request path, chunk sends and upload completion.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from chunkflow.client.errors import UploadCancelled, is_retryable as default_is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancellation flag checked at the top of every attempt and batch."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelled()

    async def wait(self) -> None:
        await self._event.wait()


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base... capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float = 1.0,
    max_delay: float = 4.0,
    cancel_token: Optional[CancellationToken] = None,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up.

    Non-retryable exceptions propagate at once. ``UploadCancelled`` is
    raised before any attempt once the token is cancelled, and is never
    retried.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            return await operation()
        except UploadCancelled:
            raise
        except Exception as e:
            if not is_retryable(e) or attempt == attempts:
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e!r}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    raise AssertionError("unreachable")
