"""
Retry helper with exponential backoff for upstream calls.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from billing_core.infrastructure.exceptions import UpstreamError


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: Tuple[Type[Exception], ...] = (UpstreamError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation``, retrying ``retry_on`` errors with exponential backoff.

    The last error is re-raised once ``max_retries`` attempts have failed.
    Anything not in ``retry_on`` propagates immediately.
    """
    attempts = max(max_retries, 1)
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts - 1:
                logger.error(f"{operation_name} failed after {attempts} attempts: {e}")
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                f"{operation_name} transient error. Attempt {attempt + 1}/{attempts}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)
    raise RuntimeError("unreachable")
