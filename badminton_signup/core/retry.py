"""Bounded retry and timeouts for store calls."""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from badminton_signup.core.logging import get_logger
from badminton_signup.storage.base import StoreError, StoreTimeout

log = get_logger(__name__)

T = TypeVar("T")


async def run_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    operation: str = "store_call",
) -> T:
    """
    Execute a store operation with retry on transient failures.

    Retries StoreError with exponential backoff; anything else (including
    StoreTimeout) propagates on the first occurrence.
    """
    for attempt in range(attempts):
        try:
            return await func()
        except StoreError as exc:
            if attempt >= attempts - 1:
                raise
            log.warning("store_retry", operation=operation, attempt=attempt + 1, error=str(exc))
            await asyncio.sleep(backoff_base * (2 ** attempt))
    raise StoreError(f"{operation}: no attempts made")


async def with_timeout(awaitable: Awaitable[Any], seconds: float) -> Any:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise StoreTimeout(f"store call exceeded {seconds}s") from exc
