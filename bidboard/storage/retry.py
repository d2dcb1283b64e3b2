"""Bounded retry for storage contention."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import StorageContention, Transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
) -> T:
    """Run ``operation``, retrying on :class:`StorageContention` with exponential backoff."""
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StorageContention as exc:
            if attempt == attempts:
                raise Transient("ledger is busy, please retry") from exc
            delay = backoff_ms * (2 ** (attempt - 1)) / 1000
            logger.debug("storage contention (attempt %s/%s): %s", attempt, attempts, exc)
            await asyncio.sleep(delay)
    raise Transient("ledger is busy, please retry")  # pragma: no cover - loop always returns
