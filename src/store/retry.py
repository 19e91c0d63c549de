# src/store/retry.py — v1
"""Store write retry policy with exponential backoff.

Only StoreUnavailable is retried; any other exception is a bug or a bad
delta and propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from entitysynth.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for store operations."""

    max_retries: int = 3
    base_delay_s: float = 0.5
    backoff_factor: float = 2.0
    jitter: bool = True


DEFAULT_RETRY_CONFIG = RetryConfig()


def _compute_delay(config: RetryConfig, attempt: int) -> float:
    """Compute delay for a given attempt (0-based)."""
    delay = config.base_delay_s * (config.backoff_factor ** attempt)
    if config.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_store_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    operation: str = "unknown",
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> Any:
    """Execute an async store call, retrying transient backend failures.

    Raises:
        StoreUnavailable: The last failure, once all retries are exhausted.
    """
    config = config or DEFAULT_RETRY_CONFIG
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except StoreUnavailable as e:
            attempts += 1
            if attempts > config.max_retries:
                logger.error(
                    "Store %s failed after %d attempts: %s", operation, attempts, e
                )
                raise

            delay = _compute_delay(config, attempts - 1)
            logger.warning(
                "Store %s unavailable (attempt %d/%d), retrying in %.1fs",
                operation, attempts, config.max_retries, delay,
            )
            await asyncio.sleep(delay)
