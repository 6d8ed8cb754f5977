"""Growing, jittered delays for polling a contended resource.

The registry lock manager sleeps between attempts to create its lock
directory, the hook dispatcher between callback attempts. The sleep doubles
per attempt up to a ceiling and never outlasts the caller's remaining
timeout.

Example usage:
    >>> backoff = ExponentialBackoff(BackoffConfig(initial_delay_seconds=0.05, max_delay_seconds=1.0))
    >>> await backoff.wait(attempt=3, limit=remaining)
"""

from __future__ import annotations

import asyncio
import random

from pydantic import BaseModel, Field

from unideploy.logging import get_logger

logger = get_logger(__name__)


class BackoffConfig(BaseModel):
    """Delay schedule.

    Attributes:
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Ceiling for any single delay
        multiplier: Growth factor per attempt
        jitter: Scale each delay by a random factor in [0.5, 1.0]
    """

    initial_delay_seconds: float = Field(default=0.05, gt=0.0, le=60.0)
    max_delay_seconds: float = Field(default=1.0, gt=0.0, le=600.0)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=True)


class ExponentialBackoff:
    """Computes and sleeps the delay for a given retry attempt."""

    def __init__(self, config: BackoffConfig) -> None:
        self.config = config

    def next_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt``, counting from zero."""
        cfg = self.config
        delay = min(cfg.initial_delay_seconds * cfg.multiplier**attempt, cfg.max_delay_seconds)
        if cfg.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    async def wait(self, attempt: int, limit: float | None = None) -> float:
        """Sleep before retry ``attempt``, at most ``limit`` seconds; returns the time slept."""
        delay = self.next_delay(attempt)
        if limit is not None:
            delay = min(delay, max(limit, 0.0))
        logger.debug("backoff_waiting", attempt=attempt, delay=round(delay, 3))
        await asyncio.sleep(delay)
        return delay
