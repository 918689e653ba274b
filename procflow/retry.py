from __future__ import annotations

import asyncio
import random
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """How often and how patiently a step's task is retried."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    backoff: Literal["fixed", "exponential"] = "exponential"
    delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: Optional[float] = 60.0
    jitter: float = Field(default=0.0, ge=0)


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    jitter: float = 0.0,
    strategy: str = "exponential",
    max_delay: Optional[float] = None,
) -> float:
    """Compute the delay before retry number ``attempt`` (1-based)."""
    if strategy == "fixed":
        delay = base
    else:
        delay = base * multiplier ** (attempt - 1)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay + random.uniform(0, jitter) if jitter else delay


async def schedule_retry(policy: RetryPolicy, attempt: int) -> None:
    """Sleep for the policy's backoff before retrying."""
    delay = compute_backoff(
        attempt,
        base=policy.delay,
        multiplier=policy.multiplier,
        jitter=policy.jitter,
        strategy=policy.backoff,
        max_delay=policy.max_delay,
    )
    if delay > 0:
        await asyncio.sleep(delay)
