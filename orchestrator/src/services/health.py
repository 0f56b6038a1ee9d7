"""
Bounded health verification shared by the Health Check step and rollbacks.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

@dataclass
class HealthOutcome:
    healthy: bool
    attempts: int
    elapsed_seconds: float

async def wait_until_healthy(
    check: Callable[[], Awaitable[bool]],
    attempts: int,
    interval: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "Health check",
) -> HealthOutcome:
    """
    Wait `interval` seconds, then check, up to `attempts` times.
    Stops at the first healthy response. A check that raises counts as unhealthy.
    """
    for attempt in range(1, attempts + 1):
        logger.info(f"{label} attempt {attempt}/{attempts}...")
        await sleep(interval)

        try:
            healthy = await check()
        except Exception as e:
            logger.warning(f"{label} attempt {attempt} failed: {e}")
            healthy = False

        if healthy:
            return HealthOutcome(True, attempt, attempt * interval)

    return HealthOutcome(False, attempts, attempts * interval)
