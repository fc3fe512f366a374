from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from crm_sync.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket refilled continuously at ``capacity`` tokens per ``interval``.

    ``acquire`` reserves a token immediately and sleeps off any deficit, so
    callers are served in arrival order and nobody is dropped. The balance may
    go negative while reservations are outstanding.
    """

    def __init__(
        self,
        name: str,
        capacity: int = 100,
        interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0 or interval <= 0:
            raise ValueError("capacity and interval must be positive")
        self.name = name
        self.capacity = capacity
        self.interval = interval
        self._rate = capacity / interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self._rate)
        self._updated_at = now

    @property
    def available(self) -> float:
        self._refill()
        return max(0.0, self._tokens)

    def try_acquire(self) -> bool:
        """Take a token only if one is available right now."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def _reserve(self, timeout: Optional[float]) -> float:
        self._refill()
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0
        wait = -self._tokens / self._rate
        if timeout is not None and wait > timeout:
            self._tokens += 1
            raise RateLimitExceededError(self.name, retry_after=wait)
        return wait

    async def acquire(self, timeout: Optional[float] = None) -> None:
        """Wait for a token.

        Blocks for as long as needed unless ``timeout`` is given, in which case
        a wait longer than ``timeout`` seconds raises ``RateLimitExceededError``
        without consuming a token.
        """
        wait = self._reserve(timeout)
        if wait > 0:
            logger.info(f"Rate limiter {self.name} exhausted, waiting {wait:.2f}s for a token")
            await self._sleep(wait)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "interval": self.interval,
            "available": round(self.available, 2),
        }
