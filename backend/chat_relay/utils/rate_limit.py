"""
Per-identity token bucket limiter for inbound relay events.
"""
import logging
import time
from typing import Callable, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class TokenBucket:
    """Classic token bucket: ``capacity`` burst, ``refill_rate`` tokens per second."""

    __slots__ = ("capacity", "refill_rate", "tokens", "updated_at")

    def __init__(self, capacity: int, refill_rate: float, now: float):
        self.capacity = float(capacity)
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.updated_at = now

    def consume(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.updated_at = now

        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class TokenBucketLimiter:
    """
    Token buckets keyed by user identity.

    Buckets live in a TTLCache so keys that stay idle for ``idle_ttl``
    seconds are forgotten and memory stays bounded by ``max_keys``.
    """

    def __init__(
        self,
        capacity: int = 10,
        refill_rate: float = 1.0,
        idle_ttl: float = 600,
        max_keys: int = 100000,
        clock: Optional[Callable[[], float]] = None
    ):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.clock = clock or time.monotonic
        self.buckets: TTLCache = TTLCache(maxsize=max_keys, ttl=idle_ttl, timer=self.clock)

    def allow(self, key: str, cost: float = 1.0) -> bool:
        """Consume ``cost`` tokens for ``key``; False when the bucket is empty."""
        now = self.clock()
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.capacity, self.refill_rate, now)

        allowed = bucket.consume(now, cost)
        # Re-inserting refreshes the idle TTL.
        self.buckets[key] = bucket

        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}")
        return allowed

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self.buckets.clear()
        else:
            self.buckets.pop(key, None)

    def __len__(self) -> int:
        return len(self.buckets)


__all__ = ['TokenBucket', 'TokenBucketLimiter']
