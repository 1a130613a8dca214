from __future__ import annotations

import math
import threading
import time
from typing import Dict, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimiter:
    """Per-client token bucket gating provider callbacks.

    Uses the shared Redis bucket when a cache is configured and falls back to
    a process-local bucket otherwise.
    """

    def __init__(
        self,
        *,
        limit: int = 60,
        window_seconds: int = 60,
        cache: Optional[RedisCache] = None,
        key_prefix: str = "auth:callback",
    ) -> None:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        self.limit = limit
        self.window_seconds = window_seconds
        self.cache = cache
        self.key_prefix = key_prefix
        self._local_buckets: Dict[str, Tuple[float, float]] = {}
        # held only for dict updates, never across an await
        self._local_lock = threading.Lock()

    async def check(self, ip: str) -> bool:
        allowed, _ = await self.check_with_retry_after(ip)
        return allowed

    async def check_with_retry_after(self, ip: str) -> Tuple[bool, int]:
        """Consume one token for ``ip``; returns (allowed, retry_after_seconds)."""

        if self.limit <= 0:
            return True, 0
        key = f"{self.key_prefix}:{ip}"
        if self.cache:
            allowed, _, reset_seconds = await self.cache.check_rate_limit(
                key, self.limit, self.window_seconds
            )
            return allowed, reset_seconds

        now = time.monotonic()
        refill_rate = float(self.limit) / float(self.window_seconds)
        with self._local_lock:
            tokens, last_ts = self._local_buckets.get(key, (float(self.limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(self.limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._local_buckets[key] = (tokens, now)
            retry_after = 0
            if not allowed:
                wait = math.ceil((1 - tokens) / refill_rate)
                retry_after = max(1, min(self.window_seconds, wait))
        if not allowed:
            logger.info("rate_limit_rejected", key=key, retry_after=retry_after)
        return allowed, retry_after

    def reset(self) -> None:
        self._local_buckets.clear()

    def prune_idle(self, now: Optional[float] = None) -> int:
        """Drop local buckets that have refilled to capacity; returns the count."""

        now = time.monotonic() if now is None else now
        refill_rate = float(self.limit) / float(self.window_seconds)
        with self._local_lock:
            idle = [
                key
                for key, (tokens, last_ts) in self._local_buckets.items()
                if tokens + max(0.0, now - last_ts) * refill_rate >= self.limit
            ]
            for key in idle:
                del self._local_buckets[key]
        if idle:
            logger.debug("rate_limit_buckets_pruned", count=len(idle))
        return len(idle)
