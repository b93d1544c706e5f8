from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from quillpress.logging import get_logger
from quillpress.service.errors import RateLimitedError
from quillpress.storage.interfaces import Clock, KeyValueStore, SystemClock

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitInfo:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


class FixedWindowRateLimiter:
    """Counts requests per key in fixed windows held in the key/value store.

    Counters are keyed ``rate_limit:{key}:{window_start}`` and expire with
    their window.
    """

    def __init__(self, kv: KeyValueStore, *, clock: Optional[Clock] = None) -> None:
        self.kv = kv
        self.clock = clock or SystemClock()

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitInfo:
        if limit <= 0:
            return RateLimitInfo(True, limit, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window", key=key, window_seconds=window_seconds
            )
            window_seconds = 60
        now = int(self.clock.now())
        window_start = now - (now % window_seconds)
        reset_seconds = window_start + window_seconds - now
        count = self.kv.incr(f"rate_limit:{key}:{window_start}", window_seconds)
        return RateLimitInfo(
            allowed=count <= limit,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_seconds=reset_seconds,
        )

    def enforce(self, key: str, limit: int, window_seconds: int) -> RateLimitInfo:
        info = self.hit(key, limit, window_seconds)
        if not info.allowed:
            logger.warning("rate_limit_exceeded", key=key, limit=limit)
            raise RateLimitedError(
                "rate limit exceeded",
                detail={"retry_after": info.reset_seconds},
            )
        return info
