# rate_limit.py
"""
Per-process fixed-window rate limiter keyed by client IP.

Each worker process keeps its own counters; behind several workers the
effective limit is multiplied accordingly.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from mapmarked.errors import RateLimitExceeded

log = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class RateLimitConfig:
    interval: float  # window length, seconds
    limit: int       # max requests per window


@dataclass
class _Window:
    count: int
    reset_at: float


RATE_LIMITS = {
    "expensive": RateLimitConfig(interval=60, limit=10),
    "checkout": RateLimitConfig(interval=60, limit=5),
    "webhook": RateLimitConfig(interval=60, limit=30),
    "standard": RateLimitConfig(interval=60, limit=60),
}


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_cleanup = clock()

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        expired = [key for key, w in self._windows.items() if now > w.reset_at]
        for key in expired:
            del self._windows[key]

    def check(self, config: RateLimitConfig, token: str) -> None:
        """Counts one hit for `token`; raises RateLimitExceeded when over the limit."""
        now = self._clock()
        self._cleanup(now)

        window = self._windows.get(token)
        if window is None or now > window.reset_at:
            self._windows[token] = _Window(count=1, reset_at=now + config.interval)
            return

        if window.count >= config.limit:
            raise RateLimitExceeded(retry_after=max(1, math.ceil(window.reset_at - now)))

        window.count += 1

    def reset(self) -> None:
        self._windows.clear()


limiter = RateLimiter()


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_ip = forwarded_for.split(",")[0].strip()
        if first_ip:
            return first_ip

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()

    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def rate_limited(preset: str, scope: Optional[str] = None):
    """FastAPI dependency factory: `Depends(rate_limited("checkout"))`."""
    config = RATE_LIMITS[preset]
    bucket = scope or preset

    async def dependency(request: Request) -> None:
        ip = get_client_ip(request)
        try:
            limiter.check(config, f"{bucket}:{ip}")
        except RateLimitExceeded:
            log.warning(f"Rate limit hit: bucket={bucket} ip={ip}")
            raise

    return dependency
