"""
Rate limiter — sliding window per client IP.

Only the browser endpoint is public-facing (publishable key), so it is the
only one limited. Server-to-server callers hold the secret key.
"""

import threading
import time
from typing import Callable

from fastapi import HTTPException, Request

from funnelcast.config import get_settings
from funnelcast.core.evidence import mask

import structlog

logger = structlog.get_logger()

_PRIVATE_PREFIXES = (
    "10.", "172.16.", "172.17.", "172.18.", "172.19.", "172.20.", "172.21.",
    "172.22.", "172.23.", "172.24.", "172.25.", "172.26.", "172.27.", "172.28.",
    "172.29.", "172.30.", "172.31.", "192.168.", "127.", "::1",
)


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int) -> tuple[bool, int]:
        """Record one request. Returns (allowed, remaining)."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_seconds
            hits = [t for t in self._hits.get(key, ()) if t > cutoff]
            if len(hits) >= limit:
                self._hits[key] = hits
                return False, 0
            hits.append(now)
            self._hits[key] = hits

            # Periodic cleanup
            if len(self._hits) > 10000:
                for k in [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]:
                    del self._hits[k]
            return True, limit - len(hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


limiter = SlidingWindowLimiter()


def get_real_ip(request: Request) -> str:
    """Extract real client IP from x-forwarded-for or request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",")]
        for ip in ips:
            if not ip.startswith(_PRIVATE_PREFIXES):
                return ip
        return ips[0]
    return request.client.host if request.client else "unknown"


def rate_limit_ip(request: Request) -> int:
    limit = get_settings().rate_limit_per_ip_per_minute
    ip = get_real_ip(request)
    allowed, remaining = limiter.hit(f"ip:{ip}", limit)
    if not allowed:
        logger.info("rate_limited", ip_hash=mask(ip), limit=limit)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(limiter.window_seconds),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining
