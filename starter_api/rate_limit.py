"""
rate_limit.py: per-client token-bucket admission control
=========================================================
Each client key owns a bucket holding up to ``burst`` tokens that refills
continuously at ``rate`` tokens per second. A request is admitted when it
can take one whole token. Buckets are independent: a bucket's state is
only touched under its own lock, so clients never contend with each other.
"""
from __future__ import annotations

import logging
import math
import time
from threading import Lock
from typing import Callable, Dict, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from .api.errors import error_response
from .exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket for a single client.

    Callers pass ``now`` in so the owning limiter controls the clock.
    """

    def __init__(self, capacity: int, refill_rate: float, now: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = now
        self.lock = Lock()
        # Set under ``lock`` once the limiter has dropped this bucket.
        self.evicted = False

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, now: float, tokens: int = 1) -> Optional[bool]:
        """
        Take ``tokens`` if available. A rejected call leaves the balance
        untouched. Returns None when the bucket has been evicted; the
        caller must look the key up again.
        """
        with self.lock:
            if self.evicted:
                return None
            self._refill(now)
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    def available(self, now: float) -> float:
        with self.lock:
            self._refill(now)
            return self.tokens


class RateLimiter:
    """
    Keyed collection of token buckets.

    Args:
        rate: Tokens added per second to every bucket.
        burst: Bucket capacity; a fresh client may send this many at once.
        clock: Monotonic seconds source.
        idle_ttl: Seconds a bucket may sit unused before it is evicted.
            ``None`` keeps buckets forever.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        idle_ttl: Optional[float] = None,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate
        self.burst = burst
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        # Guards insertion and eviction only; admission never takes it.
        self._registry_lock = Lock()
        self._last_eviction = clock()

    def _bucket(self, key: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.burst, self.rate, now)
                self._buckets[key] = bucket
                logger.debug("Created token bucket for client %s", key)
            return bucket

    def allow(self, key: str) -> bool:
        now = self._clock()
        if self.idle_ttl is not None and now - self._last_eviction >= self.idle_ttl:
            self.evict_idle()
        while True:
            allowed = self._bucket(key, now).consume(now)
            if allowed is not None:
                return allowed

    def remaining(self, key: str) -> int:
        """Whole tokens currently available to ``key``."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return self.burst
        return int(bucket.available(self._clock()))

    def retry_after(self) -> int:
        """Seconds until an empty bucket holds one token again, rounded up."""
        return max(1, math.ceil(1 / self.rate))

    def evict_idle(self) -> int:
        """
        Drop buckets untouched for ``idle_ttl`` seconds. Returns how many
        were dropped. A bucket whose lock is held is in use and is skipped.
        """
        if self.idle_ttl is None:
            return 0
        now = self._clock()
        stale = []
        with self._registry_lock:
            for key, bucket in list(self._buckets.items()):
                if now - bucket.last_refill < self.idle_ttl:
                    continue
                if not bucket.lock.acquire(blocking=False):
                    continue
                try:
                    if now - bucket.last_refill >= self.idle_ttl:
                        bucket.evicted = True
                        del self._buckets[key]
                        stale.append(key)
                finally:
                    bucket.lock.release()
            self._last_eviction = now
        if stale:
            logger.info("Evicted %d idle token buckets", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


# ---------------------------------------------------------------------------
# HTTP middleware
# ---------------------------------------------------------------------------

def client_key(request: Request, trust_forwarded_for: bool = False) -> str:
    """
    Identify the caller. ``X-Forwarded-For`` is only honoured when the
    service sits behind a proxy that sets it.
    """
    if trust_forwarded_for:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Runs the limiter before any route handler."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        exclude_paths: Iterable[str] = (),
        trust_forwarded_for: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.exclude_paths = set(exclude_paths)
        self.trust_forwarded_for = trust_forwarded_for
        logger.info(
            "Rate limiter initialised: %g req/s, burst %d",
            limiter.rate, limiter.burst,
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        key = client_key(request, self.trust_forwarded_for)
        limit_header = str(self.limiter.burst)

        if not self.limiter.allow(key):
            logger.warning("Rate limit exceeded for %s on %s", key, request.url.path)
            error = RateLimitedError(self.limiter.rate, self.limiter.retry_after())
            return error_response(
                error,
                headers={"X-RateLimit-Limit": limit_header, "X-RateLimit-Remaining": "0"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = limit_header
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(key))
        return response
