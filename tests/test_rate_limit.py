"""
Tests for token-bucket admission control and the HTTP middleware.

Run with: pytest tests/test_rate_limit.py -v
"""
from __future__ import annotations

import threading

import pytest
from fastapi.testclient import TestClient

from starter_api.main import create_app
from starter_api.rate_limit import RateLimiter, TokenBucket


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _admitted(limiter: RateLimiter, key: str, attempts: int) -> int:
    return sum(1 for _ in range(attempts) if limiter.allow(key))


# ---------------------------------------------------------------------------
# Token bucket
# ---------------------------------------------------------------------------

class TestTokenBucket:

    def test_starts_full(self):
        bucket = TokenBucket(capacity=3, refill_rate=1.0, now=0.0)
        assert bucket.available(0.0) == 3.0

    def test_refill_is_capped_at_capacity(self):
        bucket = TokenBucket(capacity=3, refill_rate=1.0, now=0.0)
        assert bucket.consume(0.0)
        assert bucket.available(500.0) == 3.0

    def test_rejection_does_not_consume(self):
        bucket = TokenBucket(capacity=1, refill_rate=2.0, now=0.0)
        assert bucket.consume(0.0)
        assert not bucket.consume(0.0)
        assert not bucket.consume(0.25)  # 0.5 tokens
        assert bucket.tokens == pytest.approx(0.5)
        assert bucket.consume(0.5)

    def test_clock_going_backwards_adds_nothing(self):
        bucket = TokenBucket(capacity=2, refill_rate=1.0, now=10.0)
        bucket.consume(10.0)
        bucket.consume(10.0)
        assert not bucket.consume(5.0)


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class TestRateLimiter:

    def test_burst_then_sustained_rate(self, clock):
        limiter = RateLimiter(rate=10, burst=20, clock=clock)
        assert _admitted(limiter, "client", 20) == 20
        assert limiter.allow("client") is False

        clock.advance(1.0)
        assert _admitted(limiter, "client", 10) == 10
        assert limiter.allow("client") is False

    def test_partial_refill(self, clock):
        limiter = RateLimiter(rate=10, burst=20, clock=clock)
        _admitted(limiter, "client", 20)
        clock.advance(0.05)  # half a token
        assert limiter.allow("client") is False
        clock.advance(0.06)
        assert limiter.allow("client") is True

    def test_long_idle_refills_only_to_burst(self, clock):
        limiter = RateLimiter(rate=10, burst=20, clock=clock)
        _admitted(limiter, "client", 20)
        clock.advance(3600)
        assert _admitted(limiter, "client", 25) == 20

    def test_keys_are_isolated(self, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock)
        assert _admitted(limiter, "noisy", 10) == 2
        assert _admitted(limiter, "quiet", 2) == 2

    def test_remaining(self, clock):
        limiter = RateLimiter(rate=1, burst=5, clock=clock)
        assert limiter.remaining("new") == 5
        limiter.allow("new")
        limiter.allow("new")
        assert limiter.remaining("new") == 3

    def test_retry_after_rounds_up(self):
        assert RateLimiter(rate=10, burst=1).retry_after() == 1
        assert RateLimiter(rate=0.25, burst=1).retry_after() == 4

    @pytest.mark.parametrize("rate, burst", [(0, 5), (-1, 5), (1, 0)])
    def test_invalid_configuration(self, rate, burst):
        with pytest.raises(ValueError):
            RateLimiter(rate=rate, burst=burst)

    def test_idle_buckets_are_evicted(self, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock, idle_ttl=60)
        limiter.allow("stale")
        clock.advance(61)
        limiter.allow("fresh")
        assert len(limiter) == 1
        assert limiter.remaining("stale") == 2

    def test_eviction_skips_bucket_in_use(self, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock, idle_ttl=60)
        limiter.allow("busy")
        clock.advance(61)
        bucket = limiter._buckets["busy"]
        with bucket.lock:
            assert limiter.evict_idle() == 0
        assert len(limiter) == 1
        assert bucket.evicted is False

    def test_evicted_bucket_refuses_stale_callers(self, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock, idle_ttl=60)
        limiter.allow("client")
        clock.advance(61)
        stale = limiter._buckets["client"]
        assert limiter.evict_idle() == 1
        assert stale.evicted is True
        assert stale.consume(clock()) is None

        assert limiter.allow("client") is True
        assert limiter._buckets["client"] is not stale
        assert limiter.remaining("client") == 1

    def test_no_eviction_without_ttl(self, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock)
        limiter.allow("a")
        clock.advance(10_000)
        assert limiter.evict_idle() == 0
        assert len(limiter) == 1

    def test_concurrent_callers_never_over_admit(self, clock):
        limiter = RateLimiter(rate=10, burst=20, clock=clock)
        workers, attempts = 8, 50
        barrier = threading.Barrier(workers)
        admitted = []
        lock = threading.Lock()

        def hammer():
            barrier.wait()
            count = _admitted(limiter, "shared", attempts)
            with lock:
                admitted.append(count)

        threads = [threading.Thread(target=hammer) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(admitted) == 20


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class TestRateLimitMiddleware:

    @pytest.fixture
    def limited_client(self, settings, clock):
        app = create_app(settings, rate_limiter=RateLimiter(rate=1, burst=2, clock=clock))
        with TestClient(app) as c:
            yield c

    def test_injected_limiter_is_used_even_when_empty(self, settings, clock):
        limiter = RateLimiter(rate=1, burst=2, clock=clock)
        assert len(limiter) == 0
        app = create_app(settings, rate_limiter=limiter)
        assert app.state.rate_limiter is limiter

    def test_requests_beyond_burst_get_429(self, limited_client):
        for _ in range(2):
            assert limited_client.get("/auth/me").status_code == 401
        resp = limited_client.get("/auth/me")
        assert resp.status_code == 429
        assert resp.json()["error"] == "RATE_LIMITED"
        assert resp.headers["Retry-After"] == "1"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.headers["X-RateLimit-Limit"] == "2"

    def test_rejected_before_handler_runs(self, limited_client):
        limited_client.post("/auth/register", json={"email": "a@b.com", "password": "secret123"})
        limited_client.post("/auth/register", json={"email": "c@d.com", "password": "secret123"})
        resp = limited_client.post("/auth/register", json={"email": "e@f.com", "password": "secret123"})
        assert resp.status_code == 429
        resp = limited_client.post("/auth/login", json={"email": "e@f.com", "password": "secret123"})
        assert resp.status_code == 429

    def test_admitted_after_refill(self, limited_client, clock):
        limited_client.get("/auth/me")
        limited_client.get("/auth/me")
        assert limited_client.get("/auth/me").status_code == 429
        clock.advance(1.0)
        assert limited_client.get("/auth/me").status_code == 401

    def test_admitted_responses_carry_headers(self, limited_client):
        resp = limited_client.get("/auth/me")
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "1"

    def test_health_probes_bypass_limit(self, limited_client):
        for _ in range(10):
            assert limited_client.get("/ready").status_code == 200
            assert limited_client.get("/healthz").status_code == 200

    def test_forwarded_for_ignored_by_default(self, limited_client):
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            resp = limited_client.get("/auth/me", headers={"X-Forwarded-For": ip})
        assert resp.status_code == 429

    def test_forwarded_for_keys_clients_when_trusted(self, settings_factory, clock):
        settings = settings_factory(trust_forwarded_for=True)
        app = create_app(settings, rate_limiter=RateLimiter(rate=1, burst=1, clock=clock))
        with TestClient(app) as client:
            first = client.get("/auth/me", headers={"X-Forwarded-For": "10.0.0.1, 172.16.0.1"})
            second = client.get("/auth/me", headers={"X-Forwarded-For": "10.0.0.2"})
            third = client.get("/auth/me", headers={"X-Forwarded-For": "10.0.0.1"})
        assert first.status_code == 401
        assert second.status_code == 401
        assert third.status_code == 429
