"""
tests/test_rate_limiter.py — Sliding-window rate limiter.

Covers:
    1.  First N requests admitted, remaining counts down
    2.  N+1-th request rejected with retry_after = time until oldest expires
    3.  Window slides: a slot frees exactly when the oldest request ages out
    4.  Keys are independent
    5.  cleanup() drops idle keys and keeps live ones
    6.  start()/stop() lifecycle of the background cleanup thread
    7.  Concurrent callers never exceed the limit
    8.  HTTP wiring: 429 body, Retry-After header, X-RateLimit-* headers
    9.  HTTP wiring: buckets are per address, whatever X-User-Id says
    10. HTTP wiring: approvals share the api limiter, credential paths the
        strict one; health is exempt
"""

import threading

import pytest

from shopfloor import create_app
from shopfloor.middleware.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ═════════════════════════════════════════════════════════════════════════════
# Limiter unit behaviour
# ═════════════════════════════════════════════════════════════════════════════


class TestSlidingWindow:
    def test_admits_up_to_limit(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=3, window=60, clock=clock)
        results = [limiter.check("u1") for _ in range(3)]
        assert [r.allowed for r in results] == [True, True, True]
        assert [r.remaining for r in results] == [2, 1, 0]

    def test_rejects_n_plus_one_with_retry_after(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=5, window=60, clock=clock)
        limiter.check("u1")               # t=1000, oldest
        clock.advance(10)
        for _ in range(4):
            assert limiter.check("u1").allowed
        clock.advance(5)                  # t=1015

        result = limiter.check("u1")
        assert result.allowed is False
        assert result.remaining == 0
        # oldest (1000) leaves the window at 1060
        assert result.retry_after == pytest.approx(45.0)

    def test_rejected_request_is_not_recorded(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=1, window=10, clock=clock)
        assert limiter.check("k").allowed
        assert not limiter.check("k").allowed
        clock.advance(10.001)
        assert limiter.check("k").allowed

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=2, window=60, clock=clock)
        limiter.check("k")
        clock.advance(30)
        limiter.check("k")
        clock.advance(29)
        assert not limiter.check("k").allowed
        clock.advance(1.5)                # first request now older than 60s
        result = limiter.check("k")
        assert result.allowed
        assert result.remaining == 0

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(limit=1, window=60, clock=FakeClock())
        assert limiter.check("alice").allowed
        assert not limiter.check("alice").allowed
        assert limiter.check("bob").allowed

    def test_invalid_configuration_rejected(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(limit=0, window=60)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(limit=1, window=0)


class TestCleanup:
    def test_cleanup_drops_idle_keys(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=5, window=60, clock=clock)
        limiter.check("idle")
        clock.advance(50)
        limiter.check("live")
        clock.advance(20)                 # idle is 70s old, live 20s

        removed = limiter.cleanup()
        assert removed == 1
        assert limiter.tracked_keys() == 1

    def test_reset_forgets_key(self):
        limiter = SlidingWindowRateLimiter(limit=1, window=60, clock=FakeClock())
        limiter.check("k")
        limiter.reset("k")
        assert limiter.check("k").allowed

    def test_start_and_stop_background_thread(self):
        limiter = SlidingWindowRateLimiter(limit=5, window=60, cleanup_interval=0.01)
        limiter.start()
        assert limiter.running
        limiter.start()                   # idempotent
        limiter.stop()
        assert not limiter.running

    def test_background_thread_prunes(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=5, window=1, cleanup_interval=0.01, clock=clock)
        limiter.check("k")
        clock.advance(5)
        limiter.start()
        try:
            for _ in range(200):
                if limiter.tracked_keys() == 0:
                    break
                threading.Event().wait(0.01)
            assert limiter.tracked_keys() == 0
        finally:
            limiter.stop()


class TestConcurrency:
    def test_parallel_callers_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter(limit=50, window=60)
        barrier = threading.Barrier(10)
        admitted = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            count = sum(1 for _ in range(20) if limiter.check("shared").allowed)
            with lock:
                admitted.append(count)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(admitted) == 50


# ═════════════════════════════════════════════════════════════════════════════
# Flask wiring
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def limited_client():
    """A separate app with rate limiting on: api 3/min, auth 1/min."""
    application = create_app("testing", {
        "RATE_LIMIT_ENABLED": True,
        "RATE_LIMIT_API_REQUESTS": 3,
        "RATE_LIMIT_AUTH_REQUESTS": 1,
    })
    yield application.test_client()
    for limiter in application.extensions["rate_limiters"].values():
        limiter.stop()


class TestHttpWiring:
    def test_disabled_in_testing_config(self, app):
        assert "rate_limiters" not in app.extensions

    def test_headers_and_429(self, limited_client):
        h = {"X-User-Id": "7"}
        for expected_remaining in ("2", "1", "0"):
            res = limited_client.get("/api/v1/ppic/machines", headers=h)
            assert res.status_code == 200
            assert res.headers["X-RateLimit-Limit"] == "3"
            assert res.headers["X-RateLimit-Remaining"] == expected_remaining

        res = limited_client.get("/api/v1/ppic/machines", headers=h)
        assert res.status_code == 429
        body = res.get_json()
        assert body["code"] == "ERR_RATE_LIMITED"
        retry = body["details"]["retry_after_seconds"]
        assert 1 <= retry <= 60
        assert res.headers["Retry-After"] == str(retry)

    def test_limits_are_per_address(self, limited_client):
        for _ in range(3):
            limited_client.get("/api/v1/ppic/machines", environ_base={"REMOTE_ADDR": "10.0.0.1"})
        assert limited_client.get(
            "/api/v1/ppic/machines", environ_base={"REMOTE_ADDR": "10.0.0.1"}).status_code == 429
        assert limited_client.get(
            "/api/v1/ppic/machines", environ_base={"REMOTE_ADDR": "10.0.0.2"}).status_code == 200

    def test_rotating_user_header_does_not_reset_bucket(self, limited_client):
        statuses = [
            limited_client.get("/api/v1/ppic/machines", headers={"X-User-Id": str(i)}).status_code
            for i in range(6)
        ]
        assert statuses == [200, 200, 200, 429, 429, 429]

    def test_approval_routes_use_api_limiter(self, limited_client):
        h = {"X-User-Id": "9"}
        statuses = [
            limited_client.post(f"/api/v1/operation-plans/{i}/approve",
                                json={"approver_role": "QC"}, headers=h).status_code
            for i in range(1, 5)
        ]
        assert 429 not in statuses[:3]
        assert statuses[3] == 429

    def test_credential_paths_use_strict_limiter(self, limited_client):
        assert limited_client.post("/api/v1/auth/login").status_code != 429
        assert limited_client.post("/api/v1/auth/login").status_code == 429
        assert limited_client.get("/api/v1/ppic/machines").status_code == 200

    def test_health_is_exempt(self, limited_client):
        for _ in range(10):
            assert limited_client.get("/api/v1/health").status_code == 200
