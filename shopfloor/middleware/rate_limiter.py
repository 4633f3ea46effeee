"""
Rate limiting — sliding window, per key.

Each limiter keeps the timestamps of the requests it admitted inside the
last ``window`` seconds, per client address.  A request is admitted while
fewer than ``limit`` timestamps remain in the window; otherwise the caller
is told how long until the oldest one leaves it.

Two limiters are wired by the app factory:
    - auth: 5 requests / minute   (login and register paths only)
    - api:  100 requests / minute (every other /api/ route, approvals included)

This service has no login route of its own, so the auth limiter is built
and owned but only guards such paths if a deployment mounts them.

Limiters are plain objects owned by the application (``app.extensions``),
never module globals.  A daemon thread prunes idle keys every
``cleanup_interval`` seconds until ``stop()`` is called.

Usage:
    from shopfloor.middleware.rate_limiter import SlidingWindowRateLimiter, init_rate_limits

    limiter = SlidingWindowRateLimiter(limit=100, window=60)
    init_rate_limits(app, {"api": limiter})
"""

from __future__ import annotations

import atexit
import logging
import math
import threading
import time
from collections import deque
from typing import Callable, NamedTuple

from flask import g, request as flask_request

from shopfloor.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Credential routes guarded by the strict limiter (path suffixes)
AUTH_ROUTE_SUFFIXES = ("/login", "/register")

# Never throttled
EXEMPT_PATHS = {"/api/v1/health"}


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: float  # seconds; 0.0 when allowed


class SlidingWindowRateLimiter:
    """Thread-safe sliding-window limiter.

    Args:
        limit: Maximum admitted requests per key inside one window.
        window: Window length in seconds.
        cleanup_interval: Seconds between background prune passes.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        limit: int,
        window: float,
        cleanup_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.limit = limit
        self.window = window
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Admission ─────────────────────────────────────────────────────────

    def check(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if it is admitted.

        Pruning, the admission decision and the append happen inside one
        critical section so concurrent callers cannot both take the last slot.
        """
        now = self._clock()
        cutoff = now - self.window
        with self._lock:
            stamps = self._requests.setdefault(key, deque())
            while stamps and stamps[0] <= cutoff:
                stamps.popleft()

            if len(stamps) >= self.limit:
                retry_after = max(stamps[0] + self.window - now, 0.0)
                return RateLimitResult(False, 0, retry_after)

            stamps.append(now)
            return RateLimitResult(True, self.limit - len(stamps), 0.0)

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)

    # ── Housekeeping ─────────────────────────────────────────────────────

    def cleanup(self) -> int:
        """Drop expired timestamps and empty keys. Returns keys removed."""
        cutoff = self._clock() - self.window
        removed = 0
        with self._lock:
            for key in list(self._requests):
                stamps = self._requests[key]
                while stamps and stamps[0] <= cutoff:
                    stamps.popleft()
                if not stamps:
                    del self._requests[key]
                    removed += 1
        if removed:
            logger.debug("Rate limiter cleanup removed %d idle keys", removed)
        return removed

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._requests)

    def _run_cleanup(self) -> None:
        while not self._stop_event.wait(self.cleanup_interval):
            try:
                self.cleanup()
            except Exception:
                logger.exception("Rate limiter cleanup failed")

    def start(self) -> None:
        """Start the background cleanup thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_cleanup, name="rate-limiter-cleanup", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the cleanup thread and wait for it to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __repr__(self):
        return f"<SlidingWindowRateLimiter {self.limit}/{self.window}s>"


# ═══════════════════════════════════════════════════════════════════════════
#  Flask wiring
# ═══════════════════════════════════════════════════════════════════════════


def build_limiters(app) -> dict[str, SlidingWindowRateLimiter]:
    """Create the auth and api limiters from app config."""
    cleanup = app.config.get("RATE_LIMIT_CLEANUP_SECONDS", 300)
    return {
        "auth": SlidingWindowRateLimiter(
            app.config.get("RATE_LIMIT_AUTH_REQUESTS", 5),
            app.config.get("RATE_LIMIT_AUTH_WINDOW", 60),
            cleanup_interval=cleanup,
        ),
        "api": SlidingWindowRateLimiter(
            app.config.get("RATE_LIMIT_API_REQUESTS", 100),
            app.config.get("RATE_LIMIT_API_WINDOW", 60),
            cleanup_interval=cleanup,
        ),
    }


def _rate_limit_key() -> str:
    """Remote address.  X-User-Id is unauthenticated, so it never picks the bucket."""
    return f"ip:{flask_request.remote_addr or 'unknown'}"


def _limiter_name_for(path: str) -> str:
    return "auth" if path.endswith(AUTH_ROUTE_SUFFIXES) else "api"


def init_rate_limits(app, limiters: dict[str, SlidingWindowRateLimiter] | None = None):
    """
    Install the rate-limit hook on every /api/ route.

    Limited responses are 429 with a ``Retry-After`` header and
    ``details.retry_after_seconds``; admitted responses carry
    ``X-RateLimit-Limit`` / ``X-RateLimit-Remaining``.

    Rate limiting is disabled when RATE_LIMIT_ENABLED is false (the testing
    default).
    """
    if not app.config.get("RATE_LIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATE_LIMIT_ENABLED=False)")
        return None

    limiters = limiters or build_limiters(app)
    app.extensions["rate_limiters"] = limiters

    @app.before_request
    def _enforce_rate_limit():
        path = flask_request.path
        if not path.startswith("/api/") or path in EXEMPT_PATHS:
            return None

        name = _limiter_name_for(path)
        limiter = limiters.get(name) or limiters.get("api")
        if limiter is None:
            return None

        key = _rate_limit_key()
        result = limiter.check(key)
        g.rate_limit = (limiter, result)
        if result.allowed:
            return None

        retry_after = math.ceil(result.retry_after)
        logger.warning(
            "Rate limit exceeded limiter=%s key=%s", name, key,
            extra={"rate_limit_key": key, "retry_after": retry_after, "path": path},
        )
        resp, status = api_error(
            E.RATE_LIMITED,
            "Too many requests",
            details={"retry_after_seconds": retry_after},
        )
        resp.headers["Retry-After"] = str(retry_after)
        resp.headers["X-RateLimit-Limit"] = str(limiter.limit)
        resp.headers["X-RateLimit-Remaining"] = "0"
        return resp, status

    @app.after_request
    def _rate_limit_headers(response):
        state = g.pop("rate_limit", None)
        if state is not None:
            limiter, result = state
            if result.allowed:
                response.headers["X-RateLimit-Limit"] = str(limiter.limit)
                response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        return response

    if not app.config.get("TESTING"):
        for limiter in limiters.values():
            limiter.start()
            atexit.register(limiter.stop)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{n}: {lim.limit}/{lim.window}s" for n, lim in limiters.items()),
    )
    return limiters
