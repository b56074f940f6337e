"""
poebuild/rate_limiter.py
-----------------------------------------------------------------------------
Per-identity, per-endpoint rate limiting for the public entry point.

Backends
--------
``PostgresRateLimiter``
    Durable sliding window.  Every admitted request is one row in
    ``rate_limit_hits``; a check counts the rows for ``identity:endpoint``
    inside the trailing window.  Rows are shared by every process instance,
    so this is the authoritative limiter when the service runs as several
    stateless workers.  Checks for one key are serialised with a
    transaction-scoped advisory lock.

``InMemoryRateLimiter``
    Fixed window per ``identity:endpoint`` held in a dict behind a lock.
    Expired windows are swept from the dict as time passes, so its size
    tracks recent callers rather than every caller ever seen.
    Only protects a single process, so it is weaker than the durable
    backend; it exists for local runs and as the degradation target.

``DegradingRateLimiter``
    Wraps the durable backend and falls back to the in-process one whenever
    the database is missing or fails at call time.  The degradation is
    logged; the request itself never fails because the store is down.

All three return the same ``RateLimitDecision`` shape, so callers cannot
tell which backend answered.  ``create_rate_limiter`` picks the backend once
at construction time from the presence of a database URL.

Decision rule
-------------
With a quota of N per window, the first N checks in the window are admitted
and recorded; later checks are rejected with ``remaining == 0`` and are not
recorded.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from poebuild.config import Quota, Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int

    def headers(self) -> dict[str, str]:
        """HTTP headers describing this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


@dataclass
class RateLimitWindow:
    identity: str
    endpoint: str
    count: int
    window_start: float


class RateLimiter(Protocol):
    backend: str

    def check(self, identity: str, endpoint: str) -> RateLimitDecision:
        """Admit or reject one request from *identity* to *endpoint*."""

    def close(self) -> None:
        """Release any resources held by the limiter."""


class _QuotaTable:
    def __init__(self, quotas: Mapping[str, Quota], default_quota: Quota) -> None:
        self.quotas = dict(quotas)
        self.default_quota = default_quota

    def quota_for(self, endpoint: str) -> Quota:
        return self.quotas.get(endpoint, self.default_quota)


def _decision(allowed: bool, quota: Quota, count: int, reset_at: float, now: float) -> RateLimitDecision:
    retry_after = 0 if allowed else max(1, math.ceil(reset_at - now))
    return RateLimitDecision(
        allowed=allowed,
        limit=quota.limit,
        remaining=max(0, quota.limit - count),
        reset_at=reset_at,
        retry_after_seconds=retry_after,
    )


# -----------------------------------------------------------------------------
# In-process fixed window
# -----------------------------------------------------------------------------


class InMemoryRateLimiter(_QuotaTable):
    backend = "memory"

    def __init__(
        self,
        quotas: Mapping[str, Quota],
        default_quota: Quota,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(quotas, default_quota)
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()
        # Expired windows are swept at most once per shortest window length.
        self._prune_interval = min(q.window_seconds for q in [default_quota, *self.quotas.values()])
        self._next_prune = 0.0

    def check(self, identity: str, endpoint: str) -> RateLimitDecision:
        quota = self.quota_for(endpoint)
        key = f"{identity}:{endpoint}"
        with self._lock:
            now = self._clock()
            if now >= self._next_prune:
                self._prune(now)
                self._next_prune = now + self._prune_interval
            window = self._windows.get(key)
            if window is None or now - window.window_start >= quota.window_seconds:
                window = RateLimitWindow(identity=identity, endpoint=endpoint, count=0, window_start=now)
                self._windows[key] = window
            allowed = window.count < quota.limit
            if allowed:
                window.count += 1
            return _decision(allowed, quota, window.count, window.window_start + quota.window_seconds, now)

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.window_start >= self.quota_for(window.endpoint).window_seconds
        ]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Pruned %d expired rate-limit windows", len(expired))

    def close(self) -> None:
        with self._lock:
            self._windows.clear()


# -----------------------------------------------------------------------------
# Durable sliding window (Postgres)
# -----------------------------------------------------------------------------

_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS rate_limit_hits (
        bucket TEXT NOT NULL,
        hit_at DOUBLE PRECISION NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS rate_limit_hits_bucket_idx
    ON rate_limit_hits (bucket, hit_at)
    """,
)


class PostgresRateLimiter(_QuotaTable):
    backend = "postgres"

    def __init__(
        self,
        database_url: str,
        quotas: Mapping[str, Quota],
        default_quota: Quota,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(quotas, default_quota)
        self.database_url = database_url
        self._clock = clock
        self._schema_ready = False

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def check(self, identity: str, endpoint: str) -> RateLimitDecision:
        quota = self.quota_for(endpoint)
        key = f"{identity}:{endpoint}"
        now = self._clock()

        with self._connect() as conn:
            with conn.cursor() as cur:
                if not self._schema_ready:
                    for statement in _SCHEMA_STATEMENTS:
                        cur.execute(statement)
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
                cur.execute(
                    "DELETE FROM rate_limit_hits WHERE bucket = %s AND hit_at <= %s",
                    (key, now - quota.window_seconds),
                )
                cur.execute(
                    "SELECT count(*), min(hit_at) FROM rate_limit_hits WHERE bucket = %s",
                    (key,),
                )
                count, oldest = cur.fetchone()
                allowed = count < quota.limit
                if allowed:
                    cur.execute(
                        "INSERT INTO rate_limit_hits (bucket, hit_at) VALUES (%s, %s)",
                        (key, now),
                    )
                    count += 1
                    if oldest is None:
                        oldest = now
            conn.commit()
        self._schema_ready = True

        return _decision(allowed, quota, count, oldest + quota.window_seconds, now)

    def close(self) -> None:
        # One connection per check; nothing is held between calls.
        pass


# -----------------------------------------------------------------------------
# Degradation wrapper + factory
# -----------------------------------------------------------------------------


class DegradingRateLimiter:
    backend = "postgres+memory"

    def __init__(self, primary: RateLimiter, fallback: RateLimiter) -> None:
        self.primary = primary
        self.fallback = fallback

    def check(self, identity: str, endpoint: str) -> RateLimitDecision:
        try:
            return self.primary.check(identity, endpoint)
        except Exception as exc:
            logger.warning(
                "Durable rate limiter failed (%s: %s); using in-process fallback",
                type(exc).__name__,
                exc,
            )
            return self.fallback.check(identity, endpoint)

    def close(self) -> None:
        self.primary.close()
        self.fallback.close()


def create_rate_limiter(settings: Settings) -> RateLimiter:
    memory = InMemoryRateLimiter(settings.quotas, settings.default_quota)
    if settings.database_url:
        durable = PostgresRateLimiter(settings.database_url, settings.quotas, settings.default_quota)
        return DegradingRateLimiter(primary=durable, fallback=memory)
    logger.info("No database configured; rate limiting is per-process only")
    return memory
