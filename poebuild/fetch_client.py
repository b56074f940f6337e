"""
poebuild/fetch_client.py
-----------------------------------------------------------------------------
Resilient synchronous HTTP client for the Path of Exile upstreams.

Why synchronous?
----------------
Route handlers are plain ``def`` functions, which FastAPI runs in its
thread-pool executor.  Blocking HTTP calls and backoff sleeps therefore never
block the event loop, and every call is still bounded by its own timeout.

Retry policy
------------
+-------------------------------+----------------------------------------+
| Outcome of an attempt         | Behaviour                              |
+===============================+========================================+
| 2xx / 3xx / other 4xx         | returned to the caller unchanged       |
| HTTP 429                      | ``RateLimited`` raised, no retry       |
| HTTP 403                      | ``Forbidden`` raised, no retry         |
| HTTP 5xx                      | retried                                |
| timeout                       | retried (``UpstreamTimeout``)          |
| connection / transport error  | retried (``NetworkError``)             |
+-------------------------------+----------------------------------------+

Between retryable attempts the client sleeps ``backoff_base * 2 ** (n - 1)``
seconds, where *n* is the attempt that just failed.  No sleep follows the
final attempt; its error is raised as-is.

Deadlines
---------
A caller may pass ``deadline`` (a ``time.monotonic()`` timestamp).  Each
attempt's timeout is clipped to the remaining budget, and a backoff sleep
that would cross the deadline is not started: ``DeadlineExceeded`` is raised
instead.

The client never touches the cache or the rate limiter.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping

import httpx

from poebuild.errors import (
    DeadlineExceeded,
    FetchError,
    Forbidden,
    NetworkError,
    RateLimited,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)

# Browser-like headers; the official site rejects obvious bots.
DEFAULT_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122 Safari/537.36"
    ),
    "Accept": "application/json, text/html, */*; q=0.9",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Referer": "https://www.pathofexile.com/account/view-profile",
    "Origin": "https://www.pathofexile.com",
}


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class ResilientFetchClient:
    """
    GET with per-attempt timeout, bounded retries and exponential backoff.

    Parameters
    ----------
    max_attempts    : Default number of attempts per call (>= 1).
    timeout         : Default per-attempt timeout in seconds.
    backoff_base    : Base delay in seconds for the exponential backoff.
    default_headers : Headers sent with every request; per-call headers are
                      merged on top.
    http_client     : Optional pre-built ``httpx.Client`` (tests pass one
                      backed by ``httpx.MockTransport``).
    sleep / clock   : Injectable for deterministic tests.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        timeout: float = 12.0,
        backoff_base: float = 0.3,
        default_headers: Mapping[str, str] | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.default_headers = dict(DEFAULT_HEADERS if default_headers is None else default_headers)
        self._client = http_client or httpx.Client(follow_redirects=True)
        self._sleep = sleep
        self._clock = clock

    def backoff_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        return self.backoff_base * 2 ** (attempt - 1)

    def fetch(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        params: Mapping[str, str] | None = None,
        max_attempts: int | None = None,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> httpx.Response:
        """
        GET *url* and return the response, or raise a typed ``FetchError``.

        Raises
        ------
        RateLimited      : Upstream answered 429 (carries ``retry_after``).
        Forbidden        : Upstream answered 403.
        UpstreamTimeout  : The final attempt timed out.
        NetworkError     : The final attempt failed at the transport level.
        FetchError       : The final attempt returned a 5xx status.
        DeadlineExceeded : The caller's deadline left no room for an attempt.
        """
        attempts = max_attempts or self.max_attempts
        per_attempt = timeout or self.timeout
        merged = {**self.default_headers, **(headers or {})}
        last_error: FetchError | None = None

        for attempt in range(1, attempts + 1):
            attempt_timeout = per_attempt
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise DeadlineExceeded(f"deadline reached before GET {url}")
                attempt_timeout = min(per_attempt, remaining)

            logger.debug("GET %s (attempt %d/%d)", url, attempt, attempts)
            try:
                response = self._client.get(
                    url,
                    headers=merged,
                    params=params,
                    timeout=httpx.Timeout(attempt_timeout),
                )
            except httpx.TimeoutException as exc:
                last_error = UpstreamTimeout(f"GET {url} timed out after {attempt_timeout:.1f}s")
                last_error.__cause__ = exc
            except httpx.TransportError as exc:
                last_error = NetworkError(f"GET {url} failed: {type(exc).__name__}: {exc}")
                last_error.__cause__ = exc
            else:
                status = response.status_code
                if status == 429:
                    raise RateLimited(
                        f"GET {url} returned HTTP 429",
                        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                    )
                if status == 403:
                    raise Forbidden(f"GET {url} returned HTTP 403", upstream_status=403)
                if status < 500:
                    return response
                last_error = FetchError(
                    f"GET {url} returned HTTP {status}", upstream_status=status
                )

            if attempt == attempts:
                break

            delay = self.backoff_delay(attempt)
            if deadline is not None and self._clock() + delay >= deadline:
                raise DeadlineExceeded(
                    f"deadline leaves no room to retry GET {url}"
                ) from last_error
            logger.warning(
                "GET %s failed on attempt %d/%d (%s); retrying in %.2fs",
                url,
                attempt,
                attempts,
                last_error,
                delay,
            )
            self._sleep(delay)

        raise last_error  # type: ignore[misc]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ResilientFetchClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
