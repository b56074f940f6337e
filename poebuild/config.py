"""
poebuild/config.py
-----------------------------------------------------------------------------
Runtime settings for the build-import service.

All settings come from environment variables (a ``.env`` file is loaded
first if present) and are collected once into an immutable ``Settings``
object.  Service objects receive the values they need from it; nothing
else in the package reads the environment.

Environment variables
---------------------
POEBUILD_CACHE_TTL            Result-cache TTL in seconds (default 60).
POEBUILD_FETCH_ATTEMPTS       Attempts per upstream call (default 3).
POEBUILD_FETCH_TIMEOUT        Per-attempt timeout in seconds (default 12).
POEBUILD_BACKOFF_BASE         Base backoff delay in seconds (default 0.3).
POEBUILD_REQUEST_DEADLINE     End-to-end budget per request (default 25).
POEBUILD_DATABASE_URL         Postgres URL for the shared rate limiter.
                              Unset → in-process limiter only.
POEBUILD_RATE_LIMITS          Per-endpoint quotas, e.g.
                              ``characters=30/60,build=10/60``.
POEBUILD_RATE_LIMIT_DEFAULT   Quota for endpoints not listed (default 60/60).
POEBUILD_LOG_LEVEL            Root log level (default INFO).
OLLAMA_HOST                   Ollama base URL for build reconstruction.
POEBUILD_RECONSTRUCTION_MODEL Ollama model used for reconstruction.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


@dataclass(frozen=True)
class Quota:
    limit: int
    window_seconds: int


DEFAULT_QUOTAS: dict[str, Quota] = {
    "characters": Quota(limit=30, window_seconds=60),
    "build": Quota(limit=10, window_seconds=60),
    "resolve": Quota(limit=10, window_seconds=60),
    "decode": Quota(limit=60, window_seconds=60),
}


@dataclass(frozen=True)
class Settings:
    cache_ttl: float = 60.0
    fetch_attempts: int = 3
    fetch_timeout: float = 12.0
    backoff_base: float = 0.3
    request_deadline: float = 25.0
    database_url: str | None = None
    quotas: dict[str, Quota] = field(default_factory=lambda: dict(DEFAULT_QUOTAS))
    default_quota: Quota = Quota(limit=60, window_seconds=60)
    log_level: str = "INFO"
    ollama_host: str = "http://localhost:11434"
    reconstruction_model: str = "gemma2:9b"


def parse_quota(raw: str) -> Quota:
    """Parse ``"<limit>/<window_seconds>"`` into a Quota."""
    limit_raw, sep, window_raw = raw.strip().partition("/")
    if not sep:
        raise ValueError(f"quota must look like '<limit>/<seconds>', got {raw!r}")
    limit, window = int(limit_raw), int(window_raw)
    if limit < 1 or window < 1:
        raise ValueError(f"quota values must be positive, got {raw!r}")
    return Quota(limit=limit, window_seconds=window)


def parse_quotas(raw: str) -> dict[str, Quota]:
    """Parse ``"characters=30/60,build=10/60"`` into an endpoint → Quota map."""
    quotas: dict[str, Quota] = {}
    for item in raw.split(","):
        if not item.strip():
            continue
        endpoint, sep, quota = item.partition("=")
        if not sep or not endpoint.strip():
            raise ValueError(f"rate limit entry must look like 'endpoint=N/S', got {item!r}")
        quotas[endpoint.strip()] = parse_quota(quota)
    return quotas


def load_settings(env_file: str | os.PathLike | None = None) -> Settings:
    """Build Settings from the environment, after loading *env_file* (or a discovered .env)."""
    load_dotenv(env_file)

    quotas = dict(DEFAULT_QUOTAS)
    quotas.update(parse_quotas(os.getenv("POEBUILD_RATE_LIMITS", "")))

    return Settings(
        cache_ttl=float(os.getenv("POEBUILD_CACHE_TTL", "60")),
        fetch_attempts=int(os.getenv("POEBUILD_FETCH_ATTEMPTS", "3")),
        fetch_timeout=float(os.getenv("POEBUILD_FETCH_TIMEOUT", "12")),
        backoff_base=float(os.getenv("POEBUILD_BACKOFF_BASE", "0.3")),
        request_deadline=float(os.getenv("POEBUILD_REQUEST_DEADLINE", "25")),
        database_url=os.getenv("POEBUILD_DATABASE_URL") or None,
        quotas=quotas,
        default_quota=parse_quota(os.getenv("POEBUILD_RATE_LIMIT_DEFAULT", "60/60")),
        log_level=os.getenv("POEBUILD_LOG_LEVEL", "INFO").upper(),
        ollama_host=os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/"),
        reconstruction_model=os.getenv("POEBUILD_RECONSTRUCTION_MODEL", "gemma2:9b"),
    )
