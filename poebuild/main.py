"""
poebuild/main.py
-----------------------------------------------------------------------------
FastAPI application entrypoint for the build-import service.

This module is a **thin routing layer**: each route applies the rate limiter,
hands the request to a domain module and frames the result.  The logic lives
in dedicated modules:

Domain modules
~~~~~~~~~~~~~~
- ``poebuild.cascade``       – ordered resolution strategies + result cache.
- ``poebuild.fetch_client``  – retrying, timeout-bounded upstream HTTP.
- ``poebuild.rate_limiter``  – per-identity, per-endpoint quotas.
- ``poebuild.codec``         – share-code decode / encode.
- ``poebuild.ollama_client`` – LLM reconstruction for the last fallback.
- ``poebuild.schema``        – Pydantic v2 request / response models.
- ``poebuild.config``        – environment-driven settings.

Run with:
    uvicorn poebuild.main:app --host 127.0.0.1 --port 8243

Endpoints
---------
GET    /api/health       → liveness, version and rate-limiter backend
GET    /api/characters   → character list for an account (rate limited)
POST   /api/build        → decoded build for one character (rate limited)
POST   /api/resolve      → list or build, depending on character_name
POST   /api/decode       → decode a pasted share code (rate limited)
POST   /api/session      → store the POESESSID cookie (HttpOnly, 7 days)
DELETE /api/session      → clear the POESESSID cookie

Architecture notes
------------------
- Route handlers are plain ``def`` functions.  FastAPI runs them in its
  threadpool, so blocking upstream calls and backoff sleeps never block the
  event loop.
- Every rate-limited response, success or error, carries the
  ``X-RateLimit-*`` headers; a rejection also carries ``Retry-After``.
- Pipeline errors are rendered by one exception handler that only ever
  shows the error's ``user_message``; internal detail goes to the log.
- Service objects (fetch client, cache, limiter) are built once per app by
  ``create_app`` and closed when the app shuts down.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from poebuild import codec
from poebuild.cache import TTLCache
from poebuild.cascade import BuildResolver
from poebuild.config import Settings, load_settings
from poebuild.errors import (
    AllStrategiesExhausted,
    CodecError,
    PoeBuildError,
    RateLimited,
    RequestRateLimited,
)
from poebuild.fetch_client import ResilientFetchClient
from poebuild.ollama_client import reconstruct_build_document
from poebuild.rate_limiter import RateLimitDecision, RateLimiter, create_rate_limiter
from poebuild.schema import (
    BuildRequest,
    CharacterListing,
    DecodeRequest,
    DecodeResponse,
    ErrorResponse,
    HealthResponse,
    ImportedBuild,
    RateLimitInfo,
    ResolveRequest,
    ResolveResponse,
    SessionRequest,
)

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------

_HERE = Path(__file__).parent

# Read version from pyproject.toml (single source of truth).
_PYPROJECT = _HERE.parent / "pyproject.toml"
with open(_PYPROJECT, "rb") as _f:
    _APP_VERSION: str = tomllib.load(_f)["project"]["version"]

SESSION_COOKIE = "POESESSID"
SESSION_MAX_AGE = 7 * 24 * 60 * 60


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------


def _client_identity(request: Request, explicit: str | None = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    if request.client is not None:
        return request.client.host
    return "anonymous"


def _session_cookie(request: Request) -> str | None:
    """Upstream session to forward, if the caller supplied one."""
    raw = request.headers.get("x-poe-cookie")
    if raw:
        return raw
    sessid = request.cookies.get(SESSION_COOKIE)
    return f"{SESSION_COOKIE}={sessid}" if sessid else None


def _rate_limit_info(decision: RateLimitDecision | None) -> RateLimitInfo | None:
    if decision is None:
        return None
    return RateLimitInfo(
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
        retry_after_seconds=decision.retry_after_seconds,
    )


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    *,
    resolver: BuildResolver | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if resolver is None:
        resolver = BuildResolver(
            fetch_client=ResilientFetchClient(
                max_attempts=settings.fetch_attempts,
                timeout=settings.fetch_timeout,
                backoff_base=settings.backoff_base,
            ),
            cache=TTLCache(ttl=settings.cache_ttl),
            reconstruct=partial(
                reconstruct_build_document,
                model=settings.reconstruction_model,
                host=settings.ollama_host,
            ),
        )
    limiter = rate_limiter or create_rate_limiter(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        resolver.fetch_client.close()
        resolver.cache.close()
        limiter.close()

    app = FastAPI(
        title="PoE Build Import",
        description=(
            "Retrieves Path of Exile character lists and builds from unreliable "
            "upstreams and decodes Path of Building share codes."
        ),
        version=_APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.resolver = resolver
    app.state.rate_limiter = limiter

    def admit(request: Request, response: Response, endpoint: str, identity: str) -> None:
        """Apply the rate limiter; headers go on the response either way."""
        decision = limiter.check(identity, endpoint)
        request.state.rate_limit = decision
        response.headers.update(decision.headers())
        if not decision.allowed:
            logger.info("Rate limited %s on %s", identity, endpoint)
            raise RequestRateLimited(decision.retry_after_seconds)

    def bad_request(request: Request, detail: str) -> HTTPException:
        decision: RateLimitDecision | None = getattr(request.state, "rate_limit", None)
        headers = decision.headers() if decision else None
        return HTTPException(status_code=400, detail=detail, headers=headers)

    # -- error framing ----------------------------------------------------------

    @app.exception_handler(PoeBuildError)
    async def handle_pipeline_error(request: Request, exc: PoeBuildError) -> JSONResponse:
        decision: RateLimitDecision | None = getattr(request.state, "rate_limit", None)
        headers = decision.headers() if decision else {}
        if isinstance(exc, RateLimited) and exc.retry_after:
            headers["Retry-After"] = str(int(exc.retry_after))
        cause = type(exc.cause).__name__ if isinstance(exc, AllStrategiesExhausted) else None
        logger.warning("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        body = ErrorResponse(
            error=exc.user_message,
            error_type=type(exc).__name__,
            cause=cause,
            rate_limit=_rate_limit_info(decision),
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)

    # -- routes -------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse, summary="Liveness probe")
    def health() -> HealthResponse:
        return HealthResponse(version=_APP_VERSION, rate_limiter=limiter.backend)

    @app.get(
        "/api/characters",
        response_model=CharacterListing,
        summary="List the characters on an account",
    )
    def list_characters(
        request: Request,
        response: Response,
        handle: str = Query(..., min_length=1, description="Account name, e.g. Hettii#6037"),
        realm: str = Query("pc", description="Game realm"),
    ) -> CharacterListing:
        """
        Resolve an account's characters: official JSON listing first, public
        profile HTML second.  Results are cached briefly.
        """
        admit(request, response, "characters", _client_identity(request))
        try:
            return resolver.list_characters(
                handle,
                realm,
                session_cookie=_session_cookie(request),
                budget=settings.request_deadline,
            )
        except ValueError as exc:
            raise bad_request(request, str(exc)) from exc

    @app.post("/api/build", response_model=ImportedBuild, summary="Import a character's build")
    def build(req: BuildRequest, request: Request, response: Response) -> ImportedBuild:
        """
        Resolve one character's build: import service first, direct
        reconstruction when the import service only serves a web page.
        """
        admit(request, response, "build", _client_identity(request))
        try:
            return resolver.fetch_build(
                req.account_handle,
                req.character_name,
                req.realm,
                session_cookie=_session_cookie(request),
                budget=settings.request_deadline,
            )
        except ValueError as exc:
            raise bad_request(request, str(exc)) from exc

    @app.post(
        "/api/resolve",
        response_model=ResolveResponse,
        summary="List characters or import a build",
    )
    def resolve(req: ResolveRequest, request: Request, response: Response) -> ResolveResponse:
        admit(request, response, "resolve", _client_identity(request, req.identity))
        session = _session_cookie(request)
        try:
            if req.character_name is None:
                listing = resolver.list_characters(
                    req.account_handle,
                    req.realm,
                    session_cookie=session,
                    budget=settings.request_deadline,
                )
                return ResolveResponse(kind="characters", characters=listing)
            build_result = resolver.fetch_build(
                req.account_handle,
                req.character_name,
                req.realm,
                session_cookie=session,
                budget=settings.request_deadline,
            )
        except ValueError as exc:
            raise bad_request(request, str(exc)) from exc
        return ResolveResponse(kind="build", build=build_result)

    @app.post("/api/decode", response_model=DecodeResponse, summary="Decode a share code")
    def decode(req: DecodeRequest, request: Request, response: Response) -> DecodeResponse:
        """
        Decode a pasted Path of Building code.  Text that is already a build
        document is passed through unchanged.
        """
        admit(request, response, "decode", _client_identity(request))
        if codec.is_share_code(req.code):
            return DecodeResponse(document=codec.decode(req.code), was_share_code=True)
        text = req.code.strip()
        if text.startswith("<"):
            return DecodeResponse(document=text, was_share_code=False)
        raise CodecError(
            f"input is neither a share code nor a document (length {len(text)})"
        )

    @app.post("/api/session", status_code=204, summary="Store the POESESSID cookie")
    def set_session(req: SessionRequest) -> Response:
        response = Response(status_code=204)
        response.set_cookie(
            SESSION_COOKIE,
            req.poesessid,
            max_age=SESSION_MAX_AGE,
            path="/",
            httponly=True,
            secure=True,
            samesite="lax",
        )
        return response

    @app.delete("/api/session", status_code=204, summary="Clear the POESESSID cookie")
    def clear_session() -> Response:
        response = Response(status_code=204)
        response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, secure=True, samesite="lax")
        return response

    return app


app = create_app()
