"""
poebuild/errors.py
-----------------------------------------------------------------------------
Typed error taxonomy for the build-import pipeline.

Every failure the pipeline can surface is a subclass of ``PoeBuildError``.
Each class carries two things the public entry point needs:

- ``status_code`` : the HTTP status the error maps to.
- ``user_message``: actionable text for the player ("set your profile to
                    public", "check the spelling", "try again in N
                    seconds").  Raw upstream bodies are never placed here.

The ``str()`` of an error is the internal diagnostic message and may mention
URLs or status codes; it is meant for logs, not for players.

Hierarchy
---------
PoeBuildError
├── FetchError                 – raised by the resilient fetch client
│   ├── UpstreamTimeout
│   │   └── DeadlineExceeded
│   ├── NetworkError
│   ├── RateLimited            – upstream HTTP 429
│   └── Forbidden              – upstream HTTP 403 / private profile
├── NotFound
│   └── EmptyBuild
├── UpstreamProtocolError
│   ├── UpstreamUnavailable
│   └── ReconstructionError
├── CodecError
├── AllStrategiesExhausted
└── RequestRateLimited         – our own limiter rejected the caller
"""

from __future__ import annotations

import math


class PoeBuildError(Exception):
    """Base class for every pipeline error."""

    status_code: int = 500
    default_user_message: str = "Something went wrong while importing the build."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


# -----------------------------------------------------------------------------
# Fetch-level errors
# -----------------------------------------------------------------------------


class FetchError(PoeBuildError):
    """An outbound HTTP call failed."""

    status_code = 502
    default_user_message = (
        "The Path of Exile website could not be reached. Please try again shortly."
    )

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.upstream_status = upstream_status


class UpstreamTimeout(FetchError):
    status_code = 504
    default_user_message = (
        "The Path of Exile website took too long to respond. Please try again."
    )


class DeadlineExceeded(UpstreamTimeout):
    """The request's end-to-end budget ran out between or inside stages."""


class NetworkError(FetchError):
    pass


class RateLimited(FetchError):
    """Upstream answered HTTP 429.  Never retried."""

    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        user_message: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        if user_message is None:
            if retry_after:
                user_message = (
                    "Path of Exile is rate limiting requests. "
                    f"Please try again in {math.ceil(retry_after)} seconds."
                )
            else:
                user_message = (
                    "Path of Exile is rate limiting requests. "
                    "Please wait a moment and try again."
                )
        super().__init__(message, upstream_status=429, user_message=user_message)


class Forbidden(FetchError):
    """Upstream refused access; usually a private profile.  Never retried."""

    status_code = 403
    default_user_message = (
        "This profile is private. Please set your profile and character tab "
        "to public on pathofexile.com and try again."
    )


# -----------------------------------------------------------------------------
# Resolution errors
# -----------------------------------------------------------------------------


class NotFound(PoeBuildError):
    status_code = 404
    default_user_message = (
        "That account or character was not found. Please check the spelling "
        "of the account name and character name."
    )


class EmptyBuild(NotFound):
    default_user_message = (
        "The character has no equipped items or skills to import."
    )


class UpstreamProtocolError(PoeBuildError):
    """Upstream answered, but with an unexpected content type or shape."""

    status_code = 502
    default_user_message = (
        "The Path of Exile website returned an unexpected response. "
        "It might be having issues; please try again later."
    )


class UpstreamUnavailable(UpstreamProtocolError):
    status_code = 503
    default_user_message = (
        "The build import service is temporarily unavailable. "
        "Please try again later."
    )


class ReconstructionError(UpstreamProtocolError):
    default_user_message = (
        "The build could not be reconstructed from the character data."
    )


class CodecError(PoeBuildError):
    status_code = 400
    default_user_message = (
        "Invalid or corrupted Path of Building code. Please ensure you "
        "copied the entire code correctly."
    )


class AllStrategiesExhausted(PoeBuildError):
    """
    Terminal cascade failure.

    ``cause`` is the most specific error seen across all strategies and
    decides the HTTP status.  ``failures`` keeps every (strategy, error)
    pair in the order they happened so the message can cite them all.
    """

    def __init__(
        self,
        cause: PoeBuildError,
        failures: list[tuple[str, PoeBuildError]],
    ) -> None:
        self.cause = cause
        self.failures = list(failures)
        self.status_code = cause.status_code if cause.status_code >= 500 else 502
        detail = "; ".join(f"{name}: {err}" for name, err in self.failures)
        if len(self.failures) > 1:
            user_message = (
                "The primary import source failed, and every fallback also failed. "
                + cause.user_message
            )
        else:
            user_message = cause.user_message
        super().__init__(
            f"all strategies exhausted ({detail})", user_message=user_message
        )


class RequestRateLimited(PoeBuildError):
    """Our own limiter rejected the caller."""

    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "request rate limit exceeded",
            user_message=(
                f"Too many requests. Please try again in {retry_after_seconds} seconds."
            ),
        )
