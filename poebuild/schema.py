"""
poebuild/schema.py
-----------------------------------------------------------------------------
Pydantic v2 models for the build-import API and for the values the
resolution cascade produces.

Design principles
-----------------
• Keep models thin – no business logic here.
• Every request field has a ``description`` so FastAPI's OpenAPI UI is
  immediately useful.
• Upstream data is validated loosely (unknown fields dropped, gaps filled
  with neutral defaults); request bodies are validated strictly.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# -----------------------------------------------------------------------------
# Cascade results
# -----------------------------------------------------------------------------


class CharacterSummary(BaseModel):
    """
    One character on an account.

    ``class`` is a Python keyword, so the field is ``character_class`` in
    code and ``class`` on the wire.  Profiles parsed from HTML only carry a
    name; class and level then fall back to ``"Unknown"`` and ``0``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    character_class: str = Field(default="Unknown", alias="class")
    level: int = Field(default=0, ge=0)
    league: str | None = None


class CharacterListing(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["json", "html"]
    characters: list[CharacterSummary]


class ImportedBuild(BaseModel):
    """
    A decoded build.

    ``document`` is the Path of Building XML.  ``share_url`` is the hosted
    share on the import service, empty when the build was reconstructed
    from raw character data.
    """

    model_config = ConfigDict(frozen=True)

    document: str
    share_url: str = ""
    source: Literal["import", "reconstruction"]


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


def _not_blank(v: str, field_name: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{field_name} must not be empty or whitespace")
    return v


class BuildRequest(BaseModel):
    account_handle: str = Field(
        ...,
        description="Path of Exile account name, optionally with its #1234 discriminator.",
        examples=["Hettii#6037"],
    )
    character_name: str = Field(
        ...,
        description="Name of the character whose build should be imported.",
    )
    realm: str = Field(default="pc", description="Game realm (pc, xbox, sony).")

    @field_validator("account_handle")
    @classmethod
    def handle_not_empty(cls, v: str) -> str:
        return _not_blank(v, "account_handle")

    @field_validator("character_name")
    @classmethod
    def character_not_empty(cls, v: str) -> str:
        return _not_blank(v, "character_name")


class ResolveRequest(BaseModel):
    """
    Combined entry point: list characters when ``character_name`` is None,
    otherwise import that character's build.
    """

    identity: str | None = Field(
        default=None,
        description="Client identity for rate limiting.  Defaults to the caller's address.",
    )
    account_handle: str = Field(..., description="Path of Exile account name.")
    character_name: str | None = Field(default=None, description="Character to import.")
    realm: str = Field(default="pc", description="Game realm (pc, xbox, sony).")

    @field_validator("account_handle")
    @classmethod
    def handle_not_empty(cls, v: str) -> str:
        return _not_blank(v, "account_handle")

    @field_validator("character_name")
    @classmethod
    def blank_character_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class DecodeRequest(BaseModel):
    code: str = Field(
        ...,
        min_length=1,
        description="A Path of Building share code, or already-decoded XML.",
    )


class SessionRequest(BaseModel):
    poesessid: str = Field(
        ...,
        min_length=20,
        description="The POESESSID cookie value from pathofexile.com.",
    )


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class DecodeResponse(BaseModel):
    document: str
    was_share_code: bool


class ResolveResponse(BaseModel):
    kind: Literal["characters", "build"]
    characters: CharacterListing | None = None
    build: ImportedBuild | None = None


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Actionable message safe to show to the player.")
    error_type: str
    cause: str | None = None
    rate_limit: RateLimitInfo | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    version: str
    rate_limiter: str
