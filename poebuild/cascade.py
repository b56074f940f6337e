"""
poebuild/cascade.py
-----------------------------------------------------------------------------
Resolution cascade: turn an (account, character) pair into character or
build data by trying several upstream sources in a fixed order.

Strategies
----------
Each strategy is a plain function of a ``ResolutionContext`` that returns a
tagged result:

    Success(value)     – done, stop here.
    Continue(error)    – this source failed; try the next one.
    Fatal(error)       – stop; no later source can help.

``run_cascade`` iterates an ordered list of strategies.  Two plans use it:

+------------------+---------------------------------------------------+
| Plan             | Strategies, in order                              |
+==================+===================================================+
| character list   | 1. official JSON listing                          |
|                  | 2. public profile HTML scrape                     |
+------------------+---------------------------------------------------+
| build import     | 3. third-party import service (share code)        |
|                  | 4. direct item/passive fetch + reconstruction     |
+------------------+---------------------------------------------------+

The order encodes cost and trust (the official API is cheapest and most
authoritative, reconstruction most expensive) and is never changed at
runtime.  Strategy 4 is only reached through strategy 3's "import service
returned an HTML page" branch: every other strategy-3 failure is Fatal.

Terminal errors
---------------
When the cascade runs out, the most specific error seen wins
(``Forbidden`` > ``NotFound`` > ``RateLimited`` > anything else).
``Forbidden``/``NotFound``/``RateLimited`` are raised as themselves because
they map to distinct player instructions; anything else is wrapped in
``AllStrategiesExhausted``, which cites every failure.

Deadlines
---------
The request deadline is checked before every strategy and before the
reconstruction call, so a nearly expired request fails fast instead of
starting work it cannot finish.  It also bounds each fetch, and the time
left is handed to the reconstructor as its timeout.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union
from urllib.parse import quote, urlparse

import httpx

from poebuild import codec
from poebuild.cache import TTLCache
from poebuild.classifier import ImportBodyKind, ResponseClassifier
from poebuild.errors import (
    AllStrategiesExhausted,
    CodecError,
    DeadlineExceeded,
    EmptyBuild,
    FetchError,
    Forbidden,
    NotFound,
    PoeBuildError,
    RateLimited,
    ReconstructionError,
    UpstreamProtocolError,
    UpstreamUnavailable,
)
from poebuild.fetch_client import ResilientFetchClient
from poebuild.schema import CharacterListing, CharacterSummary, ImportedBuild

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Called as reconstruct(build_data, timeout=seconds_or_None).
Reconstructor = Callable[..., str]

# Reconstruction is not started with less than this many seconds of budget left.
MIN_RECONSTRUCTION_BUDGET = 5.0

# -----------------------------------------------------------------------------
# Tagged strategy results
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Continue:
    error: PoeBuildError


@dataclass(frozen=True)
class Fatal:
    error: PoeBuildError


StrategyResult = Union[Success[T], Continue, Fatal]


@dataclass(frozen=True)
class Strategy(Generic[T]):
    name: str
    run: Callable[[ResolutionContext], StrategyResult[T]]


# -----------------------------------------------------------------------------
# Request context
# -----------------------------------------------------------------------------


def normalize_account_handle(handle: str) -> str:
    """Strip whitespace, a leading ``@`` sigil and a ``#1234`` discriminator."""
    normalized = handle.strip().lstrip("@")
    normalized = normalized.split("#", 1)[0]
    return normalized.strip()


@dataclass
class ResolutionContext:
    account: str
    realm: str = "pc"
    character: str | None = None
    session_cookie: str | None = None
    deadline: float | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def check_deadline(self, stage: str) -> None:
        if self.deadline is not None and self.clock() >= self.deadline:
            raise DeadlineExceeded(f"request deadline reached before {stage}")

    def official_headers(self) -> dict[str, str]:
        """Headers for pathofexile.com calls; forwards the session when present."""
        if self.session_cookie:
            return {"Cookie": self.session_cookie}
        return {}


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------

_DIRECT_ERRORS: tuple[type[PoeBuildError], ...] = (Forbidden, NotFound, RateLimited)


def _specificity(error: PoeBuildError) -> int:
    if isinstance(error, Forbidden):
        return 3
    if isinstance(error, NotFound):
        return 2
    if isinstance(error, RateLimited):
        return 1
    return 0


def terminal_error(failures: list[tuple[str, PoeBuildError]]) -> PoeBuildError:
    """Pick the error to surface once a cascade has failed."""
    cause = max((error for _, error in failures), key=_specificity)
    if isinstance(cause, _DIRECT_ERRORS):
        return cause
    return AllStrategiesExhausted(cause, failures)


def run_cascade(strategies: list[Strategy[T]], ctx: ResolutionContext) -> T:
    """Run *strategies* in order and return the first success, or raise."""
    failures: list[tuple[str, PoeBuildError]] = []
    for strategy in strategies:
        ctx.check_deadline(strategy.name)
        result = strategy.run(ctx)
        if isinstance(result, Success):
            logger.info("Resolved %s via %s", ctx.account, strategy.name)
            return result.value
        failures.append((strategy.name, result.error))
        if isinstance(result, Fatal):
            logger.warning("%s failed terminally for %s: %s", strategy.name, ctx.account, result.error)
            break
        logger.warning("%s failed for %s, falling through: %s", strategy.name, ctx.account, result.error)

    if not failures:
        raise ValueError("run_cascade needs at least one strategy")
    raise terminal_error(failures)


# -----------------------------------------------------------------------------
# Upstream locations
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class UpstreamUrls:
    official_base: str = "https://www.pathofexile.com"
    import_base: str = "https://pobbin.com"
    # Hosts a share URL returned by the import service may point at.
    share_hosts: tuple[str, ...] = ("pobbin.com", "www.pobbin.com", "pobb.in")

    def character_list(self) -> str:
        return f"{self.official_base}/character-window/get-characters"

    def profile_page(self, account: str) -> str:
        return f"{self.official_base}/account/view-profile/{quote(account, safe='')}/characters"

    def items(self) -> str:
        return f"{self.official_base}/character-window/get-items"

    def passives(self) -> str:
        return f"{self.official_base}/character-window/get-passive-skills"

    def import_build(self) -> str:
        return f"{self.import_base}/api/import"


def _elide(text: str, limit: int = 200) -> str:
    """Shorten an untrusted body for internal logs; HTML is never logged."""
    stripped = text.strip()
    if stripped.startswith("<"):
        return "[HTML response elided]"
    return stripped[:limit]


def _to_level(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return 0


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------


class BuildResolver:
    """
    Resolve character lists and builds through the cascade, with caching.

    Parameters
    ----------
    fetch_client : Shared ``ResilientFetchClient``.
    cache        : Shared ``TTLCache`` for successful results.
    reconstruct  : The reconstruction collaborator for strategy 4.
    classifier   : Pattern-based body classifier.
    urls         : Upstream base URLs.
    clock        : Monotonic clock used for deadlines.
    """

    def __init__(
        self,
        fetch_client: ResilientFetchClient,
        cache: TTLCache,
        reconstruct: Reconstructor,
        *,
        classifier: ResponseClassifier | None = None,
        urls: UpstreamUrls | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetch_client = fetch_client
        self.cache = cache
        self.reconstruct = reconstruct
        self.classifier = classifier or ResponseClassifier()
        self.urls = urls or UpstreamUrls()
        self.clock = clock

        self.listing_plan: list[Strategy[CharacterListing]] = [
            Strategy("official-json-listing", self._official_listing),
            Strategy("profile-html-scrape", self._profile_scrape),
        ]
        self.build_plan: list[Strategy[ImportedBuild]] = [
            Strategy("import-service", self._import_service),
            Strategy("direct-reconstruction", self._direct_reconstruction),
        ]

    # -- public operations ---------------------------------------------------

    def list_characters(
        self,
        account_handle: str,
        realm: str = "pc",
        *,
        session_cookie: str | None = None,
        budget: float | None = None,
    ) -> CharacterListing:
        ctx = self._context(account_handle, realm, None, session_cookie, budget)
        key = self._cache_key("characters", ctx)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Character list cache hit for %s", ctx.account)
            return cached
        listing = run_cascade(self.listing_plan, ctx)
        self.cache.set(key, listing)
        return listing

    def fetch_build(
        self,
        account_handle: str,
        character_name: str,
        realm: str = "pc",
        *,
        session_cookie: str | None = None,
        budget: float | None = None,
    ) -> ImportedBuild:
        ctx = self._context(account_handle, realm, character_name.strip(), session_cookie, budget)
        key = self._cache_key("build", ctx)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Build cache hit for %s/%s", ctx.account, ctx.character)
            return cached
        build = run_cascade(self.build_plan, ctx)
        self.cache.set(key, build)
        return build

    # -- helpers ---------------------------------------------------------------

    def _context(
        self,
        account_handle: str,
        realm: str,
        character: str | None,
        session_cookie: str | None,
        budget: float | None,
    ) -> ResolutionContext:
        account = normalize_account_handle(account_handle)
        if not account:
            raise ValueError("account handle is empty after normalisation")
        deadline = self.clock() + budget if budget is not None else None
        return ResolutionContext(
            account=account,
            realm=realm.strip().lower() or "pc",
            character=character,
            session_cookie=session_cookie or None,
            deadline=deadline,
            clock=self.clock,
        )

    @staticmethod
    def _cache_key(kind: str, ctx: ResolutionContext) -> str:
        # Gated results must not leak to anonymous callers, so the session
        # is part of the key (hashed, never stored raw).
        session = (
            hashlib.sha256(ctx.session_cookie.encode("utf-8")).hexdigest()[:16]
            if ctx.session_cookie
            else "anon"
        )
        return "|".join([kind, ctx.account.lower(), ctx.realm, ctx.character or "", session])

    def _get(
        self,
        ctx: ResolutionContext,
        url: str,
        params: dict[str, str],
        *,
        official: bool,
    ) -> httpx.Response:
        headers = ctx.official_headers() if official else {}
        return self.fetch_client.fetch(url, headers, params=params, deadline=ctx.deadline)

    # -- strategy 1: official JSON listing ------------------------------------

    def _official_listing(self, ctx: ResolutionContext) -> StrategyResult[CharacterListing]:
        try:
            response = self._get(
                ctx,
                self.urls.character_list(),
                {"accountName": ctx.account, "realm": ctx.realm},
                official=True,
            )
        except DeadlineExceeded:
            raise
        except RateLimited as exc:
            return Fatal(exc)
        except FetchError as exc:
            return Continue(exc)

        text = response.text
        content_type = response.headers.get("content-type", "")
        if response.status_code == 200 and "application/json" in content_type:
            try:
                data = json.loads(text)
            except ValueError:
                data = None
            if isinstance(data, list):
                return Success(
                    CharacterListing(source="json", characters=self._summaries(data))
                )
            if isinstance(data, dict) and "error" in data:
                return Continue(self._listing_api_error(ctx, data["error"]))

        if self.classifier.mentions_rate_limit(text):
            return Fatal(RateLimited("character listing body reports rate limiting"))
        if self.classifier.mentions_account_not_found(text):
            return Continue(NotFound(f"account {ctx.account!r} not found (listing)"))
        logger.debug("Unexpected listing body for %s: %s", ctx.account, _elide(text))
        if self.classifier.looks_like_html(text):
            return Continue(
                UpstreamProtocolError(
                    "character listing returned HTML instead of JSON",
                    user_message=(
                        "The Path of Exile website returned a web page instead of "
                        "character data. This usually means the profile is private "
                        "or the request was blocked. Please ensure your profile and "
                        "character tab are public."
                    ),
                )
            )
        return Continue(
            UpstreamProtocolError(
                f"character listing returned HTTP {response.status_code} "
                f"with content-type {content_type!r}"
            )
        )

    def _listing_api_error(self, ctx: ResolutionContext, error: Any) -> PoeBuildError:
        message = self.classifier.error_message(error)
        if self.classifier.is_private_message(message):
            return Forbidden(
                f"account {ctx.account!r} profile is private",
                user_message=(
                    f'Account "{ctx.account}" profile is private. Please set it to '
                    "public on pathofexile.com."
                ),
            )
        if self.classifier.is_not_found_message(message):
            return NotFound(f"account {ctx.account!r} not found: {message[:200]}")
        return UpstreamProtocolError(f"character API error: {message[:200]}")

    @staticmethod
    def _summaries(entries: list[Any]) -> list[CharacterSummary]:
        summaries: list[CharacterSummary] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            character_class = entry.get("class")
            if not isinstance(character_class, str) or not character_class:
                character_class = "Unknown"
            league = entry.get("league")
            summaries.append(
                CharacterSummary(
                    name=name.strip(),
                    character_class=character_class,
                    level=_to_level(entry.get("level")),
                    league=league if isinstance(league, str) else None,
                )
            )
        return summaries

    # -- strategy 2: profile HTML scrape --------------------------------------

    def _profile_scrape(self, ctx: ResolutionContext) -> StrategyResult[CharacterListing]:
        try:
            response = self._get(
                ctx,
                self.urls.profile_page(ctx.account),
                {"realm": ctx.realm},
                official=True,
            )
        except DeadlineExceeded:
            raise
        except RateLimited as exc:
            return Fatal(exc)
        except FetchError as exc:
            return Continue(exc)

        names = self.classifier.character_names(response.text)
        if names:
            return Success(
                CharacterListing(
                    source="html",
                    characters=[CharacterSummary(name=name) for name in names],
                )
            )
        if self.classifier.mentions_rate_limit(response.text):
            return Fatal(RateLimited("profile page reports rate limiting"))
        return Continue(
            UpstreamProtocolError(
                f"no character names found on the profile page (HTTP {response.status_code})",
                user_message=(
                    "Unable to read the character list from Path of Exile. "
                    "Please check the account name and make sure the profile is public."
                ),
            )
        )

    # -- strategy 3: import service ---------------------------------------------

    def _import_service(self, ctx: ResolutionContext) -> StrategyResult[ImportedBuild]:
        try:
            response = self._get(
                ctx,
                self.urls.import_build(),
                {"poe_account_name": ctx.account, "character_name": ctx.character or ""},
                official=False,
            )
        except DeadlineExceeded:
            raise
        except RateLimited as exc:
            return Fatal(exc)
        except FetchError as exc:
            return Fatal(UpstreamUnavailable(f"import service request failed: {exc}"))

        text = response.text
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("url"), str) and data["url"]:
            return self._fetch_share(ctx, data["url"])

        logger.debug("Import service gave no share URL for %s: %s", ctx.account, _elide(text))
        kind = self.classifier.import_body_kind(text)
        if kind is ImportBodyKind.PRIVATE:
            return Fatal(
                Forbidden(
                    "import service reports a private profile or invalid character",
                    user_message=(
                        "Could not import the build. Please ensure your character tab "
                        "is public on pathofexile.com and the character name is correct."
                    ),
                )
            )
        if kind is ImportBodyKind.NOT_FOUND:
            return Fatal(
                NotFound(
                    f"import service could not find account {ctx.account!r}",
                    user_message=(
                        f'Account "{ctx.account}" was not found. Please check the spelling.'
                    ),
                )
            )
        if kind is ImportBodyKind.HTML:
            return Continue(UpstreamProtocolError("import service returned an HTML page"))
        if data is not None:
            return Fatal(UpstreamProtocolError("import service response has no share URL"))
        return Fatal(UpstreamUnavailable("import service returned a non-JSON response"))

    def _fetch_share(self, ctx: ResolutionContext, share_url: str) -> StrategyResult[ImportedBuild]:
        parsed = urlparse(share_url)
        if parsed.scheme not in ("http", "https") or parsed.hostname not in self.urls.share_hosts:
            return Fatal(UpstreamProtocolError("import service returned a foreign share URL"))

        try:
            response = self.fetch_client.fetch(f"{share_url.rstrip('/')}/raw", deadline=ctx.deadline)
        except DeadlineExceeded:
            raise
        except RateLimited as exc:
            return Fatal(exc)
        except FetchError as exc:
            return Fatal(UpstreamUnavailable(f"share code request failed: {exc}"))

        code = response.text.strip()
        if not code:
            return Fatal(
                EmptyBuild(
                    "import service returned an empty share code",
                    user_message=(
                        "The import service returned an empty build code. The character "
                        "might not have any skills or items equipped."
                    ),
                )
            )
        if codec.is_share_code(code):
            try:
                document = codec.decode(code)
            except CodecError as exc:
                return Fatal(exc)
        elif code.startswith(codec.DOCUMENT_ROOT_MARKER):
            document = code
        else:
            return Fatal(UpstreamProtocolError("share endpoint returned neither a share code nor a document"))

        return Success(ImportedBuild(document=document, share_url=share_url, source="import"))

    # -- strategy 4: direct fetch + reconstruction ------------------------------

    def _fetch_json(self, ctx: ResolutionContext, url: str) -> dict[str, Any]:
        params = {"character": ctx.character or "", "accountName": ctx.account, "realm": ctx.realm}
        response = self._get(ctx, url, params, official=True)
        try:
            data = response.json()
        except ValueError as exc:
            if response.status_code == 404 or self.classifier.mentions_account_not_found(response.text):
                raise NotFound(f"{url} returned HTTP {response.status_code}") from exc
            raise UpstreamProtocolError(f"{url} did not return JSON") from exc
        if isinstance(data, dict) and "error" in data:
            raise self._character_api_error(ctx, data["error"])
        if response.status_code != 200:
            raise UpstreamProtocolError(f"{url} returned HTTP {response.status_code}")
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"{url} returned an unexpected document shape")
        return data

    def _character_api_error(self, ctx: ResolutionContext, error: Any) -> PoeBuildError:
        message = self.classifier.error_message(error)
        if self.classifier.is_private_message(message):
            return Forbidden(
                f"character {ctx.character!r} on {ctx.account!r} is private",
                user_message=(
                    f'Character "{ctx.character}" on account "{ctx.account}" is private. '
                    "Please make the character tab public on pathofexile.com."
                ),
            )
        if self.classifier.is_not_found_message(message):
            return NotFound(f"character {ctx.character!r} on {ctx.account!r} not found: {message[:200]}")
        return UpstreamProtocolError(f"character API error: {message[:200]}")

    def _reconstruction_timeout(self, ctx: ResolutionContext) -> float | None:
        if ctx.deadline is None:
            return None
        remaining = ctx.deadline - ctx.clock()
        if remaining < MIN_RECONSTRUCTION_BUDGET:
            raise DeadlineExceeded(
                f"only {max(remaining, 0.0):.1f}s left before the deadline; not starting reconstruction"
            )
        return remaining

    def _direct_reconstruction(self, ctx: ResolutionContext) -> StrategyResult[ImportedBuild]:
        # Both documents are read-only and independent, so fetch them together.
        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                items_future = pool.submit(self._fetch_json, ctx, self.urls.items())
                passives_future = pool.submit(self._fetch_json, ctx, self.urls.passives())
                items, passives = items_future.result(), passives_future.result()
        except DeadlineExceeded:
            raise
        except RateLimited as exc:
            return Fatal(exc)
        except (FetchError, NotFound, UpstreamProtocolError) as exc:
            return Continue(exc)

        if not isinstance(items.get("items"), list):
            return Continue(UpstreamProtocolError("item document has no item list"))

        build_data = {
            "character": items.get("character"),
            "items": items["items"],
            "passiveSkills": passives,
        }

        timeout = self._reconstruction_timeout(ctx)
        try:
            document = self.reconstruct(build_data, timeout=timeout).strip()
        except PoeBuildError as exc:
            return Continue(exc)
        if not document.startswith(codec.DOCUMENT_ROOT_MARKER):
            return Continue(
                ReconstructionError(
                    f"reconstruction output does not start with {codec.DOCUMENT_ROOT_MARKER}"
                )
            )
        return Success(ImportedBuild(document=document, source="reconstruction"))
