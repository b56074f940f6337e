"""
poebuild/classifier.py
-----------------------------------------------------------------------------
Body sniffing for responses from upstreams we do not control.

The official site and the import service change their markup and error
wording without notice.  Every string and regular expression used to read
their bodies lives in one ``PatternSet``, so upstream drift means editing
data, not the cascade's control flow.  A ``ResponseClassifier`` applies a
pattern set; tests and deployments can pass their own.

Bodies are treated as untrusted text: they are matched, never executed or
rendered, and only small derived values (names, labels) leave this module.
"""

from __future__ import annotations

import enum
import html
import re
from dataclasses import dataclass
from typing import Any

# -----------------------------------------------------------------------------
# Pattern sets
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternSet:
    # Tried in order; the first pattern that yields any name wins.
    character_name_patterns: tuple[re.Pattern[str], ...]
    # Substrings of an official-API ``error`` message (case-insensitive).
    private_markers: tuple[str, ...]
    not_found_markers: tuple[str, ...]
    # Substrings of a raw listing body (case-insensitive).
    account_not_found_markers: tuple[str, ...]
    # Substrings of any body (case-insensitive) meaning "slow down".
    rate_limit_markers: tuple[str, ...]
    # Import-service error bodies (case-sensitive, as the service writes them).
    import_private_markers: tuple[str, ...]
    import_not_found_markers: tuple[str, ...]
    # Prefix of an HTML page returned instead of an API answer.
    html_document_prefix: str = "<!doctype html>"


DEFAULT_PATTERNS = PatternSet(
    character_name_patterns=(
        re.compile(r'class="name"[^>]*>([^<]+)'),
        # Older profile markup.
        re.compile(r'<span[^>]*class="character-name"[^>]*>([^<]+)'),
    ),
    private_markers=("private",),
    not_found_markers=("not found",),
    account_not_found_markers=("account not found",),
    rate_limit_markers=("rate limit", "too many requests"),
    import_private_markers=("Private profile or invalid character name",),
    import_not_found_markers=("was not found",),
)


class ImportBodyKind(enum.Enum):
    """What an import-service body that carried no share URL turned out to be."""

    PRIVATE = "private"
    NOT_FOUND = "not_found"
    HTML = "html"
    UNKNOWN = "unknown"


# -----------------------------------------------------------------------------
# Classifier
# -----------------------------------------------------------------------------


class ResponseClassifier:
    def __init__(self, patterns: PatternSet = DEFAULT_PATTERNS) -> None:
        self.patterns = patterns

    def character_names(self, markup: str) -> list[str]:
        """Extract character names from a profile page, primary pattern first."""
        for pattern in self.patterns.character_name_patterns:
            names: list[str] = []
            for match in pattern.finditer(markup):
                name = html.unescape(match.group(1)).strip()
                if name and name not in names:
                    names.append(name)
            if names:
                return names
        return []

    def looks_like_html(self, text: str) -> bool:
        stripped = text.lstrip()
        return stripped.startswith("<") or "<html" in stripped[:2048].lower()

    def is_html_document(self, text: str) -> bool:
        return text.lstrip().lower().startswith(self.patterns.html_document_prefix)

    def mentions_rate_limit(self, text: str) -> bool:
        lower = text.lower()
        return any(marker in lower for marker in self.patterns.rate_limit_markers)

    def mentions_account_not_found(self, text: str) -> bool:
        lower = text.lower()
        return any(marker in lower for marker in self.patterns.account_not_found_markers)

    def error_message(self, error: Any) -> str:
        """Flatten an official-API ``error`` field into one message string."""
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str):
                return message
            return str(error)
        return str(error)

    def is_private_message(self, message: str) -> bool:
        lower = message.lower()
        return any(marker in lower for marker in self.patterns.private_markers)

    def is_not_found_message(self, message: str) -> bool:
        lower = message.lower()
        return any(marker in lower for marker in self.patterns.not_found_markers)

    def import_body_kind(self, text: str) -> ImportBodyKind:
        if any(marker in text for marker in self.patterns.import_private_markers):
            return ImportBodyKind.PRIVATE
        if any(marker in text for marker in self.patterns.import_not_found_markers):
            return ImportBodyKind.NOT_FOUND
        if self.is_html_document(text):
            return ImportBodyKind.HTML
        return ImportBodyKind.UNKNOWN
