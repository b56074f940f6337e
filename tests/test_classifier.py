"""Tests for poebuild/classifier.py – body sniffing and name extraction."""

from __future__ import annotations

import re
from dataclasses import replace

import pytest

from poebuild.classifier import DEFAULT_PATTERNS, ImportBodyKind, ResponseClassifier

PROFILE_PAGE = """
<!DOCTYPE html><html><body>
<div class="character"><span class="name">Hettii_Witch</span><span class="level">92</span></div>
<div class="character"><span class="name" data-x="1">Tom &amp; Jerry</span></div>
<div class="character"><span class="name">Hettii_Witch</span></div>
</body></html>
"""

LEGACY_PAGE = '<div><span id="c1" class="character-name">OldSchool</span></div>'


@pytest.fixture()
def classifier() -> ResponseClassifier:
    return ResponseClassifier()


class TestCharacterNames:
    def test_primary_pattern_unescaped_and_deduplicated(self, classifier) -> None:
        assert classifier.character_names(PROFILE_PAGE) == ["Hettii_Witch", "Tom & Jerry"]

    def test_legacy_pattern_used_when_primary_finds_nothing(self, classifier) -> None:
        assert classifier.character_names(LEGACY_PAGE) == ["OldSchool"]

    def test_no_names(self, classifier) -> None:
        assert classifier.character_names("<html><body>Nothing here</body></html>") == []

    def test_patterns_are_replaceable(self) -> None:
        patterns = replace(
            DEFAULT_PATTERNS,
            character_name_patterns=(re.compile(r'data-character="([^"]+)"'),),
        )
        classifier = ResponseClassifier(patterns)
        assert classifier.character_names('<li data-character="NewMarkup"></li>') == ["NewMarkup"]
        assert classifier.character_names(PROFILE_PAGE) == []


class TestBodySniffing:
    @pytest.mark.parametrize(
        "body",
        ["<!DOCTYPE html><html></html>", "  <html lang='en'>", "<div>oops</div>"],
    )
    def test_looks_like_html(self, classifier, body: str) -> None:
        assert classifier.looks_like_html(body)

    def test_json_is_not_html(self, classifier) -> None:
        assert not classifier.looks_like_html('[{"name": "a"}]')

    def test_html_document_prefix_is_case_insensitive(self, classifier) -> None:
        assert classifier.is_html_document("\n<!DOCTYPE HTML><html>")
        assert not classifier.is_html_document("<div>fragment</div>")

    def test_rate_limit_text(self, classifier) -> None:
        assert classifier.mentions_rate_limit("Rate limit exceeded; slow down")
        assert classifier.mentions_rate_limit("429 Too Many Requests")
        assert not classifier.mentions_rate_limit("everything is fine")

    def test_account_not_found_text(self, classifier) -> None:
        assert classifier.mentions_account_not_found("Account not found")
        assert not classifier.mentions_account_not_found("Character not found")


class TestErrorMessages:
    def test_dict_error_message(self, classifier) -> None:
        assert classifier.error_message({"code": 6, "message": "Forbidden"}) == "Forbidden"

    def test_string_error(self, classifier) -> None:
        assert classifier.error_message("Resource not found") == "Resource not found"

    def test_dict_without_message_is_stringified(self, classifier) -> None:
        assert "code" in classifier.error_message({"code": 1})

    def test_private_and_not_found_markers(self, classifier) -> None:
        assert classifier.is_private_message("This profile is PRIVATE")
        assert classifier.is_not_found_message("Resource Not Found")
        assert not classifier.is_private_message("Resource not found")


class TestImportBodyKind:
    def test_private(self, classifier) -> None:
        body = '{"error": "Private profile or invalid character name"}'
        assert classifier.import_body_kind(body) is ImportBodyKind.PRIVATE

    def test_not_found(self, classifier) -> None:
        body = "Character Foo was not found on account Bar"
        assert classifier.import_body_kind(body) is ImportBodyKind.NOT_FOUND

    def test_html(self, classifier) -> None:
        assert classifier.import_body_kind("<!doctype html><html>...") is ImportBodyKind.HTML

    def test_unknown(self, classifier) -> None:
        assert classifier.import_body_kind("Internal error") is ImportBodyKind.UNKNOWN

    def test_private_wins_over_html(self, classifier) -> None:
        body = "<!doctype html><p>Private profile or invalid character name</p>"
        assert classifier.import_body_kind(body) is ImportBodyKind.PRIVATE
