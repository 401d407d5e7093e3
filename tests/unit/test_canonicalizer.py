"""
Unit tests for text canonicalization and fingerprinting.
"""

from memory_mesh.core.config import settings
from memory_mesh.memory.canonicalizer import (
    canonicalize, hash_canonical, normalize_text, normalize_url, text_similarity
)


class TestNormalizeText:
    """Tests for normalize_text."""

    def test_lowercases_and_collapses_whitespace(self):
        assert normalize_text("  Hello \n\n  World\t ") == "hello world"

    def test_strips_timestamps_and_uuids(self):
        text = "Deploy 2024-01-15T10:30:00Z id 123e4567-e89b-12d3-a456-426614174000 done at 10:45 pm"
        assert normalize_text(text) == "deploy id done at"

    def test_clock_time_keeps_following_words(self):
        assert normalize_text("Meet at 5:00 amazing") == "meet at amazing"
        assert normalize_text("meet at 5:00 pm today") == "meet at today"

    def test_strips_markup(self):
        html = '<div class="post" data-id="42"><script>track()</script>Hello <b>World</b><!-- ad --></div>'
        assert normalize_text(html) == "hello world"

    def test_strips_tracking_parameters(self):
        assert normalize_text("read more utm_source=newsletter here") == "read more here"

    def test_applies_nfkc(self):
        assert normalize_text("ﬁle") == "file"

    def test_non_string_is_empty(self):
        assert normalize_text(None) == ""


class TestNormalizeUrl:
    """Tests for normalize_url."""

    def test_drops_query_and_fragment(self):
        url = "HTTPS://Example.com/Path/Page?utm_source=x#section"
        assert normalize_url(url) == "https://example.com/path/page"

    def test_unparsable_url_is_lowercased_and_cut(self):
        assert normalize_url("Not A Url?x=1") == "not a url"

    def test_empty_url(self):
        assert normalize_url(None) == ""
        assert normalize_url("") == ""


class TestFingerprint:
    """Tests for hash_canonical and canonicalize."""

    def test_same_content_different_noise_same_fingerprint(self):
        first = canonicalize("Captured 2024-01-01 10:00:00 <p>Postgres rocks</p>")
        second = canonicalize("captured   2024-06-30 18:22:10 Postgres ROCKS")
        assert first.text == second.text
        assert first.fingerprint == second.fingerprint

    def test_url_ignored_by_default(self):
        assert settings.fingerprint_include_url is False
        assert hash_canonical("same text", "https://a.com/x") == hash_canonical("same text", "https://b.com/y")

    def test_url_mixed_in_when_enabled(self, monkeypatch):
        monkeypatch.setattr(settings, "fingerprint_include_url", True)
        assert hash_canonical("same text", "https://a.com/x") != hash_canonical("same text", "https://b.com/y")
        assert hash_canonical("same text") == hash_canonical("same text", None)

    def test_canonicalize_normalizes_url(self):
        content = canonicalize("Text", "https://Example.com/a?b=c")
        assert content.url == "https://example.com/a"
        assert len(content.fingerprint) == 64

    def test_canonicalize_without_url(self):
        assert canonicalize("Text").url is None


class TestTextSimilarity:
    """Tests for word-set Jaccard similarity."""

    def test_identical(self):
        assert text_similarity("a b c", "a b c") == 1.0

    def test_one_side_empty(self):
        assert text_similarity("", "a b") == 0.0

    def test_partial_overlap(self):
        assert text_similarity("a b c d", "a b c e") == 3 / 5
