"""
Tests for URL, domain and tag-name normalization.
"""

from src.common.url_utils import (
    extract_domain,
    normalize_domain,
    normalize_domain_set,
    normalize_tag_name,
    slugify_tag,
)


class TestNormalizeDomain:

    def test_url_and_www(self):
        assert normalize_domain("https://www.Example.com/path?q=1") == "example.com"
        assert normalize_domain("WWW.example.com") == "example.com"
        assert normalize_domain("example.com:8080/x") == "example.com"

    def test_placeholders(self):
        assert normalize_domain("N/A") == ""
        assert normalize_domain(None) == ""
        assert normalize_domain("  unknown ") == ""

    def test_set(self):
        assert normalize_domain_set(["www.Rival.com", "https://rival.com/", "", None, "other.it"]) == {
            "rival.com",
            "other.it",
        }


class TestExtractDomain:

    def test_extract(self):
        assert extract_domain("https://www.corriere.it/economia/articolo") == "corriere.it"
        assert extract_domain("") == ""
        assert extract_domain("not a url") == ""


class TestTagNames:

    def test_normalize(self):
        assert normalize_tag_name("  Intelligenza   Artificiale ") == "intelligenza artificiale"
        assert normalize_tag_name(None) == ""

    def test_slug_keeps_accents(self):
        assert slugify_tag("Sostenibilità Ambientale") == "sostenibilità-ambientale"
        assert slugify_tag("AI & ML") == "ai--ml"
        assert slugify_tag("  ") == ""
