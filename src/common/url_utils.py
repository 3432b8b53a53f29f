"""
Shared URL, domain and tag-name normalization utilities.

Used by:
- dataforseo_client.py (domain fallback when the provider omits it)
- worker/process.py (competitor matching, dedup)
- analyst/schemas.py (discovered competitor domains)
- archivist/storage.py and agents/* (tag slugs)

All modules should import from here for consistency.
"""

import re
from typing import Iterable, Optional
from urllib.parse import urlparse

# Placeholder values LLMs sometimes emit instead of a domain
INVALID_DOMAIN_PLACEHOLDERS = {
    "", "n/a", "na", "none", "null", "unknown", "undefined", "not available",
}

_WHITESPACE_RE = re.compile(r"\s+")
_NON_SLUG_RE = re.compile(r"[^\w-]", re.UNICODE)


def normalize_domain(value: Optional[str]) -> str:
    """
    Normalize a domain or URL to a bare lowercase hostname without leading www.

    Examples:
        >>> normalize_domain("https://www.Example.com/path")
        'example.com'
        >>> normalize_domain("WWW.example.com")
        'example.com'
        >>> normalize_domain("")
        ''
    """
    if not value:
        return ""
    value = value.strip().lower()
    if value in INVALID_DOMAIN_PLACEHOLDERS:
        return ""
    if "://" in value:
        value = urlparse(value).hostname or ""
    else:
        # "example.com/path" or "example.com:8080"
        value = value.split("/", 1)[0].split(":", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    return value.strip(".")


def extract_domain(url: Optional[str]) -> str:
    """Hostname of a URL without www., or '' if the URL cannot be parsed."""
    if not url:
        return ""
    try:
        return normalize_domain(urlparse(url.strip()).hostname or "")
    except ValueError:
        return ""


def normalize_domain_set(domains: Iterable[Optional[str]]) -> set[str]:
    """Normalize a competitor list into a lookup set, dropping blanks."""
    return {d for d in (normalize_domain(x) for x in domains) if d}


def normalize_tag_name(name: Optional[str]) -> str:
    """Tags are compared lowercase with collapsed whitespace."""
    if not name:
        return ""
    return _WHITESPACE_RE.sub(" ", name.strip().lower())


def slugify_tag(name: Optional[str]) -> str:
    """
    Slug for a tag name: whitespace runs become '-', anything that is not a
    word character or '-' is dropped. Unicode letters are kept so accented
    Italian themes keep distinct slugs.

    Examples:
        >>> slugify_tag("Intelligenza Artificiale")
        'intelligenza-artificiale'
        >>> slugify_tag("  AI & ML ")
        'ai--ml'
    """
    normalized = normalize_tag_name(name)
    return _NON_SLUG_RE.sub("", normalized.replace(" ", "-"))
