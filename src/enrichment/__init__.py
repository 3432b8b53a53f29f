"""Page content enrichment for SERP results."""

from .content_extractor import (
    extract_content,
    extract_contents,
    extract_text_from_html,
)

__all__ = [
    "extract_content",
    "extract_contents",
    "extract_text_from_html",
]
