"""
Page content extraction for SERP results.

Best-effort: extract_content() never raises. Any fetch or parse failure
yields None and the caller falls back to the provider snippet.

Output shape: meta description, then up to MAX_PARAGRAPHS paragraphs from the
main content container, joined by blank lines and truncated to
settings.max_excerpt_length.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from ..common.http_client import create_page_client
from ..config.settings import settings

logger = logging.getLogger(__name__)

# Boilerplate removed before looking for text
NOISE_SELECTORS = (
    "script, style, noscript, nav, footer, header, aside, form, iframe, "
    ".nav, .footer, .header, .sidebar, .ad, .ads, .advert, .cookie, .cookies, .banner"
)

# First selector whose text is longer than MIN_CONTAINER_CHARS wins, else <body>
CONTENT_SELECTORS = (
    "article",
    "main",
    "[role='main']",
    ".post-content",
    ".article-content",
    ".entry-content",
    ".content",
)

MIN_CONTAINER_CHARS = 200
MAX_PARAGRAPHS = 8
MIN_PARAGRAPH_CHARS = 40
MAX_FALLBACK_BLOCKS = 5
MIN_FALLBACK_CHARS = 30


def extract_text_from_html(html: str, max_length: Optional[int] = None) -> Optional[str]:
    """Pull readable text out of an HTML page.

    Returns None when nothing usable is found.
    """
    max_length = max_length or settings.max_excerpt_length
    if not html:
        return None

    soup = BeautifulSoup(html, "lxml")

    meta_desc = ""
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            meta_desc = meta["content"].strip()
            break

    for element in soup.select(NOISE_SELECTORS):
        element.decompose()

    content_area = soup.body or soup
    for selector in CONTENT_SELECTORS:
        candidate = soup.select_one(selector)
        if candidate is not None and len(candidate.get_text(strip=True)) > MIN_CONTAINER_CHARS:
            content_area = candidate
            break

    blocks: List[str] = []
    for p in content_area.find_all("p"):
        text = p.get_text(" ", strip=True)
        if len(text) > MIN_PARAGRAPH_CHARS:
            blocks.append(text)
            if len(blocks) >= MAX_PARAGRAPHS:
                break

    # Listing/landing pages: no real paragraphs, use headings and list items
    if not blocks:
        for el in content_area.find_all(["h1", "h2", "h3", "li", "td", "dd"]):
            text = el.get_text(" ", strip=True)
            if len(text) > MIN_FALLBACK_CHARS:
                blocks.append(text)
                if len(blocks) >= MAX_FALLBACK_BLOCKS:
                    break

    combined = "\n\n".join(part for part in [meta_desc, *blocks] if part)
    if not combined:
        return None
    return combined[:max_length]


async def extract_content(url: str, client: Optional[httpx.AsyncClient] = None) -> Optional[str]:
    """
    Fetch a page and extract its main text.

    Args:
        url: Page URL
        client: Optional shared client; a short-lived one is created otherwise

    Returns:
        Extracted text, or None on any failure
    """
    owns_client = client is None
    if owns_client:
        client = create_page_client()

    try:
        response = await client.get(url)
        if response.status_code >= 400:
            logger.debug(f"Content fetch {response.status_code} for {url}")
            return None
        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type:
            logger.debug(f"Skipping non-HTML content ({content_type}) for {url}")
            return None
        return extract_text_from_html(response.text)
    except httpx.HTTPError as e:
        logger.debug(f"Content fetch failed for {url}: {type(e).__name__}: {e}")
        return None
    except Exception as e:
        # Parser failures on malformed pages must not fail the job
        logger.warning(f"Content extraction error for {url}: {type(e).__name__}: {e}")
        return None
    finally:
        if owns_client:
            await client.aclose()


async def extract_contents(urls: Sequence[str], concurrency: Optional[int] = None) -> List[Optional[str]]:
    """
    Extract several pages with bounded parallelism.

    Results are returned in the same order as urls.
    """
    if not urls:
        return []

    semaphore = asyncio.Semaphore(concurrency or settings.extract_concurrency)

    async with create_page_client() as client:
        async def extract_with_limit(url: str) -> Optional[str]:
            async with semaphore:
                return await extract_content(url, client=client)

        return list(await asyncio.gather(*(extract_with_limit(u) for u in urls)))
