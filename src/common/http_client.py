"""
Shared HTTP Client Configuration.

Provides standardized httpx client creation and User-Agent strings for the
search provider and the page content extractor.

Usage:
    from src.common.http_client import create_page_client

    async with create_page_client() as client:
        response = await client.get(url)
"""

import httpx
from typing import Optional

from ..config.settings import settings


# =============================================================================
# User-Agent Constants
# =============================================================================

# Bot identifier - API calls (DataForSEO)
USER_AGENT_BOT = "SerpSentinel/1.0 (Brand Monitoring)"

# Browser-like User-Agent - news and brand sites often block non-browser agents
USER_AGENT_BROWSER = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_ACCEPT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "it-IT,it;q=0.9,en-US;q=0.7,en;q=0.5",
}


# =============================================================================
# HTTP Client Factory
# =============================================================================

def create_http_client(
    user_agent: str = USER_AGENT_BOT,
    timeout: Optional[float] = None,
    max_connections: int = 20,
    max_keepalive: int = 10,
    follow_redirects: bool = True,
    extra_headers: Optional[dict] = None,
    auth: Optional[httpx.Auth] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create a standardized async HTTP client.

    Args:
        user_agent: User-Agent string (use constants above)
        timeout: Request timeout in seconds (default: settings.dataforseo_timeout)
        max_connections: Maximum concurrent connections
        max_keepalive: Maximum keepalive connections
        follow_redirects: Whether to follow HTTP redirects
        extra_headers: Additional headers to include
        auth: Optional httpx auth (e.g. httpx.BasicAuth for DataForSEO)
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        Configured httpx.AsyncClient
    """
    headers = {"User-Agent": user_agent}
    if extra_headers:
        headers.update(extra_headers)

    return httpx.AsyncClient(
        timeout=timeout or settings.dataforseo_timeout,
        headers=headers,
        auth=auth,
        transport=transport,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
        ),
        follow_redirects=follow_redirects,
    )


def create_page_client(
    user_agent: str = USER_AGENT_BROWSER,
    timeout: Optional[float] = None,
) -> httpx.AsyncClient:
    """
    Create a client for fetching result pages (content extraction).

    Uses browser-like headers and the short page timeout by default.
    """
    return create_http_client(
        user_agent=user_agent,
        timeout=timeout or settings.article_fetch_timeout,
        max_connections=settings.extract_concurrency * 2,
        max_keepalive=settings.extract_concurrency,
        extra_headers=BROWSER_ACCEPT_HEADERS,
    )
