"""
Common utilities and shared modules.
"""

from .dataforseo_client import (
    DataForSEOClient,
    DataForSEOError,
    SerpItem,
    get_dataforseo_client,
    close_dataforseo_client,
)

from .http_client import (
    create_http_client,
    create_page_client,
    USER_AGENT_BOT,
    USER_AGENT_BROWSER,
)

__all__ = [
    # DataForSEO client
    "DataForSEOClient",
    "DataForSEOError",
    "SerpItem",
    "get_dataforseo_client",
    "close_dataforseo_client",
    # HTTP client utilities
    "create_http_client",
    "create_page_client",
    "USER_AGENT_BOT",
    "USER_AGENT_BROWSER",
]
