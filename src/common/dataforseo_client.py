"""
Shared DataForSEO SERP API Client.

Provides a reusable HTTP client with:
- HTTP Basic auth from settings
- Exponential backoff retry logic
- Rate limit (HTTP 429) handling with Retry-After
- Google date-range (tbs) window for incremental scans

Used by:
- worker/process.py (one fetch per (keyword, source) job)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import httpx
from dateutil import parser as date_parser

from .http_client import create_http_client, USER_AGENT_BOT
from .url_utils import extract_domain, normalize_domain
from ..config.settings import settings

logger = logging.getLogger(__name__)

# Live "advanced" SERP endpoints per source
SOURCE_ENDPOINTS = {
    "google_organic": "/serp/google/organic/live/advanced",
    "google_news": "/serp/google/news/live/advanced",
}

# Item types we keep from the advanced response (drops ads, carousels, people_also_ask...)
RESULT_ITEM_TYPES = {"organic", "news_search"}

# DataForSEO wraps HTTP 200 responses with its own status codes
DATAFORSEO_OK = 20000


class DataForSEOError(Exception):
    """Raised when DataForSEO cannot return results for a task."""
    pass


@dataclass
class SerpItem:
    """One search result, provider-neutral."""
    position: int
    url: str
    title: str
    snippet: str
    domain: str
    published_at: Optional[datetime] = None


def build_date_param(
    date_from: Optional[datetime],
    date_to: Optional[datetime],
) -> Optional[str]:
    """
    Build the Google tbs custom date range: cdr:1,cd_min:M/D/YYYY,cd_max:M/D/YYYY.

    Only date_to set = everything up to that date (first scan of a project).
    Both set = incremental window since the previous completed scan.
    """
    if date_from is None and date_to is None:
        return None

    parts = ["cdr:1"]
    if date_from is not None:
        parts.append(f"cd_min:{date_from.month}/{date_from.day}/{date_from.year}")
    if date_to is not None:
        parts.append(f"cd_max:{date_to.month}/{date_to.day}/{date_to.year}")
    return ",".join(parts)


def _parse_published_at(value: Any) -> Optional[datetime]:
    """Provider timestamps come as '2026-03-01 10:20:00 +00:00'. Returns naive UTC."""
    if not value:
        return None
    try:
        parsed = date_parser.parse(str(value))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_serp_items(data: Dict[str, Any], depth: int) -> List[SerpItem]:
    """Map a raw advanced-SERP response to SerpItems (at most depth)."""
    tasks = data.get("tasks") or []
    if not tasks:
        return []
    task = tasks[0] or {}

    task_status = task.get("status_code")
    if task_status is not None and task_status != DATAFORSEO_OK:
        raise DataForSEOError(
            f"DataForSEO task error {task_status}: {task.get('status_message', 'unknown')}"
        )

    results = task.get("result") or []
    if not results or not results[0]:
        return []
    raw_items = results[0].get("items") or []

    items: List[SerpItem] = []
    for raw in raw_items:
        if raw.get("type") not in RESULT_ITEM_TYPES:
            continue
        url = raw.get("url") or ""
        if not url:
            continue
        items.append(SerpItem(
            position=raw.get("rank_absolute") or raw.get("position") or 0,
            url=url,
            title=raw.get("title") or "",
            snippet=raw.get("description") or raw.get("snippet") or "",
            domain=normalize_domain(raw.get("domain")) or extract_domain(url),
            published_at=_parse_published_at(raw.get("timestamp") or raw.get("datetime")),
        ))
        if len(items) >= depth:
            break
    return items


class DataForSEOClient:
    """
    Shared async HTTP client for the DataForSEO SERP API.

    Features:
    - Exponential backoff retry on failures
    - HTTP 429 rate limit handling with Retry-After
    - Configurable via settings
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.login = settings.dataforseo_login
        self.password = settings.dataforseo_password
        self.base_url = settings.dataforseo_base_url.rstrip("/")
        self.timeout = settings.dataforseo_timeout
        self.max_retries = settings.dataforseo_max_retries
        self.backoff_base = settings.dataforseo_backoff_base
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = create_http_client(
                user_agent=USER_AGENT_BOT,
                timeout=self.timeout,
                extra_headers={"Content-Type": "application/json"},
                auth=httpx.BasicAuth(self.login, self.password),
                transport=self.transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def validate_credentials(self) -> bool:
        """Check if login/password are configured."""
        if not self.login or not self.password:
            logger.error("DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD not configured")
            return False
        return True

    async def request(self, path: str, payload: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        POST with exponential backoff retry logic.

        Args:
            path: Endpoint path under the v3 base URL
            payload: Task list (DataForSEO always takes an array of tasks)

        Returns:
            JSON response data

        Raises:
            DataForSEOError: credentials missing, client error, or retries exhausted
        """
        if not self.validate_credentials():
            raise DataForSEOError("DataForSEO credentials not configured")

        client = await self._get_client()
        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await client.post(url, json=payload)

                # Handle rate limiting (429)
                if response.status_code == 429:
                    retry_after_header = response.headers.get("Retry-After", "60")
                    try:
                        retry_after = int(retry_after_header)
                    except ValueError:
                        logger.warning(f"Non-numeric Retry-After header: {retry_after_header}")
                        retry_after = 60
                    logger.warning(
                        f"DataForSEO rate limited. Waiting {retry_after}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    last_error = "rate limited"
                    await asyncio.sleep(retry_after)
                    continue

                # Handle server errors with backoff
                if response.status_code >= 500:
                    backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                    logger.warning(
                        f"DataForSEO server error {response.status_code}. "
                        f"Retrying in {backoff:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    last_error = f"HTTP {response.status_code}"
                    await asyncio.sleep(backoff)
                    continue

                response.raise_for_status()

                try:
                    data = response.json()
                except ValueError as e:
                    raise DataForSEOError(f"DataForSEO JSON decode error: {e}") from e

                status_code = data.get("status_code")
                if status_code is not None and status_code != DATAFORSEO_OK:
                    raise DataForSEOError(
                        f"DataForSEO error {status_code}: {data.get('status_message', 'unknown')}"
                    )
                return data

            except httpx.TimeoutException:
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"DataForSEO timeout. Retrying in {backoff:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                last_error = "timeout"
                await asyncio.sleep(backoff)

            except httpx.HTTPStatusError as e:
                # Client errors (4xx except 429) - don't retry
                raise DataForSEOError(
                    f"DataForSEO client error: {e.response.status_code}"
                ) from e

            except httpx.RequestError as e:
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"DataForSEO network error: {e}. Retrying in {backoff:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                last_error = str(e)
                await asyncio.sleep(backoff)

        raise DataForSEOError(
            f"DataForSEO request failed after {self.max_retries} attempts: {last_error}"
        )

    async def fetch_serp(
        self,
        keyword: str,
        source: str,
        language: str,
        location_code: int,
        depth: int = 30,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[SerpItem]:
        """
        Fetch live SERP results for one keyword on one source.

        Args:
            keyword: Search query
            source: google_organic | google_news
            language: language_code (e.g. "it")
            location_code: DataForSEO location code (e.g. 2380)
            depth: Max results to return
            date_from / date_to: Optional incremental window

        Returns:
            Up to depth SerpItems, in provider order
        """
        endpoint = SOURCE_ENDPOINTS.get(source)
        if endpoint is None:
            raise DataForSEOError(f"Unknown SERP source: {source}")

        tbs_parts = []
        date_param = build_date_param(date_from, date_to)
        if date_param:
            tbs_parts.append(date_param)
        if source == "google_news":
            tbs_parts.append("sbd:1")  # Sort news by date, newest first

        task: Dict[str, Any] = {
            "keyword": keyword,
            "language_code": language,
            "location_code": location_code,
            "depth": depth,
        }
        if tbs_parts:
            task["search_param"] = f"tbs={','.join(tbs_parts)}"

        data = await self.request(endpoint, [task])
        items = parse_serp_items(data, depth)
        logger.info(f"DataForSEO {source} '{keyword}': {len(items)} results")
        return items


# Singleton instance for shared use
_client: Optional[DataForSEOClient] = None


def get_dataforseo_client() -> DataForSEOClient:
    """Get shared DataForSEO client instance."""
    global _client
    if _client is None:
        _client = DataForSEOClient()
    return _client


async def close_dataforseo_client():
    """Close the shared client (call on shutdown)."""
    global _client
    if _client:
        await _client.close()
        _client = None
