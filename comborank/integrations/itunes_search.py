"""iTunes Search API integration for live combo rankings.

The API reports the total number of matching apps in `resultCount` and returns
at most `limit` results (its own hard ceiling is 200). Rankings need the total,
never the window size.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from comborank.config import settings
from comborank.core.exceptions import ExternalAPIError, TransientFetchError

logger = logging.getLogger(__name__)

API_NAME = "iTunes Search"
MAX_RESULT_WINDOW = 200


@dataclass(frozen=True, slots=True)
class SearchIndexPage:
    """One search-index response: the reported total plus the ordered app ids."""

    term: str
    market: str
    total_result_count: int
    app_ids: tuple[str, ...]

    def position_of(self, app_id: str) -> int | None:
        """1-based rank of `app_id` inside the returned window, or None."""
        try:
            return self.app_ids.index(str(app_id)) + 1
        except ValueError:
            return None


class SearchIndexClient(Protocol):
    async def search(self, term: str, *, market: str, platform: str) -> SearchIndexPage:
        ...


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header as seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def parse_search_payload(term: str, market: str, payload: Any) -> SearchIndexPage:
    """Validate a search response body; a missing total is malformed, never defaulted."""
    if not isinstance(payload, dict):
        raise ExternalAPIError(API_NAME, "response body is not a JSON object")

    total = payload.get("resultCount")
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise ExternalAPIError(API_NAME, f"malformed resultCount: {total!r}")

    results = payload.get("results")
    if not isinstance(results, list):
        raise ExternalAPIError(API_NAME, "response is missing the results list")

    app_ids = tuple(
        str(item["trackId"])
        for item in results
        if isinstance(item, dict) and item.get("trackId") is not None
    )
    return SearchIndexPage(term=term, market=market, total_result_count=total, app_ids=app_ids)


class ITunesSearchClient:
    """Client for the public iTunes Search API (software entity only)."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        result_window: int | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.itunes_search_url
        self.result_window = min(result_window or settings.search_result_window, MAX_RESULT_WINDOW)
        self.timeout = timeout or settings.fetch_timeout_seconds
        self.user_agent = user_agent or settings.itunes_user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def open(self) -> "ITunesSearchClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                transport=self._transport,
            )
        return self

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ITunesSearchClient":
        return self.open()

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client must be opened or used as async context manager")
        return self._client

    async def search(self, term: str, *, market: str, platform: str = "ios") -> SearchIndexPage:
        """Search the store for `term` in `market` and return the ranked window."""
        if platform != "ios":
            raise ExternalAPIError(API_NAME, f"unsupported platform: {platform}")

        params = {
            "term": term,
            "country": market.upper(),
            "entity": "software",
            "limit": self.result_window,
        }
        logger.debug("iTunes search request", extra={"term": term, "market": market})

        try:
            response = await self.client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            raise TransientFetchError(API_NAME, f"request timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(API_NAME, f"transport error: {e!r}") from e

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "iTunes search throttled",
                extra={"term": term, "market": market, "retry_after": retry_after},
            )
            raise TransientFetchError(
                API_NAME,
                "throttled (HTTP 429)",
                status_code=429,
                retry_after=retry_after,
            )
        if response.status_code >= 500:
            raise TransientFetchError(
                API_NAME,
                f"server error (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ExternalAPIError(API_NAME, f"request rejected (HTTP {response.status_code})")

        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalAPIError(API_NAME, "response body is not valid JSON") from e

        return parse_search_payload(term, market, payload)


_search_client: ITunesSearchClient | None = None


def get_search_client() -> ITunesSearchClient:
    """Get the process-wide search client shared by every ranking lookup."""
    global _search_client
    if _search_client is None:
        _search_client = ITunesSearchClient().open()
    return _search_client


async def close_search_client() -> None:
    """Close the shared search client connections."""
    global _search_client
    if _search_client is None:
        return

    await _search_client.aclose()
    _search_client = None
    logger.info("iTunes search client closed")
