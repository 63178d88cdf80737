"""
RESO Web API (OData) client for Listing Sync.

Handles property batches, counts, and per-listing media/rooms/open houses
with a requests-per-minute ceiling and retry on transient failures.
"""

import asyncio
import logging
import time
from datetime import date
from typing import Optional

import httpx

from .config import config
from .exceptions import FeedAuthError, FeedConfigError, FeedError, FeedRateLimitError
from .models import ChildType, Cursor

logger = logging.getLogger(__name__)

PROPERTY_ORDER = 'ModificationTimestamp,ListingKey'
RETRYABLE_STATUS = {500, 502, 503, 504}


class ResoFeedClient:
    """Rate-limited async client for the upstream listings feed."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        idx_token: Optional[str] = None,
        vow_token: Optional[str] = None,
        idx_url: Optional[str] = None,
        vow_url: Optional[str] = None,
        property_filter: Optional[str] = None,
        rate_limit_per_minute: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.FEED_BASE_URL).rstrip('/')
        self.tokens = {
            'IDX': config.IDX_TOKEN if idx_token is None else idx_token,
            'VOW': config.VOW_TOKEN if vow_token is None else vow_token,
        }
        self.urls = {
            'IDX': idx_url or config.IDX_URL,
            'VOW': vow_url or config.VOW_URL,
        }
        self.property_filter = property_filter or config.PROPERTY_FILTER
        rate = rate_limit_per_minute or config.FEED_RATE_LIMIT_PER_MINUTE
        self.min_interval = 60.0 / rate
        self.max_retries = max_retries or config.FEED_MAX_RETRIES
        self.backoff_seconds = (
            config.FEED_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._last_request = 0.0
        self._client = httpx.AsyncClient(
            timeout=timeout or config.FEED_TIMEOUT,
            transport=transport,
            headers={'Accept': 'application/json'},
        )

    async def __aenter__(self) -> 'ResoFeedClient':
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def _token(self, sync_type: str) -> str:
        token = self.tokens.get(sync_type.upper())
        if not token:
            raise FeedAuthError(f"Missing {sync_type.upper()}_TOKEN - cannot query the feed")
        return token

    def _property_url(self, sync_type: str) -> str:
        url = self.urls.get(sync_type.upper())
        if not url:
            raise FeedConfigError(f"Missing {sync_type.upper()}_URL - cannot query the feed")
        return url

    def _cursor_filter(self, cursor: Cursor) -> str:
        return (
            self.property_filter
            .replace('@lastTimestamp', cursor.timestamp)
            .replace('@lastKey', cursor.key)
        )

    async def _throttle(self):
        """Space requests to stay under the per-minute ceiling."""
        wait = self.min_interval - (time.monotonic() - self._last_request)
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_request = time.monotonic()

    async def _request(self, url: str, token: str, params: dict) -> dict:
        """GET with throttling and retry; returns the decoded JSON body."""
        last_error = None

        for attempt in range(1, self.max_retries + 1):
            await self._throttle()
            logger.debug(f"GET {url} {params}")

            try:
                response = await self._client.get(
                    url,
                    params=params,
                    headers={'Authorization': f'Bearer {token}'},
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                delay = self.backoff_seconds * attempt
            else:
                if response.status_code in (401, 403):
                    raise FeedAuthError(
                        f"Feed rejected credentials: HTTP {response.status_code} for {url}"
                    )
                if response.status_code == 429:
                    last_error = FeedRateLimitError(f"HTTP 429 for {url}")
                    delay = self._retry_after(response, attempt)
                elif response.status_code in RETRYABLE_STATUS:
                    last_error = FeedError(f"HTTP {response.status_code} for {url}")
                    delay = self.backoff_seconds * attempt
                elif response.is_error:
                    raise FeedError(
                        f"HTTP {response.status_code} for {url}: {response.text[:200]}"
                    )
                else:
                    return response.json()

            if attempt < self.max_retries:
                logger.warning(
                    f"Feed request retry {attempt}/{self.max_retries} in {delay:.1f}s: {last_error}"
                )
                await asyncio.sleep(delay)

        if isinstance(last_error, FeedError):
            raise last_error
        raise FeedError(
            f"Request failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        header = response.headers.get('Retry-After')
        try:
            return float(header)
        except (TypeError, ValueError):
            return self.backoff_seconds * attempt

    # ==========================================================================
    # Property
    # ==========================================================================

    async def get_total_count(self, cursor: Cursor, sync_type: str = 'IDX') -> int:
        """Count of records after the cursor (progress display only)."""
        data = await self._request(
            self._property_url(sync_type),
            self._token(sync_type),
            {
                '$filter': self._cursor_filter(cursor),
                '$top': 0,
                '$count': 'true',
            },
        )
        return int(data.get('@odata.count') or 0)

    async def fetch_batch(
        self,
        cursor: Cursor,
        batch_size: int,
        sync_type: str = 'IDX',
    ) -> list[dict]:
        """Up to batch_size records strictly after cursor, in feed order."""
        if not cursor.timestamp or not cursor.key:
            raise FeedError(f"Invalid cursor: {cursor}")

        data = await self._request(
            self._property_url(sync_type),
            self._token(sync_type),
            {
                '$filter': self._cursor_filter(cursor),
                '$orderby': PROPERTY_ORDER,
                '$top': batch_size,
            },
        )
        return data.get('value') or []

    # ==========================================================================
    # Children
    # ==========================================================================

    async def fetch_children(self, parent_key: str, child_type: ChildType) -> list[dict]:
        """Media, rooms, or open houses for one listing (IDX credentials)."""
        child_type = ChildType(child_type)
        token = self._token('IDX')

        if child_type is ChildType.MEDIA:
            url = f"{self.base_url}/Media"
            params = {
                '$filter': (
                    f"ResourceRecordKey eq '{parent_key}' and MediaStatus eq 'Active' "
                    f"and ImageSizeDescription eq 'Largest'"
                ),
                '$top': 500,
            }
        elif child_type is ChildType.ROOMS:
            url = f"{self.base_url}/PropertyRooms"
            params = {'$filter': f"ListingKey eq '{parent_key}'"}
        else:
            url = f"{self.base_url}/OpenHouse"
            params = {
                '$filter': (
                    f"ListingKey eq '{parent_key}' and "
                    f"OpenHouseDate ge {date.today().isoformat()}"
                ),
                '$orderby': 'OpenHouseKey',
            }

        data = await self._request(url, token, params)
        return data.get('value') or []
