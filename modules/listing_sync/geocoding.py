"""
Best-effort geocoding for synced properties.

Geocoder looks addresses up with the Google Geocoding API and records the
outcome on the property row. BackgroundTasks runs those lookups without
the sync loop awaiting them.
"""

import asyncio
import logging
from typing import Coroutine, Optional

import httpx

from .config import config

logger = logging.getLogger(__name__)

GEOCODE_URL = 'https://maps.googleapis.com/maps/api/geocode/json'


def build_address(record: dict) -> str:
    """Street, city, province, postal code; UnparsedAddress as fallback."""
    street_parts = [
        str(record[name]) for name in ('StreetNumber', 'StreetName', 'StreetSuffix')
        if record.get(name)
    ]
    if record.get('UnitNumber'):
        street_parts.append(f"Unit {record['UnitNumber']}")

    parts = []
    if street_parts:
        parts.append(' '.join(street_parts))
    for name in ('City', 'StateOrProvince', 'PostalCode'):
        if record.get(name):
            parts.append(str(record[name]))

    if not parts:
        return record.get('UnparsedAddress') or ''
    return ', '.join(parts)


class Geocoder:
    """Google Geocoding API lookups that write back to the store."""

    def __init__(
        self,
        store,
        api_key: Optional[str] = None,
        delay_seconds: float = 0.1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.api_key = config.GOOGLE_MAPS_API_KEY if api_key is None else api_key
        self.delay_seconds = delay_seconds
        self._client = httpx.AsyncClient(timeout=15, transport=transport)

    async def aclose(self):
        await self._client.aclose()

    async def geocode_address(self, address: str) -> dict:
        """Look up one address. Never raises for API-level failures."""
        if not self.api_key:
            return {'success': False, 'error': 'Google Maps API key not configured'}
        if not address or not address.strip():
            return {'success': False, 'error': 'Empty address'}

        try:
            response = await self._client.get(
                GEOCODE_URL, params={'address': address, 'key': self.api_key}
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return {'success': False, 'error': str(e)}

        status = data.get('status')
        results = data.get('results') or []
        if status == 'OK' and results:
            location = results[0]['geometry']['location']
            return {
                'success': True,
                'latitude': location['lat'],
                'longitude': location['lng'],
                'formatted_address': results[0].get('formatted_address'),
            }
        if status == 'ZERO_RESULTS':
            return {'success': False, 'error': 'No results found'}
        if status == 'OVER_QUERY_LIMIT':
            return {'success': False, 'error': 'API quota exceeded', 'retry': True}
        return {'success': False, 'error': f"API error: {status}"}

    async def geocode_property(self, record: dict) -> dict:
        """Geocode a stored property unless it already has coordinates."""
        listing_key = record['ListingKey']

        if await self.store.get_geocode_status(listing_key) == 'success':
            return {'success': True, 'skipped': True}

        await asyncio.sleep(self.delay_seconds)

        result = await self.geocode_address(build_address(record))
        if result['success']:
            await self.store.update_geocode(
                listing_key, 'success', result['latitude'], result['longitude']
            )
        else:
            status = 'pending' if result.get('retry') else 'failed'
            await self.store.update_geocode(listing_key, status)
            logger.debug(f"Listing {listing_key}: geocoding {status}: {result['error']}")

        return result


class BackgroundTasks:
    """
    Fire-and-forget dispatcher.

    Holds a reference to every task until it finishes and logs (then
    drops) its exception; callers never see the outcome.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def dispatch(self, coro: Coroutine, name: str = '') -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name or task.get_name())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background task {task.get_name()} failed: {error}")

    async def drain(self, timeout: Optional[float] = None):
        """Wait for outstanding tasks; cancel whatever is left after timeout."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning(f"Cancelled {len(still_pending)} background tasks still running")
            await asyncio.gather(*still_pending, return_exceptions=True)
