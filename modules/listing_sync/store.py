"""
Async persistence facade for the sync orchestrator.

Wraps the blocking SQLite `Database` so each call is awaited from the
event loop in the default thread pool, one operation at a time.
"""

import asyncio
from functools import partial
from typing import Iterable, Optional

from .db import Database
from .models import ChildType, Cursor, ListingPeriod, PriceChange, SyncState


class SyncStore:
    """Awaitable upsert store used by SyncEngine and the history deriver."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or Database()

    async def _run(self, func, *args, **kwargs):
        # Run in thread pool to not block the async loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    # ==========================================================================
    # Sync State
    # ==========================================================================

    async def get_sync_state(self, sync_type: str, start_timestamp: str) -> SyncState:
        """Persisted state, or a fresh idle state at the start epoch."""
        state = await self._run(self.db.get_sync_state, sync_type)
        return state or SyncState(sync_type=sync_type, last_timestamp=start_timestamp)

    async def get_all_sync_states(self) -> list[SyncState]:
        return await self._run(self.db.get_all_sync_states)

    async def save_sync_state(self, state: SyncState):
        await self._run(self.db.save_sync_state, state)

    async def complete_sync_state(self, sync_type: str, total_processed: int):
        await self._run(self.db.complete_sync_state, sync_type, total_processed)

    async def fail_sync_state(self, sync_type: str, error: str, cursor: Optional[Cursor] = None):
        await self._run(self.db.fail_sync_state, sync_type, error, cursor)

    async def reset_sync_state(self, sync_type: str, start_timestamp: str) -> SyncState:
        return await self._run(self.db.reset_sync_state, sync_type, start_timestamp)

    async def log_sync_run(self, sync_type: str, status: str, processed: int,
                           started_at: Optional[str], error: Optional[str] = None):
        await self._run(self.db.log_sync_run, sync_type, status, processed, started_at, error)

    # ==========================================================================
    # Entities
    # ==========================================================================

    async def upsert_property(self, record: dict):
        await self._run(self.db.upsert_property, record)

    async def upsert_children(self, child_type: ChildType, listing_key: str,
                              records: Iterable[dict]) -> int:
        return await self._run(self.db.upsert_children, child_type, listing_key, list(records))

    async def get_property(self, listing_key: str) -> Optional[dict]:
        return await self._run(self.db.get_property, listing_key)

    async def count_properties(self) -> int:
        return await self._run(self.db.count_properties)

    async def list_properties(self, offset: int = 0, limit: int = 1000) -> list[dict]:
        return await self._run(self.db.list_properties, offset, limit)

    async def get_geocode_status(self, listing_key: str) -> Optional[str]:
        return await self._run(self.db.get_geocode_status, listing_key)

    async def update_geocode(self, listing_key: str, status: str,
                             latitude: Optional[float] = None,
                             longitude: Optional[float] = None):
        await self._run(self.db.update_geocode, listing_key, status, latitude, longitude)

    # ==========================================================================
    # Listing History
    # ==========================================================================

    async def get_history_fields(self, listing_key: str) -> Optional[dict]:
        return await self._run(self.db.get_history_fields, listing_key)

    async def upsert_history_fields(self, listing_key: str, fields: dict):
        await self._run(self.db.upsert_history_fields, listing_key, fields)

    async def get_listing_period(self, listing_key: str) -> Optional[ListingPeriod]:
        return await self._run(self.db.get_listing_period, listing_key)

    async def get_listing_periods(self, unparsed_address: str) -> list[ListingPeriod]:
        return await self._run(self.db.get_listing_periods, unparsed_address)

    async def upsert_listing_period(self, period: ListingPeriod):
        await self._run(self.db.upsert_listing_period, period)

    async def upsert_price_change(self, change: PriceChange):
        await self._run(self.db.upsert_price_change, change)

    async def get_price_changes(self, listing_key: str) -> list[PriceChange]:
        return await self._run(self.db.get_price_changes, listing_key)
