"""
Sync Engine - sequential property sync with resume support.

Handles:
- Cursor pagination over (ModificationTimestamp, ListingKey)
- Property → media → rooms → open house, one property at a time
- Periodic checkpoints of the cursor
- Stalled-cursor detection
- Coverage reporting
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from .config import config
from .exceptions import SyncStalledError
from .field_mapper import map_media, map_open_house, map_property, map_room
from .geocoding import BackgroundTasks
from .listing_history import process_property_listing_history
from .models import (
    ChildCounts, ChildType, CoverageStats, Cursor, SyncResult, SyncState,
    SyncStatus, SyncType,
)
from .progress import SyncProgress

logger = logging.getLogger(__name__)

CHILD_STEPS = (
    (ChildType.MEDIA, map_media, 'media', 'Media'),
    (ChildType.ROOMS, map_room, 'rooms', 'Rooms'),
    (ChildType.OPEN_HOUSE, map_open_house, 'open_house', 'OpenHouse'),
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncEngine:
    """
    Sequential sync orchestrator.

    One instance per feed client/store pair. All run state lives in local
    variables and the returned SyncResult, so separate instances never
    share progress.
    """

    def __init__(
        self,
        client,
        store,
        *,
        batch_size: Optional[int] = None,
        checkpoint_interval: Optional[int] = None,
        coverage_interval: Optional[int] = None,
        stall_threshold: Optional[int] = None,
        start_timestamp: Optional[str] = None,
        geocoder=None,
        background: Optional[BackgroundTasks] = None,
    ):
        self.client = client
        self.store = store
        self.batch_size = batch_size or config.BATCH_SIZE_PROPERTY
        self.checkpoint_interval = checkpoint_interval or config.CHECKPOINT_INTERVAL
        self.coverage_interval = coverage_interval or config.COVERAGE_REPORT_INTERVAL
        self.stall_threshold = stall_threshold or config.STALL_THRESHOLD
        self.start_timestamp = start_timestamp or config.SYNC_START_DATE
        self.geocoder = geocoder
        self.background = background or BackgroundTasks()
        self._shutdown = False

    # ==========================================================================
    # Shutdown
    # ==========================================================================

    def request_shutdown(self):
        """Stop before the next batch; the current batch is finished first."""
        if not self._shutdown:
            logger.warning("Shutdown requested - stopping after the current batch")
        self._shutdown = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown

    # ==========================================================================
    # Run
    # ==========================================================================

    async def run_sync(
        self,
        sync_type: str = 'IDX',
        limit: Optional[int] = None,
        reset: bool = False,
        progress: Optional[SyncProgress] = None,
    ) -> SyncResult:
        """
        Sync one feed from its persisted cursor until the feed is exhausted,
        the limit is reached, or shutdown is requested.

        Any exception marks the state failed and is re-raised.
        """
        name = SyncType(sync_type.upper()).value
        started = time.monotonic()

        state = await self.store.get_sync_state(name, self.start_timestamp)
        if reset:
            logger.warning(f"{name}: reset requested - starting from {self.start_timestamp}")
            state = await self.store.reset_sync_state(name, self.start_timestamp)

        logger.info(f"{name}: resuming from {state.cursor}")

        state.status = SyncStatus.RUNNING
        state.last_run_started = utc_now()
        state.last_error = None
        await self.store.save_sync_state(state)

        result = SyncResult(sync_type=name, cursor=state.cursor)

        try:
            total = await self.client.get_total_count(state.cursor, name)
            result.upstream_total = total
            logger.info(f"{name}: {total:,} records available upstream")
            if progress is not None:
                progress.start(total)

            await self._sync_loop(state, result, limit, progress)

            await self.store.complete_sync_state(name, result.processed)
        except Exception as e:
            logger.error(f"{name} sync failed after {result.processed} properties: {e}")
            await self._record_failure(state, result, e)
            raise
        finally:
            if progress is not None:
                progress.finish()

        result.cursor = state.cursor
        result.elapsed_seconds = time.monotonic() - started
        await self.store.log_sync_run(name, SyncStatus.COMPLETED.value, result.processed,
                                      state.last_run_started)

        logger.info(
            f"{name} sync completed: {result.processed:,} properties "
            f"({result.stopped_reason}) in {result.elapsed_seconds:.1f}s"
        )
        return result

    async def _record_failure(self, state: SyncState, result: SyncResult, error: Exception):
        try:
            await self.store.fail_sync_state(state.sync_type, str(error), state.cursor)
            await self.store.log_sync_run(state.sync_type, SyncStatus.FAILED.value,
                                          result.processed, state.last_run_started, str(error))
        except Exception as record_error:
            logger.error(f"{state.sync_type}: could not record failure: {record_error}")

    async def _sync_loop(
        self,
        state: SyncState,
        result: SyncResult,
        limit: Optional[int],
        progress: Optional[SyncProgress],
    ):
        name = state.sync_type
        previous = state.cursor
        stalled = 0

        while True:
            if self._shutdown:
                result.stopped_reason = 'shutdown'
                logger.warning(f"{name}: shutdown signal detected after {result.processed:,} properties")
                break

            if limit and result.processed >= limit:
                result.stopped_reason = 'limit'
                logger.info(f"{name}: reached limit of {limit:,} properties")
                break

            batch = await self.client.fetch_batch(state.cursor, self.batch_size, name)
            if not batch:
                logger.info(f"{name}: no more records returned - feed exhausted")
                break

            for raw in batch:
                counts = await self.process_property(raw)

                result.processed += 1
                result.coverage.add(counts)
                state.advance(Cursor.from_record(raw))

                if progress is not None:
                    progress.update(result.processed, raw.get('ListingKey', ''), counts)

                if result.processed % self.checkpoint_interval == 0:
                    await self._checkpoint(state, result.processed)

                if result.processed % self.coverage_interval == 0:
                    self.log_coverage(result.coverage)

                if limit and result.processed >= limit:
                    break

            last = Cursor.from_record(batch[-1])
            if last == previous:
                stalled += 1
                logger.warning(
                    f"{name}: cursor hasn't advanced ({stalled}/{self.stall_threshold}) at {last}"
                )
                if stalled >= self.stall_threshold:
                    raise SyncStalledError(last, stalled)
            else:
                stalled = 0
            previous = last

        await self._checkpoint(state, result.processed)
        self.log_coverage(result.coverage)
        result.cursor = state.cursor

    async def _checkpoint(self, state: SyncState, processed: int):
        state.total_processed = processed
        await self.store.save_sync_state(state)
        logger.info(f"{state.sync_type}: checkpoint at {processed:,} properties ({state.cursor})")

    # ==========================================================================
    # Single Property
    # ==========================================================================

    async def process_property(self, raw: dict) -> ChildCounts:
        """
        Upsert one property and its children.

        Only the property upsert is fatal. History, media, rooms, and open
        house failures are logged and the property still counts.
        """
        mapped = map_property(raw)
        await self.store.upsert_property(mapped)

        listing_key = mapped['ListingKey']
        counts = ChildCounts()

        self._dispatch_geocode(mapped)

        try:
            await process_property_listing_history(self.store, raw)
        except Exception as e:
            logger.warning(f"Listing history processing failed for {listing_key}: {e}")

        for child_type, mapper, field_name, label in CHILD_STEPS:
            try:
                records = await self.client.fetch_children(listing_key, child_type)
                if records:
                    written = await self.store.upsert_children(
                        child_type, listing_key, [mapper(r) for r in records]
                    )
                    setattr(counts, field_name, written)
            except Exception as e:
                logger.error(f"{label} sync failed for {listing_key}: {e}")

        return counts

    def _dispatch_geocode(self, mapped: dict):
        if self.geocoder is None:
            return
        try:
            self.background.dispatch(
                self.geocoder.geocode_property(mapped),
                name=f"geocode-{mapped['ListingKey']}",
            )
        except Exception as e:
            logger.warning(f"Geocoding dispatch failed for {mapped['ListingKey']}: {e}")

    # ==========================================================================
    # Reporting
    # ==========================================================================

    @staticmethod
    def log_coverage(coverage: CoverageStats):
        if not coverage.properties:
            return
        logger.info('─' * 80)
        logger.info(f"Coverage Report ({coverage.properties:,} properties processed)")
        logger.info(
            f"  Media:      {coverage.media:,} records "
            f"({coverage.percent(coverage.with_media)}% coverage)"
        )
        logger.info(
            f"  Rooms:      {coverage.rooms:,} records "
            f"({coverage.percent(coverage.with_rooms)}% coverage)"
        )
        logger.info(
            f"  OpenHouse:  {coverage.open_house:,} records "
            f"({coverage.percent(coverage.with_open_house)}% coverage)"
        )
        logger.info('─' * 80)
