"""
pytest configuration and fixtures for listing sync tests.
"""
import logging
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from modules.listing_sync.db import CHILD_TABLES, Database
from modules.listing_sync.exceptions import FeedError
from modules.listing_sync.logging_setup import LOGGER_NAME
from modules.listing_sync.models import ChildType, Cursor, SyncState, SyncStatus
from modules.listing_sync.store import SyncStore

START_TIMESTAMP = '2024-01-01T00:00:00Z'


def make_records(count: int, start: int = 0) -> list[dict]:
    """
    Feed-ordered property records. Pairs share a ModificationTimestamp so
    ListingKey breaks ties.
    """
    base = datetime(2024, 3, 1, tzinfo=timezone.utc)
    records = []
    for i in range(start, start + count):
        ts = (base + timedelta(seconds=i // 2)).strftime('%Y-%m-%dT%H:%M:%S.000Z')
        records.append({
            'ListingKey': f'X{i:05d}',
            'ModificationTimestamp': ts,
            'OriginalEntryTimestamp': ts,
            'UnparsedAddress': f'{i} Main St, Toronto',
            'City': 'Toronto',
            'ListPrice': 500000 + i,
            'MlsStatus': 'New',
            'SomeUnknownField': 'dropped',
        })
    return records


class FakeFeed:
    """Deterministic in-memory feed honoring the cursor contract."""

    def __init__(self, records=None, children=None, failing=None):
        self.records = sorted(
            records or [],
            key=lambda r: (r['ModificationTimestamp'], r['ListingKey'])
        )
        self.children = children or {}  # (listing_key, ChildType) -> list
        self.failing = set(failing or ())
        self.batch_requests: list[Cursor] = []
        self.child_requests: list[tuple] = []
        self.on_children = None  # hook(listing_key, child_type)

    def _after(self, cursor: Cursor) -> list[dict]:
        return [
            r for r in self.records
            if (r['ModificationTimestamp'], r['ListingKey']) > (cursor.timestamp, cursor.key)
        ]

    async def get_total_count(self, cursor, sync_type='IDX'):
        return len(self._after(cursor))

    async def fetch_batch(self, cursor, batch_size, sync_type='IDX'):
        self.batch_requests.append(cursor)
        return [dict(r) for r in self._after(cursor)[:batch_size]]

    async def fetch_children(self, parent_key, child_type):
        child_type = ChildType(child_type)
        self.child_requests.append((parent_key, child_type))
        if self.on_children is not None:
            self.on_children(parent_key, child_type)
        if child_type in self.failing:
            raise FeedError(f"{child_type.value} endpoint unavailable")
        return [dict(r) for r in self.children.get((parent_key, child_type), [])]


class StuckFeed(FakeFeed):
    """Always returns the same single record, whatever the cursor."""

    def __init__(self, record):
        super().__init__([record])
        self.record = record

    async def fetch_batch(self, cursor, batch_size, sync_type='IDX'):
        self.batch_requests.append(cursor)
        return [dict(self.record)]


class MemoryStore:
    """Async in-memory store with the same surface as SyncStore."""

    def __init__(self):
        self.states: dict[str, SyncState] = {}
        self.properties: dict[str, dict] = {}
        self.property_writes: dict[str, int] = {}
        self.children = {child_type: {} for child_type in CHILD_TABLES}
        self.geocodes: dict[str, dict] = {}
        self.history_fields: dict[str, dict] = {}
        self.periods: dict = {}
        self.period_keys_by_address: dict[str, set] = {}
        self.price_changes: dict[tuple, object] = {}
        self.run_log: list[dict] = []
        self.fail_upsert_key = None

    # Sync state (copies, so unsaved in-memory progress is never visible)
    async def get_sync_state(self, sync_type, start_timestamp):
        state = self.states.get(sync_type)
        if state is None:
            return SyncState(sync_type=sync_type, last_timestamp=start_timestamp)
        return replace(state)

    async def get_all_sync_states(self):
        return [replace(s) for _, s in sorted(self.states.items())]

    async def save_sync_state(self, state):
        self.states[state.sync_type] = replace(state)

    async def complete_sync_state(self, sync_type, total_processed):
        state = self.states[sync_type]
        state.status = SyncStatus.COMPLETED
        state.total_processed = total_processed
        state.last_run_completed = 'now'
        state.last_error = None

    async def fail_sync_state(self, sync_type, error, cursor=None):
        state = self.states[sync_type]
        state.status = SyncStatus.FAILED
        state.last_error = error
        if cursor is not None:
            state.advance(cursor)

    async def reset_sync_state(self, sync_type, start_timestamp):
        self.states[sync_type] = SyncState(sync_type=sync_type, last_timestamp=start_timestamp)
        return replace(self.states[sync_type])

    async def log_sync_run(self, sync_type, status, processed, started_at, error=None):
        self.run_log.append({
            'sync_type': sync_type, 'status': status,
            'processed': processed, 'error': error,
        })

    # Entities
    async def upsert_property(self, record):
        key = record.get('ListingKey')
        if not key:
            raise ValueError("Property record has no ListingKey")
        if key == self.fail_upsert_key:
            raise RuntimeError("database unavailable")
        self.properties[key] = dict(record)
        self.property_writes[key] = self.property_writes.get(key, 0) + 1

    async def upsert_children(self, child_type, listing_key, records):
        _, _, key_field = CHILD_TABLES[ChildType(child_type)]
        written = 0
        for record in records:
            if record.get(key_field):
                self.children[ChildType(child_type)][(record[key_field], listing_key)] = record
                written += 1
        return written

    async def get_property(self, listing_key):
        return self.properties.get(listing_key)

    async def count_properties(self):
        return len(self.properties)

    async def list_properties(self, offset=0, limit=1000):
        ordered = sorted(
            self.properties.values(),
            key=lambda r: (r.get('ModificationTimestamp') or '', r['ListingKey'])
        )
        return ordered[offset:offset + limit]

    async def get_geocode_status(self, listing_key):
        return self.geocodes.get(listing_key, {}).get('status')

    async def update_geocode(self, listing_key, status, latitude=None, longitude=None):
        self.geocodes[listing_key] = {
            'status': status, 'latitude': latitude, 'longitude': longitude,
        }

    # Listing history
    async def get_history_fields(self, listing_key):
        fields = self.history_fields.get(listing_key)
        return dict(fields) if fields else None

    async def upsert_history_fields(self, listing_key, fields):
        self.history_fields[listing_key] = dict(fields)

    async def get_listing_period(self, listing_key):
        return self.periods.get(listing_key)

    async def get_listing_periods(self, unparsed_address):
        keys = self.period_keys_by_address.get(unparsed_address, ())
        periods = [self.periods[key] for key in keys]
        return sorted(periods, key=lambda p: (p.date_start, p.listing_key), reverse=True)

    async def upsert_listing_period(self, period):
        previous = self.periods.get(period.listing_key)
        if previous is not None:
            self.period_keys_by_address.get(previous.unparsed_address, set()).discard(period.listing_key)
        self.periods[period.listing_key] = replace(period)
        self.period_keys_by_address.setdefault(period.unparsed_address, set()).add(period.listing_key)

    async def upsert_price_change(self, change):
        self.price_changes[(change.listing_key, change.change_date)] = replace(change)

    async def get_price_changes(self, listing_key):
        changes = [c for (key, _), c in self.price_changes.items() if key == listing_key]
        return sorted(changes, key=lambda c: c.change_date, reverse=True)


class SimulatedCrash(BaseException):
    """Stands in for the process being killed mid-run."""


@pytest.fixture
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def test_db_path(tmp_path):
    """Create a temporary database path for testing."""
    return tmp_path / "test_listing_sync.db"


@pytest.fixture
def test_db(test_db_path):
    """Create a test database with schema."""
    db = Database(test_db_path)
    yield db
    # Cleanup happens automatically when temp directory is removed


@pytest.fixture
def sync_store(test_db):
    return SyncStore(test_db)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sample_property():
    """Raw property payload as the feed sends it."""
    return {
        'ListingKey': 'C9000001',
        'UnparsedAddress': '123 Queen St W, Toronto, ON M5H 2M9',
        'StreetNumber': '123',
        'StreetName': 'Queen',
        'StreetSuffix': 'St W',
        'City': 'Toronto',
        'StateOrProvince': 'ON',
        'PostalCode': 'M5H 2M9',
        'ListPrice': '475000',
        'OriginalListPrice': 500000,
        'PreviousListPrice': 500000,
        'PriceChangeTimestamp': '2024-05-10T14:30:00Z',
        'OriginalEntryTimestamp': '2024-04-01T09:00:00Z',
        'ModificationTimestamp': '2024-05-10T14:30:00Z',
        'MlsStatus': 'Price Change',
        'TaxAnnualAmount': '4250.75',
        'BedroomsAboveGrade': 3,
        'Latitude': 43.65,
        'MediaURL': 'https://example.com/not-a-property-field.jpg',
    }


@pytest.fixture
def package_logger():
    """Restore the package logger after a test reconfigures it."""
    logger = logging.getLogger(LOGGER_NAME)
    handlers, level = list(logger.handlers), logger.level
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def env_vars(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("LISTING_SYNC_ENV", "test")
    monkeypatch.setenv("IDX_TOKEN", "test_idx_token")
    monkeypatch.setenv("VOW_TOKEN", "test_vow_token")
