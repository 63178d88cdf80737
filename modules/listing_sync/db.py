"""
Database management for Listing Sync module.

SQLite with WAL mode for concurrent access. Every write is an upsert on the
record's natural key so a resumed sync can replay records safely.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .config import config
from .models import ChildType, Cursor, ListingPeriod, PriceChange, SyncState

logger = logging.getLogger(__name__)


SCHEMA = """
-- Property: canonical listing record, keyed by upstream ListingKey
CREATE TABLE IF NOT EXISTS property (
    listing_key TEXT PRIMARY KEY,
    unparsed_address TEXT,
    list_price REAL,
    mls_status TEXT,
    modification_timestamp TEXT,
    data TEXT NOT NULL,  -- JSON of mapped fields
    latitude REAL,
    longitude REAL,
    geocoding_status TEXT,  -- success, failed, pending
    geocoded_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_property_address ON property(unparsed_address);
CREATE INDEX IF NOT EXISTS idx_property_modified ON property(modification_timestamp, listing_key);

-- Child entities: composite natural key (own key + ListingKey)
CREATE TABLE IF NOT EXISTS media (
    media_key TEXT NOT NULL,
    listing_key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (media_key, listing_key)
);

CREATE TABLE IF NOT EXISTS rooms (
    room_key TEXT NOT NULL,
    listing_key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (room_key, listing_key)
);

CREATE TABLE IF NOT EXISTS open_house (
    open_house_key TEXT NOT NULL,
    listing_key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (open_house_key, listing_key)
);

-- Sync state: one cursor row per feed
CREATE TABLE IF NOT EXISTS sync_state (
    sync_type TEXT PRIMARY KEY,
    last_timestamp TEXT NOT NULL,
    last_key TEXT NOT NULL DEFAULT '0',
    status TEXT NOT NULL DEFAULT 'idle',  -- idle, running, completed, failed
    total_processed INTEGER DEFAULT 0,
    last_run_started TEXT,
    last_run_completed TEXT,
    last_error TEXT,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Raw history hints supplied by the feed
CREATE TABLE IF NOT EXISTS listing_history_fields (
    listing_key TEXT PRIMARY KEY,
    original_list_price REAL,
    previous_list_price REAL,
    price_change_timestamp TEXT,
    back_on_market_entry_timestamp TEXT,
    leased_entry_timestamp TEXT,
    leased_conditional_entry_timestamp TEXT,
    deal_fell_through_entry_timestamp TEXT,
    extension_entry_timestamp TEXT,
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Listing periods: one per ListingKey, queried by address
CREATE TABLE IF NOT EXISTS listing_periods (
    listing_key TEXT PRIMARY KEY,
    unparsed_address TEXT,
    date_start TEXT NOT NULL,
    date_end TEXT,
    status TEXT NOT NULL,
    initial_price REAL,
    final_price REAL,
    sold_price REAL,
    close_date TEXT,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_listing_periods_address ON listing_periods(unparsed_address);

-- Price changes for the current period of an address
CREATE TABLE IF NOT EXISTS price_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    listing_key TEXT NOT NULL,
    unparsed_address TEXT,
    change_date TEXT NOT NULL,
    price REAL,
    previous_price REAL,
    change_percent REAL,
    event_type TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE (listing_key, change_date)
);

-- Sync log: one row per run
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT DEFAULT (datetime('now')),
    sync_type TEXT NOT NULL,
    status TEXT NOT NULL,  -- completed, failed
    processed INTEGER DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_timestamp ON sync_log(timestamp);
"""

CHILD_TABLES = {
    ChildType.MEDIA: ('media', 'media_key', 'MediaKey'),
    ChildType.ROOMS: ('rooms', 'room_key', 'RoomKey'),
    ChildType.OPEN_HOUSE: ('open_house', 'open_house_key', 'OpenHouseKey'),
}

HISTORY_FIELD_COLUMNS = {
    'OriginalListPrice': 'original_list_price',
    'PreviousListPrice': 'previous_list_price',
    'PriceChangeTimestamp': 'price_change_timestamp',
    'BackOnMarketEntryTimestamp': 'back_on_market_entry_timestamp',
    'LeasedEntryTimestamp': 'leased_entry_timestamp',
    'LeasedConditionalEntryTimestamp': 'leased_conditional_entry_timestamp',
    'DealFellThroughEntryTimestamp': 'deal_fell_through_entry_timestamp',
    'ExtensionEntryTimestamp': 'extension_entry_timestamp',
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Listing sync database manager."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or config.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connection(self):
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Initialize database schema."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # ==========================================================================
    # Sync State
    # ==========================================================================

    def get_sync_state(self, sync_type: str) -> Optional[SyncState]:
        """Get the persisted state for a sync type, if any."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_state WHERE sync_type = ?", (sync_type,)
            ).fetchone()
            return SyncState.from_row(dict(row)) if row else None

    def get_all_sync_states(self) -> list[SyncState]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_state ORDER BY sync_type"
            ).fetchall()
            return [SyncState.from_row(dict(row)) for row in rows]

    def save_sync_state(self, state: SyncState):
        """Checkpoint: upsert the full state row."""
        with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_state (
                    sync_type, last_timestamp, last_key, status, total_processed,
                    last_run_started, last_run_completed, last_error, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(sync_type) DO UPDATE SET
                    last_timestamp = excluded.last_timestamp,
                    last_key = excluded.last_key,
                    status = excluded.status,
                    total_processed = excluded.total_processed,
                    last_run_started = excluded.last_run_started,
                    last_run_completed = excluded.last_run_completed,
                    last_error = excluded.last_error,
                    updated_at = datetime('now')
            """, (
                state.sync_type, state.last_timestamp, state.last_key,
                state.status.value, state.total_processed, state.last_run_started,
                state.last_run_completed, state.last_error,
            ))

    def complete_sync_state(self, sync_type: str, total_processed: int):
        """Mark a sync type completed with its final processed count."""
        with self.connection() as conn:
            conn.execute("""
                UPDATE sync_state SET
                    status = 'completed',
                    total_processed = ?,
                    last_run_completed = ?,
                    last_error = NULL,
                    updated_at = datetime('now')
                WHERE sync_type = ?
            """, (total_processed, utc_now(), sync_type))

    def fail_sync_state(self, sync_type: str, error: str, cursor: Optional[Cursor] = None):
        """Mark a sync type failed, keeping the last fully processed cursor."""
        with self.connection() as conn:
            if cursor is not None:
                conn.execute("""
                    UPDATE sync_state SET
                        status = 'failed', last_error = ?,
                        last_timestamp = ?, last_key = ?,
                        updated_at = datetime('now')
                    WHERE sync_type = ?
                """, (error, cursor.timestamp, cursor.key, sync_type))
            else:
                conn.execute("""
                    UPDATE sync_state SET
                        status = 'failed', last_error = ?, updated_at = datetime('now')
                    WHERE sync_type = ?
                """, (error, sync_type))

    def reset_sync_state(self, sync_type: str, start_timestamp: str) -> SyncState:
        """Re-initialize a sync type to the configured epoch."""
        state = SyncState(sync_type=sync_type, last_timestamp=start_timestamp)
        self.save_sync_state(state)
        return state

    # ==========================================================================
    # Property
    # ==========================================================================

    def upsert_property(self, record: dict):
        """Insert or update a mapped property by ListingKey."""
        listing_key = record.get('ListingKey')
        if not listing_key:
            raise ValueError("Property record has no ListingKey")

        with self.connection() as conn:
            conn.execute("""
                INSERT INTO property (
                    listing_key, unparsed_address, list_price, mls_status,
                    modification_timestamp, data, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(listing_key) DO UPDATE SET
                    unparsed_address = excluded.unparsed_address,
                    list_price = excluded.list_price,
                    mls_status = excluded.mls_status,
                    modification_timestamp = excluded.modification_timestamp,
                    data = excluded.data,
                    updated_at = datetime('now')
            """, (
                listing_key,
                record.get('UnparsedAddress'),
                record.get('ListPrice'),
                record.get('MlsStatus'),
                record.get('ModificationTimestamp'),
                json.dumps(record),
            ))

    def get_property(self, listing_key: str) -> Optional[dict]:
        """Get the mapped property record, or None."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT data FROM property WHERE listing_key = ?", (listing_key,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def count_properties(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM property").fetchone()[0]

    def list_properties(self, offset: int = 0, limit: int = 1000) -> list[dict]:
        """Page through stored properties in feed order."""
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT data FROM property
                ORDER BY modification_timestamp, listing_key
                LIMIT ? OFFSET ?
            """, (limit, offset)).fetchall()
            return [json.loads(row['data']) for row in rows]

    def get_geocode_status(self, listing_key: str) -> Optional[str]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT geocoding_status FROM property WHERE listing_key = ?",
                (listing_key,)
            ).fetchone()
            return row['geocoding_status'] if row else None

    def update_geocode(
        self,
        listing_key: str,
        status: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ):
        with self.connection() as conn:
            conn.execute("""
                UPDATE property SET
                    geocoding_status = ?, latitude = ?, longitude = ?, geocoded_at = ?
                WHERE listing_key = ?
            """, (status, latitude, longitude, utc_now(), listing_key))

    # ==========================================================================
    # Media / Rooms / Open House
    # ==========================================================================

    def upsert_children(
        self,
        child_type: ChildType,
        listing_key: str,
        records: Iterable[dict]
    ) -> int:
        """Upsert mapped child records for a listing. Returns rows written."""
        table, key_column, key_field = CHILD_TABLES[ChildType(child_type)]

        rows = []
        for record in records:
            child_key = record.get(key_field)
            if not child_key:
                logger.debug(f"Skipping {table} record without {key_field} for {listing_key}")
                continue
            rows.append((child_key, listing_key, json.dumps(record)))

        if not rows:
            return 0

        with self.connection() as conn:
            conn.executemany(f"""
                INSERT INTO {table} ({key_column}, listing_key, data, updated_at)
                VALUES (?, ?, ?, datetime('now'))
                ON CONFLICT({key_column}, listing_key) DO UPDATE SET
                    data = excluded.data,
                    updated_at = datetime('now')
            """, rows)
        return len(rows)

    def get_children(self, child_type: ChildType, listing_key: str) -> list[dict]:
        table, key_column, _ = CHILD_TABLES[ChildType(child_type)]
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT data FROM {table} WHERE listing_key = ? ORDER BY {key_column}",
                (listing_key,)
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    # ==========================================================================
    # Listing History
    # ==========================================================================

    def get_history_fields(self, listing_key: str) -> Optional[dict]:
        """Stored history hints, keyed by feed field name."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM listing_history_fields WHERE listing_key = ?",
                (listing_key,)
            ).fetchone()
            if not row:
                return None
            return {name: row[column] for name, column in HISTORY_FIELD_COLUMNS.items()}

    def upsert_history_fields(self, listing_key: str, fields: dict):
        columns = list(HISTORY_FIELD_COLUMNS.values())
        values = [fields.get(name) for name in HISTORY_FIELD_COLUMNS]
        updates = ', '.join(f"{c} = excluded.{c}" for c in columns)

        with self.connection() as conn:
            conn.execute(f"""
                INSERT INTO listing_history_fields (listing_key, {', '.join(columns)}, updated_at)
                VALUES (?, {', '.join('?' for _ in columns)}, datetime('now'))
                ON CONFLICT(listing_key) DO UPDATE SET {updates}, updated_at = datetime('now')
            """, [listing_key, *values])

    def get_listing_period(self, listing_key: str) -> Optional[ListingPeriod]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM listing_periods WHERE listing_key = ?", (listing_key,)
            ).fetchone()
            return ListingPeriod.from_row(dict(row)) if row else None

    def get_listing_periods(self, unparsed_address: str) -> list[ListingPeriod]:
        """All periods for an address, newest first."""
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT * FROM listing_periods
                WHERE unparsed_address = ?
                ORDER BY date_start DESC, listing_key DESC
            """, (unparsed_address,)).fetchall()
            return [ListingPeriod.from_row(dict(row)) for row in rows]

    def upsert_listing_period(self, period: ListingPeriod):
        row = period.to_row()
        columns = list(row.keys())
        updates = ', '.join(f"{c} = excluded.{c}" for c in columns if c != 'listing_key')

        with self.connection() as conn:
            conn.execute(f"""
                INSERT INTO listing_periods ({', '.join(columns)}, updated_at)
                VALUES ({', '.join('?' for _ in columns)}, datetime('now'))
                ON CONFLICT(listing_key) DO UPDATE SET {updates}, updated_at = datetime('now')
            """, list(row.values()))

    def upsert_price_change(self, change: PriceChange):
        row = change.to_row()
        columns = list(row.keys())
        updates = ', '.join(
            f"{c} = excluded.{c}" for c in columns if c not in ('listing_key', 'change_date')
        )

        with self.connection() as conn:
            conn.execute(f"""
                INSERT INTO price_changes ({', '.join(columns)}, updated_at)
                VALUES ({', '.join('?' for _ in columns)}, datetime('now'))
                ON CONFLICT(listing_key, change_date) DO UPDATE SET
                    {updates}, updated_at = datetime('now')
            """, list(row.values()))

    def get_price_changes(self, listing_key: str) -> list[PriceChange]:
        """Price changes for a listing, newest first."""
        with self.connection() as conn:
            rows = conn.execute("""
                SELECT * FROM price_changes WHERE listing_key = ?
                ORDER BY change_date DESC
            """, (listing_key,)).fetchall()
            return [PriceChange.from_row(dict(row)) for row in rows]

    # ==========================================================================
    # Sync Log
    # ==========================================================================

    def log_sync_run(
        self,
        sync_type: str,
        status: str,
        processed: int = 0,
        started_at: Optional[str] = None,
        error: Optional[str] = None
    ):
        """Log a sync run."""
        with self.connection() as conn:
            conn.execute("""
                INSERT INTO sync_log (sync_type, status, processed, started_at, completed_at, error)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (sync_type, status, processed, started_at, utc_now(), error))

    def get_recent_logs(self, limit: int = 20) -> list[dict]:
        """Get recent sync log entries."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [dict(row) for row in rows]
