"""
Data models for Listing Sync module.

Cursor/sync-state representation plus the derived listing history rows.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional
from enum import Enum


class SyncType(str, Enum):
    """Upstream feed a sync run reads from."""
    IDX = 'IDX'
    VOW = 'VOW'


class SyncStatus(str, Enum):
    """Lifecycle status of a sync type's state row."""
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ChildType(str, Enum):
    """Per-listing child entities fetched after the property upsert."""
    MEDIA = 'media'
    ROOMS = 'rooms'
    OPEN_HOUSE = 'openhouse'


@dataclass(frozen=True, order=True)
class Cursor:
    """Position in the feed's (ModificationTimestamp, ListingKey) total order."""
    timestamp: str
    key: str

    @classmethod
    def from_record(cls, record: dict) -> 'Cursor':
        return cls(
            timestamp=str(record.get('ModificationTimestamp') or ''),
            key=str(record.get('ListingKey') or ''),
        )

    def __str__(self) -> str:
        return f"{self.timestamp} | {self.key}"


@dataclass
class SyncState:
    """Persisted cursor and run bookkeeping for one sync type."""
    sync_type: str
    last_timestamp: str
    last_key: str = '0'
    status: SyncStatus = SyncStatus.IDLE
    total_processed: int = 0
    last_run_started: Optional[str] = None
    last_run_completed: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def cursor(self) -> Cursor:
        return Cursor(self.last_timestamp, self.last_key)

    def advance(self, cursor: Cursor):
        """Move the persisted position to a fully processed record."""
        self.last_timestamp = cursor.timestamp
        self.last_key = cursor.key

    @classmethod
    def from_row(cls, row: dict) -> 'SyncState':
        """Create from a sync_state row."""
        return cls(
            sync_type=row['sync_type'],
            last_timestamp=row['last_timestamp'],
            last_key=row.get('last_key') or '0',
            status=SyncStatus(row.get('status') or 'idle'),
            total_processed=row.get('total_processed') or 0,
            last_run_started=row.get('last_run_started'),
            last_run_completed=row.get('last_run_completed'),
            last_error=row.get('last_error'),
        )


@dataclass
class ChildCounts:
    """Records upserted for one property (property is always 1)."""
    property: int = 1
    media: int = 0
    rooms: int = 0
    open_house: int = 0


@dataclass
class CoverageStats:
    """
    Running totals used for the coverage report.

    `with_*` counts how many processed properties received at least one
    record of that child type.
    """
    properties: int = 0
    media: int = 0
    rooms: int = 0
    open_house: int = 0
    with_media: int = 0
    with_rooms: int = 0
    with_open_house: int = 0

    def add(self, counts: ChildCounts):
        self.properties += counts.property
        self.media += counts.media
        self.rooms += counts.rooms
        self.open_house += counts.open_house
        if counts.media:
            self.with_media += 1
        if counts.rooms:
            self.with_rooms += 1
        if counts.open_house:
            self.with_open_house += 1

    def percent(self, with_count: int) -> float:
        if not self.properties:
            return 0.0
        return round(with_count * 100 / self.properties, 1)

    def summary(self) -> str:
        return (
            f"{self.properties} properties | "
            f"media {self.media} ({self.percent(self.with_media)}%) | "
            f"rooms {self.rooms} ({self.percent(self.with_rooms)}%) | "
            f"open houses {self.open_house} ({self.percent(self.with_open_house)}%)"
        )


@dataclass
class ListingPeriod:
    """One marketing period of an address, keyed by the listing that opened it."""
    listing_key: str
    unparsed_address: Optional[str]
    date_start: str
    date_end: Optional[str] = None
    status: str = 'Active'
    initial_price: Optional[float] = None
    final_price: Optional[float] = None
    sold_price: Optional[float] = None
    close_date: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != 'Active'

    def to_row(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> 'ListingPeriod':
        return cls(**{k: row.get(k) for k in cls.__dataclass_fields__})


@dataclass
class PriceChange:
    """Price event for the current listing period of an address."""
    listing_key: str
    unparsed_address: Optional[str]
    change_date: str
    price: Optional[float]
    previous_price: Optional[float] = None
    change_percent: Optional[float] = None
    event_type: str = 'Listed'

    def to_row(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> 'PriceChange':
        return cls(**{k: row.get(k) for k in cls.__dataclass_fields__})


@dataclass
class SyncResult:
    """Outcome of one run_sync call."""
    sync_type: str
    processed: int = 0
    cursor: Optional[Cursor] = None
    stopped_reason: str = 'exhausted'  # exhausted, limit, shutdown
    elapsed_seconds: float = 0.0
    upstream_total: Optional[int] = None
    coverage: CoverageStats = field(default_factory=CoverageStats)
