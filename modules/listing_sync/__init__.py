"""
Listing Sync Module - RESO feed → local listings store

Incremental, resumable property sync with media, rooms, open houses
and derived listing history.
"""

__version__ = "0.1.0"

from .models import Cursor, SyncResult, SyncState, SyncStatus, SyncType
from .sync_engine import SyncEngine

__all__ = [
    "Cursor",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SyncType",
]
