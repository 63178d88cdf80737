"""
Configuration management for Listing Sync module.

Loads environment variables and provides typed config access.
"""

import os
from pathlib import Path
from typing import Iterable
from dotenv import load_dotenv

# Find project root and load .env
PROJECT_ROOT = Path(__file__).parent.parent.parent
load_dotenv(PROJECT_ROOT / '.env')

DEFAULT_FEED_BASE_URL = 'https://query.ampre.ca/odata'

# Cursor pagination: records strictly after (lastTimestamp, lastKey)
DEFAULT_PROPERTY_FILTER = (
    "ModificationTimestamp gt @lastTimestamp or "
    "(ModificationTimestamp eq @lastTimestamp and ListingKey gt '@lastKey')"
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Listing sync configuration."""

    # Environment
    LISTING_SYNC_ENV: str = os.getenv('LISTING_SYNC_ENV', 'dev')

    # Upstream RESO feed
    IDX_TOKEN: str = os.getenv('IDX_TOKEN', '')
    VOW_TOKEN: str = os.getenv('VOW_TOKEN', '')
    FEED_BASE_URL: str = os.getenv('FEED_BASE_URL', DEFAULT_FEED_BASE_URL).rstrip('/')
    IDX_URL: str = os.getenv('IDX_URL', f"{FEED_BASE_URL}/Property")
    VOW_URL: str = os.getenv('VOW_URL', f"{FEED_BASE_URL}/Property")
    PROPERTY_FILTER: str = os.getenv('PROPERTY_FILTER', DEFAULT_PROPERTY_FILTER)

    # Feed client behaviour
    FEED_RATE_LIMIT_PER_MINUTE: int = int(os.getenv('FEED_RATE_LIMIT_PER_MINUTE', '120'))
    FEED_MAX_RETRIES: int = int(os.getenv('FEED_MAX_RETRIES', '3'))
    FEED_TIMEOUT: int = int(os.getenv('FEED_TIMEOUT', '30'))
    FEED_BACKOFF_SECONDS: float = float(os.getenv('FEED_BACKOFF_SECONDS', '1.0'))

    # Sync loop policy
    BATCH_SIZE_PROPERTY: int = int(os.getenv('BATCH_SIZE_PROPERTY', '1000'))
    CHECKPOINT_INTERVAL: int = int(os.getenv('CHECKPOINT_INTERVAL', '1000'))
    COVERAGE_REPORT_INTERVAL: int = int(os.getenv('COVERAGE_REPORT_INTERVAL', '1000'))
    STALL_THRESHOLD: int = int(os.getenv('STALL_THRESHOLD', '3'))
    SYNC_START_DATE: str = os.getenv('SYNC_START_DATE', '2024-01-01T00:00:00Z')

    # Geocoding
    ENABLE_AUTO_GEOCODING: bool = _env_bool('ENABLE_AUTO_GEOCODING', 'true')
    GOOGLE_MAPS_API_KEY: str = os.getenv('GOOGLE_MAPS_API_KEY', '')

    # Database
    DB_PATH: Path = Path(os.getenv('LISTING_SYNC_DB_PATH', str(PROJECT_ROOT / 'data' / 'listing_sync.db')))

    # Logging (set LISTING_SYNC_LOG_LEVEL=DEBUG for verbose output)
    LOG_LEVEL: str = os.getenv('LISTING_SYNC_LOG_LEVEL', 'INFO')
    LOG_FILE: str = os.getenv('LISTING_SYNC_LOG_FILE', str(PROJECT_ROOT / 'logs' / 'listing_sync.log'))

    @classmethod
    def is_dev(cls) -> bool:
        return cls.LISTING_SYNC_ENV == 'dev'

    @classmethod
    def is_prod(cls) -> bool:
        return cls.LISTING_SYNC_ENV == 'prod'

    @classmethod
    def geocoding_enabled(cls) -> bool:
        return cls.ENABLE_AUTO_GEOCODING and bool(cls.GOOGLE_MAPS_API_KEY)

    @classmethod
    def token_for(cls, sync_type: str) -> str:
        return cls.VOW_TOKEN if sync_type.upper() == 'VOW' else cls.IDX_TOKEN

    @classmethod
    def url_for(cls, sync_type: str) -> str:
        return cls.VOW_URL if sync_type.upper() == 'VOW' else cls.IDX_URL

    @classmethod
    def validate(cls, sync_types: Iterable[str] = ('IDX', 'VOW')) -> list[str]:
        """Validate required configuration. Returns list of errors."""
        errors = []

        for sync_type in sync_types:
            name = sync_type.upper()
            if not cls.token_for(name):
                errors.append(f"{name}_TOKEN is required to sync the {name} feed")

        for name in ('BATCH_SIZE_PROPERTY', 'CHECKPOINT_INTERVAL',
                     'COVERAGE_REPORT_INTERVAL', 'STALL_THRESHOLD',
                     'FEED_RATE_LIMIT_PER_MINUTE', 'FEED_MAX_RETRIES'):
            if getattr(cls, name) <= 0:
                errors.append(f"{name} must be a positive integer")

        return errors


# Singleton instance
config = Config()
