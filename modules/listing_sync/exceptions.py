# =========================================================================
# CUSTOM EXCEPTIONS
# =========================================================================

class ListingSyncError(Exception):
    """Base exception for listing sync errors"""
    pass


class FeedError(ListingSyncError):
    """Upstream feed request failed"""
    pass


class FeedAuthError(FeedError):
    """Authentication/authorization failure (never retried)"""
    pass


class FeedRateLimitError(FeedError):
    """Rate limit still exceeded after retries"""
    pass


class FeedConfigError(FeedError):
    """Feed is not configured for the requested sync type"""
    pass


class SyncStalledError(ListingSyncError):
    """Cursor did not advance for too many consecutive batches"""

    def __init__(self, cursor, batches: int):
        self.cursor = cursor
        self.batches = batches
        super().__init__(
            f"Cursor stuck at {cursor.timestamp} | {cursor.key} for "
            f"{batches} consecutive batches - aborting to prevent an infinite loop"
        )


class ListingNotFoundError(ListingSyncError):
    """No property stored for the requested ListingKey"""
    pass
