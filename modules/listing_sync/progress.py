"""
Progress display for a sync run.

One SyncProgress per run; nothing is shared between runs.
"""

import sys
import time
from typing import Optional, TextIO

from .logging_setup import console_handlers
from .models import ChildCounts

BAR_LENGTH = 30


def format_eta(seconds: float) -> str:
    seconds = int(round(seconds))
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class SyncProgress:
    """Tracks rate/ETA for one run and renders a single-line progress bar."""

    def __init__(
        self,
        sync_type: str,
        total: int = 0,
        stream: Optional[TextIO] = None,
        enabled: bool = True,
    ):
        self.sync_type = sync_type
        self.total = total
        self.stream = stream or sys.stdout
        self.enabled = enabled
        self.current = 0
        self.started = time.monotonic()
        self._on_bar_line = False
        self._handlers = []

    def start(self, total: int):
        """Reset counters and have package console logging step around the bar."""
        self.total = total
        self.current = 0
        self.started = time.monotonic()
        if self.enabled:
            self._handlers = console_handlers(self.stream)
            for handler in self._handlers:
                handler.progress = self

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    @property
    def rate(self) -> float:
        elapsed = self.elapsed
        return self.current / elapsed if elapsed > 0 else 0.0

    @property
    def eta_seconds(self) -> float:
        rate = self.rate
        remaining = max(self.total - self.current, 0)
        return remaining / rate if rate > 0 else 0.0

    def render(self, listing_key: str = '', counts: Optional[ChildCounts] = None) -> str:
        total = max(self.total, self.current, 1)
        fraction = min(self.current / total, 1.0)
        filled = round(fraction * BAR_LENGTH)
        bar = '█' * filled + '░' * (BAR_LENGTH - filled)
        line = (
            f"\r[{self.sync_type}] {bar} {fraction * 100:.1f}% | "
            f"{self.current:,}/{self.total:,} | Rate: {self.rate:.1f}/s | "
            f"ETA: {format_eta(self.eta_seconds)}"
        )
        if counts is not None:
            line += f" | {listing_key} M:{counts.media} R:{counts.rooms} O:{counts.open_house}"
        return line

    def update(self, current: int, listing_key: str = '', counts: Optional[ChildCounts] = None):
        self.current = current
        if self.enabled:
            self.stream.write(self.render(listing_key, counts) + '    ')
            self.stream.flush()
            self._on_bar_line = True

    def break_line(self):
        """End the bar line so the next write starts on a fresh one."""
        if self._on_bar_line:
            self.stream.write('\n')
            self.stream.flush()
            self._on_bar_line = False

    def finish(self):
        self.break_line()
        for handler in self._handlers:
            if handler.progress is self:
                handler.progress = None
        self._handlers = []
