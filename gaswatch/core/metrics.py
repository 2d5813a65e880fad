"""
Ingestion metrics tracker.

Process-wide data-quality counters, reset on restart and never persisted.
Every counter only ever grows; there is no decrement operation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from .models import MetricsSnapshot
from .utils import to_iso, utc_now


class MetricsTracker:
    """Counters mutated by the ingestion path, read via :meth:`snapshot`.

    ``last_processed_height`` follows the authoritative feed.  A height of
    zero means nothing has been processed yet, so the first observation
    never counts as a gap.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._missed_blocks = 0
        self._null_values = 0
        self._api_errors = 0
        self._clamped_blocks = 0
        self._last_processed_height = 0
        self._last_sync_time: Optional[str] = None

    @property
    def last_processed_height(self) -> int:
        return self._last_processed_height

    def record(self, height: int, value: Optional[float]) -> None:
        """Account for an authoritative observation of ``height``."""
        last = self._last_processed_height
        if last and height > last + 1:
            self._missed_blocks += height - last - 1
        if value is None:
            self._null_values += 1
        # Stale answers (height at or below the last one) never move it back
        self._last_processed_height = max(last, height)
        self._last_sync_time = to_iso(self._clock())

    def observe(self, value: Optional[float]) -> None:
        """Account for a predictive-feed observation (no height tracking)."""
        if value is None:
            self._null_values += 1
        self._last_sync_time = to_iso(self._clock())

    def record_null(self) -> None:
        self._null_values += 1

    def record_error(self) -> None:
        self._api_errors += 1

    def record_clamped(self, count: int) -> None:
        """Heights skipped by the backfill safety bound."""
        if count > 0:
            self._clamped_blocks += count

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            missed_blocks=self._missed_blocks,
            null_values=self._null_values,
            api_errors=self._api_errors,
            clamped_blocks=self._clamped_blocks,
            last_processed_height=self._last_processed_height,
            last_sync_time=self._last_sync_time,
        )
