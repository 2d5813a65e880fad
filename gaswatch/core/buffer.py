"""
Recent Window Buffer
====================

Bounded in-memory map of the most recently observed blocks, keyed by
height.  Serves "live" reads without waiting for the Write-Back Batcher to
reach the Record Store.

Memory is bounded by the window, not by the ingestion rate: ``evict`` runs
on its own timer and drops every entry older than ``window_seconds``.
All access happens on the event loop thread; reads return snapshot copies.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .logger import get_logger
from .models import BlockRecord

logger = get_logger('buffer')

_DEFAULT_WINDOW_S = 30.0


@dataclass(frozen=True)
class BufferedRecord:
    record: BlockRecord
    buffered_at: float


class RecentWindowBuffer:
    """Height-keyed buffer of recent partial records.

    Parameters
    ----------
    window_seconds : float
        Entries older than this are removed by :meth:`evict`.
    clock : callable
        Returns epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        window_seconds: float = _DEFAULT_WINDOW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: Dict[int, BufferedRecord] = {}
        self._evicted_total = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, height: int) -> bool:
        return height in self._entries

    def put(self, record: BlockRecord) -> BlockRecord:
        """Insert or merge ``record``; returns the merged record now buffered."""
        existing = self._entries.get(record.height)
        merged = existing.record.merge(record) if existing else record
        self._entries[record.height] = BufferedRecord(merged, self._clock())
        return merged

    def get(self, height: int) -> Optional[BlockRecord]:
        entry = self._entries.get(height)
        return entry.record if entry else None

    def recent(self, window_seconds: Optional[float] = None) -> List[BlockRecord]:
        """Records buffered within ``window_seconds`` of now, ascending by height."""
        window = self.window_seconds if window_seconds is None else window_seconds
        cutoff = self._clock() - window
        snapshot = list(self._entries.values())
        return sorted(
            (entry.record for entry in snapshot if entry.buffered_at >= cutoff),
            key=lambda r: r.height,
        )

    def evict(self) -> int:
        """Drop entries older than the configured window; returns how many."""
        cutoff = self._clock() - self.window_seconds
        stale = [h for h, entry in self._entries.items() if entry.buffered_at < cutoff]
        for height in stale:
            del self._entries[height]
        if stale:
            self._evicted_total += len(stale)
            logger.debug("Evicted %d buffered blocks (%d remain)", len(stale), len(self._entries))
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        heights = list(self._entries)
        return {
            'buffer_size': len(heights),
            'oldest_height': min(heights) if heights else None,
            'newest_height': max(heights) if heights else None,
            'window_seconds': self.window_seconds,
            'evicted_total': self._evicted_total,
        }
