"""
GasWatch Range Query & Sampler
==============================

Answers "predicted vs. actual over the last <timeframe>" reads.

* ``1h`` merges Record Store rows with the Recent Window Buffer, so a block
  ingested a moment ago is visible before the next batch flush.
* Longer timeframes read the Record Store only; the buffer window is too
  short to matter there.
* Results are downsampled by a deterministic, index-based stride (every Nth
  row in height order).  The stride grows with the row count so that a
  series never exceeds ``max_points``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .buffer import RecentWindowBuffer
from .database import RecordStore
from .errors import InvalidQuery, PersistenceFailure
from .logger import get_logger
from .metrics import MetricsTracker
from .models import CONFIDENCE_LEVELS, BlockRecord, MetricsSnapshot
from .utils import to_iso, utc_now

logger = get_logger('query')

TIMEFRAMES: Dict[str, timedelta] = {
    '1h': timedelta(hours=1),
    '6h': timedelta(hours=6),
    '12h': timedelta(hours=12),
    '24h': timedelta(hours=24),
    '72h': timedelta(hours=72),
    '7d': timedelta(days=7),
}

# Base strides; widened further when the row count would exceed max_points
SAMPLE_RATES: Dict[str, int] = {
    '1h': 1,
    '6h': 30,
    '12h': 60,
    '24h': 300,
    '72h': 900,
    '7d': 3600,
}

LIVE_TIMEFRAME = '1h'
DEFAULT_MAX_POINTS = 2000
DEFAULT_CONFIDENCE = 99


def parse_timeframe(value: Optional[str]) -> str:
    """Validate a timeframe name.  Unknown values are rejected, never defaulted."""
    if value not in TIMEFRAMES:
        raise InvalidQuery(
            f"Unsupported range {value!r}; expected one of {', '.join(TIMEFRAMES)}"
        )
    return value


def parse_confidence(value: Any) -> int:
    """Validate a confidence level given as int or numeric string."""
    try:
        level = int(value)
    except (TypeError, ValueError):
        raise InvalidQuery(f"Unsupported confidence {value!r}") from None
    if level not in CONFIDENCE_LEVELS:
        raise InvalidQuery(
            f"Unsupported confidence {value!r}; expected one of "
            f"{', '.join(str(c) for c in CONFIDENCE_LEVELS)}"
        )
    return level


def sample_stride(row_count: int, timeframe: str, max_points: int) -> int:
    base = SAMPLE_RATES[timeframe]
    if row_count <= 0:
        return base
    return max(base, math.ceil(row_count / max_points))


def sample_rows(
    rows: Sequence[BlockRecord],
    timeframe: str,
    max_points: int = DEFAULT_MAX_POINTS,
) -> List[BlockRecord]:
    """Keep every Nth row (``rows`` must already be in height order)."""
    stride = sample_stride(len(rows), timeframe, max_points)
    return list(rows[::stride])


@dataclass(frozen=True)
class SeriesPoint:
    height: int
    timestamp: Optional[str]
    value: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {'height': self.height, 'timestamp': self.timestamp, 'value': self.value}


@dataclass(frozen=True)
class RangeResult:
    timeframe: str
    confidence: int
    predicted: List[SeriesPoint] = field(default_factory=list)
    actual: List[SeriesPoint] = field(default_factory=list)
    metrics: MetricsSnapshot = field(default_factory=MetricsSnapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'range': self.timeframe,
            'confidence': self.confidence,
            'predicted': [p.to_dict() for p in self.predicted],
            'actual': [p.to_dict() for p in self.actual],
            'metrics': self.metrics.to_dict(),
        }


class RangeQuery:
    """Read side: merges buffer and store, then downsamples.

    Parameters
    ----------
    store : RecordStore
    buffer : RecentWindowBuffer
    metrics : MetricsTracker
        Snapshot is attached to every result.
    max_points : int
        Ceiling on each returned series.
    clock : callable
        Returns an aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        buffer: RecentWindowBuffer,
        metrics: MetricsTracker,
        max_points: int = DEFAULT_MAX_POINTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._buffer = buffer
        self._metrics = metrics
        self.max_points = max_points
        self._clock = clock

    async def query(self, timeframe: Optional[str], confidence: Any = DEFAULT_CONFIDENCE) -> RangeResult:
        """
        Predicted/actual series for ``timeframe``.

        Raises:
            InvalidQuery: unknown timeframe or confidence level (nothing is read)
        """
        timeframe = parse_timeframe(timeframe)
        level = parse_confidence(confidence)
        cutoff = to_iso(self._clock() - TIMEFRAMES[timeframe])

        rows = await self._read_store(cutoff)
        if timeframe == LIVE_TIMEFRAME:
            rows = self._merge_live(rows, cutoff)

        sampled = sample_rows(rows, timeframe, self.max_points)
        return RangeResult(
            timeframe=timeframe,
            confidence=level,
            predicted=[SeriesPoint(r.height, r.observed_at, r.predicted(level)) for r in sampled],
            actual=[SeriesPoint(r.height, r.observed_at, r.actual_price) for r in sampled],
            metrics=self._metrics.snapshot(),
        )

    async def _read_store(self, cutoff: str) -> List[BlockRecord]:
        try:
            return await self._store.fetch_since(cutoff)
        except PersistenceFailure as exc:
            logger.error(f"Range query store read failed, serving buffer only: {exc}")
        except Exception as exc:
            logger.exception(f"Range query store read failed: {exc}")
        return []

    def _merge_live(self, rows: List[BlockRecord], cutoff: str) -> List[BlockRecord]:
        """Overlay buffered (possibly unflushed) fields onto stored rows by height."""
        merged: Dict[int, BlockRecord] = {r.height: r for r in rows}
        for record in self._buffer.recent():
            if record.observed_at is not None and record.observed_at < cutoff:
                continue
            stored = merged.get(record.height)
            merged[record.height] = stored.merge(record) if stored else record
        return [merged[h] for h in sorted(merged)]
