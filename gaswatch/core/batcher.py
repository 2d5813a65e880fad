"""
GasWatch Write-Back Batcher
===========================

Accumulates partial block records and writes them to the Record Store on a
fixed cadence, one transaction per flush.

Guarantees
----------
* Writes for the same height coalesce before flush (last non-null value
  wins per field, ``observed_at`` keeps its first value).
* Staged writes are **never dropped**: when a flush fails, the drained
  batch is merged back under anything staged in the meantime and retried on
  the next flush.
* Flushes are serialised; a timer tick and the shutdown flush cannot run
  the same batch twice.

Flush triggers
--------------
1. The periodic ``batch-flush`` task (``flush_interval`` seconds).
2. Orchestrator shutdown (best-effort final flush).
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

from .database import RecordStore
from .logger import get_logger
from .models import BlockRecord

logger = get_logger('batcher')

_DEFAULT_FLUSH_INTERVAL = 5.0


class WriteBackBatcher:
    """Coalescing write-behind queue in front of :class:`RecordStore`.

    Parameters
    ----------
    store : RecordStore
        Destination for flushed batches.
    flush_interval : float
        Seconds between scheduled flushes (read by the orchestrator).
    """

    def __init__(
        self,
        store: RecordStore,
        flush_interval: float = _DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        self._store = store
        self.flush_interval = flush_interval
        self._pending: Dict[int, BlockRecord] = {}
        self._flush_lock = asyncio.Lock()

        self._last_flush_ts: Optional[float] = None
        self._last_flush_ms: Optional[float] = None
        self._flush_latency_ema: Optional[float] = None
        self._flush_success_total = 0
        self._flush_failure_total = 0
        self._rows_written_total = 0
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None

    def __len__(self) -> int:
        return len(self._pending)

    # ── staging ─────────────────────────────────────────────

    def stage(self, record: BlockRecord) -> None:
        """Add or merge a pending write.  O(1), never drops."""
        existing = self._pending.get(record.height)
        self._pending[record.height] = existing.merge(record) if existing else record

    def pending(self, height: int) -> Optional[BlockRecord]:
        return self._pending.get(height)

    # ── flush logic ─────────────────────────────────────────

    async def flush(self) -> int:
        """Write every staged record in one transaction.

        Returns the number of rows written.  On failure the batch is
        returned to the pending set and the error is logged, not raised.
        """
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch = self._pending
            self._pending = {}

            start = time.perf_counter()
            try:
                written = await self._store.upsert_records(
                    batch[h] for h in sorted(batch)
                )
            except asyncio.CancelledError:
                self._restore(batch)
                raise
            except Exception as exc:
                self._restore(batch)
                self._flush_failure_total += 1
                self._consecutive_failures += 1
                self._last_error = str(exc)
                logger.warning(
                    "Batch flush failed for %d records (attempt streak %d), retained for retry: %s",
                    len(batch), self._consecutive_failures, exc,
                )
                return 0

            duration_ms = (time.perf_counter() - start) * 1000
            self._last_flush_ts = time.time()
            self._last_flush_ms = duration_ms
            self._flush_latency_ema = (
                duration_ms if self._flush_latency_ema is None
                else (duration_ms * 0.2) + (self._flush_latency_ema * 0.8)
            )
            self._flush_success_total += 1
            self._rows_written_total += written
            self._consecutive_failures = 0
            self._last_error = None
            logger.debug("Flushed %d records in %.1fms", len(batch), duration_ms)
            return written

    def _restore(self, batch: Dict[int, BlockRecord]) -> None:
        """Put a failed batch back, letting writes staged since win per field."""
        for height, record in batch.items():
            newer = self._pending.get(height)
            self._pending[height] = record.merge(newer) if newer else record

    # ── status ──────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return {
            'pending': len(self._pending),
            'flush_interval': self.flush_interval,
            'last_flush_ts': self._last_flush_ts,
            'last_flush_ms': (
                round(self._last_flush_ms, 2) if self._last_flush_ms is not None else None
            ),
            'flush_latency_ema_ms': (
                round(self._flush_latency_ema, 2) if self._flush_latency_ema is not None else None
            ),
            'flush_success_total': self._flush_success_total,
            'flush_failure_total': self._flush_failure_total,
            'rows_written_total': self._rows_written_total,
            'consecutive_failures': self._consecutive_failures,
            'last_error': self._last_error,
        }
