"""
Gap Detector / Backfiller
=========================

Compares consecutive heights reported by the authoritative feed and, for
every height skipped between two polls, looks up the block's timestamp
out-of-band and inserts a timestamp-only placeholder row.  Every height in
the observed range therefore ends up with a row, which keeps time-series
queries contiguous.

Rules
-----
* ``curr <= prev + 1`` is not a gap (equal or repeated heights are no-ops).
* Gaps wider than ``max_backfill`` only reconcile the most recent
  ``max_backfill`` heights; the remainder is counted in
  ``clamped_blocks`` and not looked up individually.
* Lookups fan out through a semaphore of ``concurrency`` slots.
* A failed lookup increments ``api_errors`` and is skipped for this pass;
  the height is remembered and re-attempted by the next pass.
* Heights that already have a row (placeholder or real) are never looked
  up again; placeholders are insert-if-absent.
* :meth:`schedule` runs a pass as a detached task so a slow backfill never
  stalls the poll cadence.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

from .database import RecordStore
from .errors import PersistenceFailure
from .logger import get_logger
from .metrics import MetricsTracker
from .models import BlockRecord

logger = get_logger('backfill')

_DEFAULT_MAX_BACKFILL = 100
_DEFAULT_CONCURRENCY = 5

TimestampLookup = Callable[[int], Awaitable[str]]


class GapBackfiller:
    """Detects skipped heights and inserts placeholder rows for them.

    Parameters
    ----------
    store : RecordStore
        Destination for placeholder rows.
    lookup : callable
        ``async lookup(height) -> str`` returning the block's canonical
        ISO timestamp; raises on failure.
    metrics : MetricsTracker
        Receives error and clamp accounting.
    max_backfill : int
        Safety bound on heights reconciled per gap.
    concurrency : int
        Maximum simultaneous lookups.
    """

    def __init__(
        self,
        store: RecordStore,
        lookup: TimestampLookup,
        metrics: MetricsTracker,
        max_backfill: int = _DEFAULT_MAX_BACKFILL,
        concurrency: int = _DEFAULT_CONCURRENCY,
    ) -> None:
        self._store = store
        self._lookup = lookup
        self._metrics = metrics
        self.max_backfill = max_backfill
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: Set[int] = set()
        self._failed: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._placeholders_total = 0

    # ── detection ───────────────────────────────────────────

    @staticmethod
    def detect(prev: Optional[int], curr: int) -> range:
        """Heights strictly between ``prev`` and ``curr``."""
        if not prev or curr <= prev + 1:
            return range(0)
        return range(prev + 1, curr)

    # ── reconciliation ──────────────────────────────────────

    async def backfill(self, prev: Optional[int], curr: int) -> int:
        """Reconcile the gap between ``prev`` and ``curr``.

        Returns the number of placeholder rows inserted.
        """
        missed = self.detect(prev, curr)
        if len(missed) > self.max_backfill:
            clamped = len(missed) - self.max_backfill
            self._metrics.record_clamped(clamped)
            logger.warning(
                "Gap %d..%d spans %d blocks; backfilling the last %d, %d left unreconciled",
                missed[0], missed[-1], len(missed), self.max_backfill, clamped,
            )
            missed = missed[-self.max_backfill:]

        candidates = (set(missed) | self._failed) - self._in_flight
        if not candidates:
            return 0
        self._failed -= candidates

        try:
            existing = await self._store.existing_heights(min(candidates), max(candidates))
        except PersistenceFailure as exc:
            logger.error(f"Backfill deferred, cannot read existing heights: {exc}")
            self._remember_failed(candidates)
            return 0

        todo = sorted(candidates - existing)
        if not todo:
            return 0

        self._in_flight.update(todo)
        try:
            timestamps = await asyncio.gather(*(self._lookup_one(h) for h in todo))
        finally:
            self._in_flight.difference_update(todo)

        self._remember_failed(h for h, ts in zip(todo, timestamps) if ts is None)

        placeholders = [
            BlockRecord.placeholder(height, ts)
            for height, ts in zip(todo, timestamps)
            if ts is not None
        ]
        if not placeholders:
            return 0
        try:
            inserted = await self._store.insert_placeholders(placeholders)
        except PersistenceFailure as exc:
            logger.error(f"Backfill insert deferred for {len(placeholders)} blocks: {exc}")
            self._remember_failed(p.height for p in placeholders)
            return 0

        self._placeholders_total += inserted
        logger.info(
            "Backfilled %d/%d missed blocks (%d..%d)",
            inserted, len(todo), todo[0], todo[-1],
        )
        return inserted

    async def _lookup_one(self, height: int) -> Optional[str]:
        async with self._semaphore:
            try:
                return await self._lookup(height)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._metrics.record_error()
                logger.warning(f"Backfill lookup failed for block {height}: {exc}")
                return None

    def _remember_failed(self, heights) -> None:
        self._failed.update(heights)
        if len(self._failed) > self.max_backfill:
            # Keep only the most recent heights
            self._failed = set(sorted(self._failed)[-self.max_backfill:])

    # ── detached execution ──────────────────────────────────

    def schedule(self, prev: Optional[int], curr: int) -> Optional[asyncio.Task]:
        """Start a detached backfill pass when ``curr`` opens a gap."""
        if not self.detect(prev, curr):
            return None
        task = asyncio.create_task(self.backfill(prev, curr), name=f"backfill-{curr}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Backfill task {task.get_name()} failed: {exc!r}")

    async def wait_idle(self) -> None:
        """Wait for every detached pass to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        """Cancel detached passes (shutdown)."""
        tasks: List[asyncio.Task] = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── status ──────────────────────────────────────────────

    def status(self) -> dict:
        return {
            'running_passes': len(self._tasks),
            'in_flight': len(self._in_flight),
            'pending_retry': len(self._failed),
            'placeholders_total': self._placeholders_total,
            'max_backfill': self.max_backfill,
            'concurrency': self.concurrency,
        }
