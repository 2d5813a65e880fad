"""
Tests for the Gap Detector / Backfiller.

Verifies:
- 100 -> 105 inserts placeholders for 101..104
- Wide gaps are clamped to the most recent max_backfill heights
- A failed lookup counts an api error and is retried by the next pass
- Heights that already have a row are never looked up again
- Non-gaps (equal, repeated, decreasing heights) are no-ops
- Lookup concurrency stays within the configured bound

Run with:  python -m pytest tests/test_gap_backfill.py -v
"""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from gaswatch.core.backfill import GapBackfiller
from gaswatch.core.database import RecordStore
from gaswatch.core.metrics import MetricsTracker
from gaswatch.core.models import BlockRecord


async def _make_store() -> RecordStore:
    store = RecordStore(":memory:")
    await store.connect()
    return store


def _ts(height: int) -> str:
    return f"2024-05-01T00:{height // 60 % 60:02d}:{height % 60:02d}.000Z"


class RecordingLookup:
    """Async timestamp lookup that records calls and can fail chosen heights."""

    def __init__(self, fail=()):
        self.calls: List[int] = []
        self.fail = set(fail)

    async def __call__(self, height: int) -> str:
        self.calls.append(height)
        if height in self.fail:
            raise ConnectionError(f"block {height} unavailable")
        return _ts(height)


class TestDetect:

    @pytest.mark.parametrize("prev,curr", [(None, 10), (0, 10), (10, 10), (10, 11), (10, 9)])
    def test_non_gaps(self, prev, curr):
        assert list(GapBackfiller.detect(prev, curr)) == []

    def test_gap_is_exclusive_range(self):
        assert list(GapBackfiller.detect(100, 105)) == [101, 102, 103, 104]


class TestBackfill:

    @pytest.mark.asyncio
    async def test_placeholders_for_every_skipped_height(self):
        store = await _make_store()
        try:
            lookup = RecordingLookup()
            backfiller = GapBackfiller(store, lookup, MetricsTracker())

            assert await backfiller.backfill(100, 105) == 4
            assert sorted(lookup.calls) == [101, 102, 103, 104]
            for h in (101, 102, 103, 104):
                row = await store.get_record(h)
                assert row.is_placeholder()
                assert row.observed_at == _ts(h)
            assert await store.get_record(105) is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_wide_gap_is_clamped(self):
        store = await _make_store()
        try:
            metrics = MetricsTracker()
            lookup = RecordingLookup()
            backfiller = GapBackfiller(store, lookup, metrics, max_backfill=10)

            assert await backfiller.backfill(100, 200) == 10
            assert sorted(lookup.calls) == list(range(190, 200))
            assert metrics.snapshot().clamped_blocks == 89
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_failed_lookup_counted_and_retried(self):
        store = await _make_store()
        try:
            metrics = MetricsTracker()
            lookup = RecordingLookup(fail={102})
            backfiller = GapBackfiller(store, lookup, metrics)

            assert await backfiller.backfill(100, 104) == 2
            assert metrics.snapshot().api_errors == 1
            assert await store.get_record(102) is None
            assert backfiller.status()['pending_retry'] == 1

            lookup.fail.clear()
            lookup.calls.clear()
            assert await backfiller.backfill(110, 112) == 2
            assert sorted(lookup.calls) == [102, 111]
            assert (await store.get_record(102)).observed_at == _ts(102)
            assert backfiller.status()['pending_retry'] == 0
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_unfetchable_heights_stay_bounded(self):
        store = await _make_store()
        try:
            lookup = RecordingLookup(fail=set(range(0, 1000)))
            backfiller = GapBackfiller(store, lookup, MetricsTracker(), max_backfill=3)

            prev = 100
            for _ in range(5):
                lookup.calls.clear()
                await backfiller.backfill(prev, prev + 5)
                assert len(lookup.calls) <= 2 * backfiller.max_backfill
                assert backfiller.status()["pending_retry"] <= backfiller.max_backfill
                prev += 5
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_existing_rows_not_looked_up(self):
        store = await _make_store()
        try:
            await store.upsert_records([BlockRecord(height=102, observed_at=_ts(0), actual_price=5.0)])
            lookup = RecordingLookup()
            backfiller = GapBackfiller(store, lookup, MetricsTracker())

            assert await backfiller.backfill(100, 104) == 2
            assert sorted(lookup.calls) == [101, 103]
            assert (await store.get_record(102)).actual_price == 5.0

            lookup.calls.clear()
            assert await backfiller.backfill(100, 104) == 0
            assert lookup.calls == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_non_gap_is_noop(self):
        store = await _make_store()
        try:
            lookup = RecordingLookup()
            backfiller = GapBackfiller(store, lookup, MetricsTracker())
            assert await backfiller.backfill(105, 105) == 0
            assert await backfiller.backfill(105, 100) == 0
            assert lookup.calls == []
            assert backfiller.schedule(105, 106) is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        store = await _make_store()
        try:
            active = 0
            peak = 0

            async def slow_lookup(height: int) -> str:
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return _ts(height)

            backfiller = GapBackfiller(store, slow_lookup, MetricsTracker(), concurrency=3)
            assert await backfiller.backfill(1, 20) == 18
            assert peak <= 3
        finally:
            await store.close()


class TestDetached:

    @pytest.mark.asyncio
    async def test_schedule_runs_in_background(self):
        store = await _make_store()
        try:
            lookup = RecordingLookup()
            backfiller = GapBackfiller(store, lookup, MetricsTracker())

            task = backfiller.schedule(10, 13)
            assert task is not None
            await backfiller.wait_idle()

            assert task.result() == 2
            assert await store.existing_heights(11, 12) == {11, 12}
            assert backfiller.status()['running_passes'] == 0
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_passes(self):
        store = await _make_store()
        try:
            gate = asyncio.Event()

            async def blocked_lookup(height: int) -> str:
                await gate.wait()
                return _ts(height)

            backfiller = GapBackfiller(store, blocked_lookup, MetricsTracker())
            task = backfiller.schedule(10, 20)
            await asyncio.sleep(0)
            await backfiller.cancel()

            assert task.cancelled()
            assert await store.count() == 0
        finally:
            await store.close()
