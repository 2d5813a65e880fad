"""
Tests for the Range Query & Sampler.

Verifies:
- Unknown ranges and confidence levels are rejected before any read
- Series never exceed max_points
- Sampling is deterministic
- The 1h view includes buffered records before they are flushed
- A store failure degrades to an empty (or buffer-only) result

Run with:  python -m pytest tests/test_range_query.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from gaswatch.core.buffer import RecentWindowBuffer
from gaswatch.core.database import RecordStore
from gaswatch.core.errors import InvalidQuery, PersistenceFailure
from gaswatch.core.metrics import MetricsTracker
from gaswatch.core.models import BlockRecord
from gaswatch.core.query import (
    RangeQuery,
    parse_confidence,
    parse_timeframe,
    sample_rows,
    sample_stride,
)
from gaswatch.core.utils import to_iso

NOW = datetime(2024, 5, 8, 12, 0, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


async def _make_store() -> RecordStore:
    store = RecordStore(":memory:")
    await store.connect()
    return store


def _rows(count: int, step_seconds: float = 1.0):
    start = NOW - timedelta(seconds=count * step_seconds)
    return [
        BlockRecord(
            height=1_000 + i,
            observed_at=to_iso(start + timedelta(seconds=i * step_seconds)),
            confidence_99=float(i),
            actual_price=float(i) / 2,
        )
        for i in range(count)
    ]


class TestValidation:

    @pytest.mark.parametrize("value", ["2w", "", None, "1H", "60m"])
    def test_unknown_timeframe(self, value):
        with pytest.raises(InvalidQuery):
            parse_timeframe(value)

    @pytest.mark.parametrize("value", ["75", "abc", None, 100])
    def test_unknown_confidence(self, value):
        with pytest.raises(InvalidQuery):
            parse_confidence(value)

    def test_confidence_accepts_strings(self):
        assert parse_confidence("90") == 90

    @pytest.mark.asyncio
    async def test_invalid_range_reads_nothing(self):
        store = MagicMock()
        store.fetch_since = AsyncMock()
        buffer = MagicMock()
        query = RangeQuery(store, buffer, MetricsTracker(), clock=_clock)

        with pytest.raises(InvalidQuery):
            await query.query("2w")

        store.fetch_since.assert_not_called()
        buffer.recent.assert_not_called()


class TestSampling:

    def test_stride_uses_base_rate_when_small(self):
        assert sample_stride(100, '6h', 2000) == 30
        assert sample_stride(0, '1h', 2000) == 1

    def test_stride_grows_with_row_count(self):
        assert sample_stride(10_000, '1h', 2000) == 5
        assert sample_stride(10_001, '1h', 2000) == 6

    @pytest.mark.parametrize("count", [1, 1999, 2000, 2001, 7200, 25_000])
    def test_output_bounded(self, count):
        rows = _rows(count, step_seconds=0.1)
        assert len(sample_rows(rows, '1h', 2000)) <= 2000

    def test_keeps_every_nth_row(self):
        rows = _rows(100)
        sampled = sample_rows(rows, '6h', 2000)
        assert [r.height for r in sampled] == [1000, 1030, 1060, 1090]


class TestQuery:

    @pytest.mark.asyncio
    async def test_result_shape_and_determinism(self):
        store = await _make_store()
        try:
            await store.upsert_records(_rows(5000, step_seconds=0.5))
            query = RangeQuery(store, RecentWindowBuffer(), MetricsTracker(), max_points=1000, clock=_clock)

            first = await query.query('1h')
            second = await query.query('1h')

            assert first.to_dict() == second.to_dict()
            assert len(first.predicted) <= 1000
            assert len(first.actual) == len(first.predicted)
            body = first.to_dict()
            assert set(body) == {'range', 'confidence', 'predicted', 'actual', 'metrics'}
            assert body['range'] == '1h'
            assert body['confidence'] == 99
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_confidence_selects_column(self):
        store = await _make_store()
        try:
            await store.upsert_records([
                BlockRecord(height=1, observed_at=to_iso(NOW - timedelta(minutes=1)),
                            confidence_50=1.0, confidence_99=9.0),
            ])
            query = RangeQuery(store, RecentWindowBuffer(), MetricsTracker(), clock=_clock)
            result = await query.query('6h', confidence='50')
            assert [p.value for p in result.predicted] == [1.0]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_timeframe_excludes_old_rows(self):
        store = await _make_store()
        try:
            await store.upsert_records([
                BlockRecord(height=1, observed_at=to_iso(NOW - timedelta(hours=2)), actual_price=1.0),
                BlockRecord(height=2, observed_at=to_iso(NOW - timedelta(minutes=5)), actual_price=2.0),
            ])
            query = RangeQuery(store, RecentWindowBuffer(), MetricsTracker(), clock=_clock)
            assert [p.height for p in (await query.query('1h')).actual] == [2]
            assert [p.height for p in (await query.query('6h')).actual] == [1]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_live_view_includes_unflushed_buffer(self):
        store = await _make_store()
        try:
            ts = to_iso(NOW - timedelta(seconds=2))
            await store.upsert_records([BlockRecord(height=500, observed_at=ts, confidence_99=120.5)])
            buffer = RecentWindowBuffer()
            buffer.put(BlockRecord(height=500, observed_at=ts, actual_price=118.0))
            buffer.put(BlockRecord(height=501, observed_at=to_iso(NOW), actual_price=119.0))
            query = RangeQuery(store, buffer, MetricsTracker(), clock=_clock)

            result = await query.query('1h')

            assert [p.height for p in result.actual] == [500, 501]
            assert [p.value for p in result.actual] == [118.0, 119.0]
            assert result.predicted[0].value == 120.5
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_longer_ranges_skip_buffer(self):
        store = await _make_store()
        try:
            buffer = RecentWindowBuffer()
            buffer.put(BlockRecord(height=501, observed_at=to_iso(NOW), actual_price=119.0))
            query = RangeQuery(store, buffer, MetricsTracker(), clock=_clock)
            assert (await query.query('24h')).actual == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_store_failure_degrades_to_buffer(self):
        store = MagicMock()
        store.fetch_since = AsyncMock(side_effect=PersistenceFailure("database is locked"))
        buffer = RecentWindowBuffer()
        buffer.put(BlockRecord(height=7, observed_at=to_iso(NOW), actual_price=1.0))
        query = RangeQuery(store, buffer, MetricsTracker(), clock=_clock)

        live = await query.query('1h')
        assert [p.height for p in live.actual] == [7]

        longer = await query.query('7d')
        assert longer.predicted == [] and longer.actual == []
