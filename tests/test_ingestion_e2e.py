"""
End-to-end ingestion tests.

Drives the IngestionService with real buffer, batcher, metrics, backfiller
and an in-memory Record Store; only the upstream clients are faked.

Verifies:
- Predicted + actual for the same height end up in exactly one row
- A height jump yields placeholders and a missed-block count
- Feed failures are counted and never escape a poll
- The live view sees records before they are flushed

Run with:  python -m pytest tests/test_ingestion_e2e.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from gaswatch.connectors.blocknative import PredictedPrices
from gaswatch.connectors.sei_rpc import ChainHead
from gaswatch.core.backfill import GapBackfiller
from gaswatch.core.batcher import WriteBackBatcher
from gaswatch.core.buffer import RecentWindowBuffer
from gaswatch.core.database import RecordStore
from gaswatch.core.errors import IncompleteResponse, UpstreamUnavailable
from gaswatch.core.ingestion import IngestionService
from gaswatch.core.metrics import MetricsTracker
from gaswatch.core.query import RangeQuery

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


async def _lookup(height: int) -> str:
    return f"2024-05-01T11:59:{height % 60:02d}.000Z"


class Pipeline:
    """Real components around fake feed clients."""

    def __init__(self, store: RecordStore):
        self.store = store
        self.metrics = MetricsTracker(clock=_clock)
        self.buffer = RecentWindowBuffer()
        self.batcher = WriteBackBatcher(store)
        self.backfiller = GapBackfiller(store, _lookup, self.metrics)
        self.predictive = AsyncMock()
        self.chain_status = AsyncMock()
        self.evm = AsyncMock()
        self.ingestion = IngestionService(
            self.buffer, self.batcher, self.metrics, self.backfiller,
            predictive=self.predictive, chain_status=self.chain_status, evm=self.evm,
            clock=_clock,
        )


async def _make_pipeline() -> Pipeline:
    store = RecordStore(":memory:")
    await store.connect()
    return Pipeline(store)


class TestMergeByHeight:

    @pytest.mark.asyncio
    async def test_predicted_then_actual_single_row(self):
        p = await _make_pipeline()
        try:
            p.predictive.fetch_block_prices.return_value = PredictedPrices(
                base_fee=1.0, prices={50: 100.0, 70: 105.0, 90: 110.0, 99: 120.5},
            )
            p.chain_status.fetch_latest_block.return_value = ChainHead(500, "2024-05-01T12:00:00.000Z")
            p.evm.block_number.return_value = 500
            p.evm.gas_price_gwei.return_value = 118.0

            await p.ingestion.poll_predicted()
            await p.ingestion.poll_actual()
            await p.batcher.flush()

            assert await p.store.count() == 1
            row = await p.store.get_record(500)
            assert row.confidence_99 == 120.5
            assert row.actual_price == 118.0
            assert row.observed_at == "2024-05-01T12:00:00.000Z"
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_actual_then_predicted_across_flushes(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_actual(500, 118.0)
            await p.batcher.flush()
            p.ingestion.ingest_prediction(500, {99: 120.5}, base_fee=1.0)
            await p.batcher.flush()

            assert await p.store.count() == 1
            row = await p.store.get_record(500)
            assert (row.confidence_99, row.actual_price) == (120.5, 118.0)
            assert row.observed_at == "2024-05-01T12:00:00.000Z"
        finally:
            await p.store.close()


class TestGaps:

    @pytest.mark.asyncio
    async def test_jump_backfills_and_counts_missed(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_actual(10, 1.0)
            p.ingestion.ingest_actual(13, 1.1)
            await p.backfiller.wait_idle()
            await p.batcher.flush()

            assert p.metrics.snapshot().missed_blocks == 2
            assert await p.store.existing_heights(10, 13) == {10, 11, 12, 13}
            assert (await p.store.get_record(11)).is_placeholder()
            assert (await p.store.get_record(13)).actual_price == 1.1
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_first_height_never_backfills(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_actual(1_000_000, 1.0)
            await p.backfiller.wait_idle()
            assert p.backfiller.status()['placeholders_total'] == 0
            assert p.metrics.snapshot().missed_blocks == 0
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_placeholder_filled_by_late_record(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_actual(10, 1.0)
            p.ingestion.ingest_actual(13, 1.1)
            await p.backfiller.wait_idle()
            p.ingestion.ingest_prediction(12, {99: 9.0})
            await p.batcher.flush()

            row = await p.store.get_record(12)
            assert row.confidence_99 == 9.0
            assert row.observed_at == "2024-05-01T11:59:12.000Z"
        finally:
            await p.store.close()


class TestPollFailures:

    @pytest.mark.asyncio
    async def test_unavailable_counts_api_error(self):
        p = await _make_pipeline()
        try:
            p.evm.block_number.side_effect = UpstreamUnavailable("timeout")
            p.evm.gas_price_gwei.return_value = 1.0

            assert await p.ingestion.poll_actual() is None
            snap = p.metrics.snapshot()
            assert snap.api_errors == 1
            assert snap.null_values == 0
            assert len(p.buffer) == 0
            assert len(p.batcher) == 0
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_incomplete_counts_null(self):
        p = await _make_pipeline()
        try:
            p.predictive.fetch_block_prices.side_effect = IncompleteResponse("no estimates")
            p.chain_status.fetch_latest_block.return_value = ChainHead(5, None)

            assert await p.ingestion.poll_predicted() is None
            snap = p.metrics.snapshot()
            assert snap.null_values == 1
            assert snap.api_errors == 0
            assert len(p.batcher) == 0
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self):
        p = await _make_pipeline()
        try:
            p.evm.block_number.side_effect = KeyError("bug")
            p.evm.gas_price_gwei.return_value = 1.0
            with pytest.raises(KeyError):
                await p.ingestion.poll_actual()
        finally:
            await p.store.close()

    @pytest.mark.asyncio
    async def test_missing_confidence_99_counts_null(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_prediction(7, {50: 1.0, 99: None})
            assert p.metrics.snapshot().null_values == 1
            assert p.buffer.get(7).confidence_50 == 1.0
        finally:
            await p.store.close()


class TestLiveRead:

    @pytest.mark.asyncio
    async def test_unflushed_record_visible_in_1h(self):
        p = await _make_pipeline()
        try:
            p.ingestion.ingest_actual(500, 118.0, observed_at="2024-05-01T11:59:59.000Z")
            query = RangeQuery(p.store, p.buffer, p.metrics, clock=_clock)

            result = await query.query('1h')

            assert await p.store.count() == 0
            assert [pt.value for pt in result.actual] == [118.0]
            assert result.metrics.last_processed_height == 500
        finally:
            await p.store.close()
