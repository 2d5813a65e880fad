"""
GasWatch Ingestion Service
==========================

The two poll loops and the shared ingest path.

Predictive poll (~5 s)
    Blocknative estimate + Tendermint head, fetched concurrently.  The
    prediction is filed under the current chain height with the chain's
    block time.

Authoritative poll (sub-second)
    EVM ``eth_blockNumber`` + ``eth_gasPrice``.  A jump of more than one
    height schedules a detached backfill pass before the new record is
    ingested.

Every record goes to the Recent Window Buffer and the Write-Back Batcher,
and the Metrics Tracker is updated synchronously.

Failure policy
--------------
* ``UpstreamUnavailable``: ``api_errors`` += 1, cycle skipped.
* ``IncompleteResponse``: ``null_values`` += 1, nothing written.
Neither propagates, so a poll loop never dies on feed trouble.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple

from ..connectors.blocknative import BlocknativeClient
from ..connectors.sei_rpc import SeiEvmClient, SeiStatusClient
from .backfill import GapBackfiller
from .batcher import WriteBackBatcher
from .buffer import RecentWindowBuffer
from .errors import IncompleteResponse, UpstreamUnavailable
from .logger import get_logger
from .metrics import MetricsTracker
from .models import BlockRecord
from .utils import to_iso, utc_now

logger = get_logger('ingestion')


class IngestionService:
    """Feeds partial records into the buffer, the batcher and the metrics."""

    def __init__(
        self,
        buffer: RecentWindowBuffer,
        batcher: WriteBackBatcher,
        metrics: MetricsTracker,
        backfiller: GapBackfiller,
        predictive: Optional[BlocknativeClient] = None,
        chain_status: Optional[SeiStatusClient] = None,
        evm: Optional[SeiEvmClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._buffer = buffer
        self._batcher = batcher
        self._metrics = metrics
        self._backfiller = backfiller
        self._predictive = predictive
        self._chain_status = chain_status
        self._evm = evm
        self._clock = clock
        self._last_actual_height: Optional[int] = None

    @property
    def last_actual_height(self) -> Optional[int]:
        return self._last_actual_height

    # ── ingest path ─────────────────────────────────────────

    def ingest(self, record: BlockRecord) -> BlockRecord:
        """Merge ``record`` into the buffer and stage it for persistence."""
        if record.observed_at is None:
            record = BlockRecord.placeholder(record.height, to_iso(self._clock())).merge(record)
        merged = self._buffer.put(record)
        self._batcher.stage(record)
        return merged

    def ingest_prediction(
        self,
        height: int,
        prices: Mapping[int, Optional[float]],
        base_fee: Optional[float] = None,
        observed_at: Optional[str] = None,
    ) -> BlockRecord:
        record = BlockRecord.from_prediction(height, observed_at, base_fee, prices)
        merged = self.ingest(record)
        self._metrics.observe(record.confidence_99)
        return merged

    def ingest_actual(
        self,
        height: int,
        price: Optional[float],
        observed_at: Optional[str] = None,
    ) -> BlockRecord:
        prev = self._last_actual_height
        self._backfiller.schedule(prev, height)
        merged = self.ingest(BlockRecord(height=height, observed_at=observed_at, actual_price=price))
        self._metrics.record(height, price)
        self._last_actual_height = height if prev is None else max(prev, height)
        return merged

    # ── poll loops ──────────────────────────────────────────

    async def poll_predicted(self) -> Optional[BlockRecord]:
        """One predictive-feed cycle."""
        results = await asyncio.gather(
            self._predictive.fetch_block_prices(),
            self._chain_status.fetch_latest_block(),
            return_exceptions=True,
        )
        if not self._check_results('predicted', results):
            return None
        estimate, head = results
        return self.ingest_prediction(
            head.height,
            estimate.prices,
            base_fee=estimate.base_fee,
            observed_at=head.block_time,
        )

    async def poll_actual(self) -> Optional[BlockRecord]:
        """One authoritative-feed cycle."""
        results = await asyncio.gather(
            self._evm.block_number(),
            self._evm.gas_price_gwei(),
            return_exceptions=True,
        )
        if not self._check_results('actual', results):
            return None
        height, price = results
        return self.ingest_actual(height, price)

    def _check_results(self, feed: str, results: Tuple) -> bool:
        """Account for feed failures; re-raise anything unexpected."""
        errors = [r for r in results if isinstance(r, BaseException)]
        if not errors:
            return True
        for error in errors:
            if not isinstance(error, (UpstreamUnavailable, IncompleteResponse)):
                raise error
        unavailable = [e for e in errors if isinstance(e, UpstreamUnavailable)]
        if unavailable:
            self._metrics.record_error()
            logger.warning(f"{feed} poll skipped, upstream unavailable: {unavailable[0]}")
        else:
            self._metrics.record_null()
            logger.info(f"{feed} poll returned incomplete data: {errors[0]}")
        return False
