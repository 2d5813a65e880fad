"""
GasWatch Orchestrator
=====================

Wires the feeds, the ingestion core and the query API together and owns
the process lifecycle.

Boot
----
1. Load config, set up logging.
2. Open the Record Store (failure is fatal: ``StartupFailure``).
3. Build buffer, batcher, metrics, backfiller, query, sweeper and clients.
4. Start the query API and the scheduled tasks.

Shutdown
--------
Scheduled tasks are stopped (in-flight polls may finish within the grace
period), detached backfills are cancelled, a best-effort final flush runs,
then HTTP sessions and the store are closed.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Dict, Optional

from .connectors.base import RetryConfig
from .connectors.blocknative import BLOCKNATIVE_URL, SEI_CHAIN_ID, BlocknativeClient
from .connectors.sei_rpc import SEI_EVM_RPC_URL, SEI_STATUS_URL, SeiEvmClient, SeiStatusClient
from .core.backfill import GapBackfiller
from .core.batcher import WriteBackBatcher
from .core.buffer import RecentWindowBuffer
from .core.config import get_feed_config, get_section, load_config
from .core.database import RecordStore
from .core.ingestion import IngestionService
from .core.logger import get_logger, setup_logger
from .core.metrics import MetricsTracker
from .core.query import DEFAULT_MAX_POINTS, RangeQuery
from .core.retention import RetentionSweeper
from .core.scheduler import Scheduler
from .dashboard.web import GasWatchWebServer

_SHUTDOWN_GRACE_S = 5.0


class GasWatchOrchestrator:
    """
    Main GasWatch orchestrator.

    Coordinates:
    - Predictive and authoritative poll loops
    - Buffer eviction, batch flush and retention timers
    - The HTTP query API
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize GasWatch.

        Args:
            config_path: Path to config.yaml (None: $GASWATCH_CONFIG or default)
        """
        self.config = load_config(config_path)

        system = get_section(self.config, 'system')
        setup_logger('gaswatch', level=system.get('log_level', 'INFO'))
        self.logger = get_logger('orchestrator')

        self.db_path: str = system.get('db_path', 'data/gas_prices.db')
        self.scheduler = Scheduler()
        self._stop_event = asyncio.Event()
        self._running = False
        self._stopped = False

        # Built in setup()
        self.store: Optional[RecordStore] = None
        self.buffer: Optional[RecentWindowBuffer] = None
        self.batcher: Optional[WriteBackBatcher] = None
        self.metrics: Optional[MetricsTracker] = None
        self.backfiller: Optional[GapBackfiller] = None
        self.ingestion: Optional[IngestionService] = None
        self.range_query: Optional[RangeQuery] = None
        self.sweeper: Optional[RetentionSweeper] = None
        self.blocknative: Optional[BlocknativeClient] = None
        self.sei_status: Optional[SeiStatusClient] = None
        self.sei_evm: Optional[SeiEvmClient] = None
        self.web: Optional[GasWatchWebServer] = None

    async def setup(self) -> None:
        """Open the store and build every component.

        Raises:
            StartupFailure: the Record Store cannot be opened
        """
        self.logger.info("Setting up GasWatch (db=%s)...", self.db_path)
        self.store = RecordStore(self.db_path)
        await self.store.connect()

        feeds = get_section(self.config, 'feeds')
        retry_cfg = get_section(self.config, 'retry')
        retry = RetryConfig(
            max_attempts=int(retry_cfg.get('max_attempts', 3)),
            backoff_seconds=float(retry_cfg.get('backoff_seconds', 1.0)),
            backoff_multiplier=float(retry_cfg.get('backoff_multiplier', 2.0)),
        )
        timeout = float(feeds.get('timeout_seconds', 5.0))

        blocknative_cfg = get_feed_config(self.config, 'blocknative')
        self.blocknative = BlocknativeClient(
            url=blocknative_cfg.get('url', BLOCKNATIVE_URL),
            chain_id=int(feeds.get('chain_id', SEI_CHAIN_ID)),
            api_key=blocknative_cfg.get('api_key'),
            timeout_seconds=timeout,
            retry=retry,
        )
        sei_cfg = get_feed_config(self.config, 'sei')
        self.sei_status = SeiStatusClient(
            url=sei_cfg.get('status_url', SEI_STATUS_URL),
            timeout_seconds=timeout,
            retry=retry,
        )
        self.sei_evm = SeiEvmClient(
            url=sei_cfg.get('evm_rpc_url', SEI_EVM_RPC_URL),
            timeout_seconds=timeout,
            retry=retry,
        )

        buffer_cfg = get_section(self.config, 'buffer')
        batcher_cfg = get_section(self.config, 'batcher')
        backfill_cfg = get_section(self.config, 'backfill')
        query_cfg = get_section(self.config, 'query')
        retention_cfg = get_section(self.config, 'retention')

        self.metrics = MetricsTracker()
        self.buffer = RecentWindowBuffer(window_seconds=float(buffer_cfg.get('window_seconds', 30.0)))
        self.batcher = WriteBackBatcher(
            self.store, flush_interval=float(batcher_cfg.get('flush_interval', 5.0)),
        )
        self.backfiller = GapBackfiller(
            self.store,
            self.sei_evm.get_block_timestamp,
            self.metrics,
            max_backfill=int(backfill_cfg.get('max_backfill', 100)),
            concurrency=int(backfill_cfg.get('concurrency', 5)),
        )
        self.ingestion = IngestionService(
            self.buffer, self.batcher, self.metrics, self.backfiller,
            predictive=self.blocknative, chain_status=self.sei_status, evm=self.sei_evm,
        )
        self.range_query = RangeQuery(
            self.store, self.buffer, self.metrics,
            max_points=int(query_cfg.get('max_points', DEFAULT_MAX_POINTS)),
        )
        self.sweeper = RetentionSweeper(
            self.store,
            retention_days=int(retention_cfg.get('retention_days', 7)),
            vacuum_threshold=int(retention_cfg.get('vacuum_threshold', 1)),
        )

        dashboard_cfg = get_section(self.config, 'dashboard')
        self.web = GasWatchWebServer(
            self.range_query,
            self.metrics,
            host=dashboard_cfg.get('host', '127.0.0.1'),
            port=int(dashboard_cfg.get('port', 3303)),
            get_status=self._get_status,
        )
        self.logger.info("Setup complete")

    async def run(self) -> None:
        """Start the API and all scheduled tasks, then wait for stop()."""
        self._running = True
        feeds = get_section(self.config, 'feeds')
        buffer_cfg = get_section(self.config, 'buffer')
        retention_cfg = get_section(self.config, 'retention')

        await self.web.start()

        self.scheduler.every(
            'poll-predicted', float(feeds.get('predicted_interval', 5.0)),
            self.ingestion.poll_predicted, run_immediately=True,
        )
        self.scheduler.every(
            'poll-actual', float(feeds.get('actual_interval', 0.5)),
            self.ingestion.poll_actual, run_immediately=True,
        )
        self.scheduler.every(
            'buffer-evict', float(buffer_cfg.get('evict_interval', self.buffer.window_seconds)),
            self._evict_buffer,
        )
        self.scheduler.every('batch-flush', self.batcher.flush_interval, self.batcher.flush)
        self.scheduler.every(
            'retention-sweep', float(retention_cfg.get('sweep_interval', 3600)),
            self.sweeper.sweep, run_immediately=True,
        )

        self.logger.info("GasWatch is running! Press Ctrl+C to stop.")
        await self._stop_event.wait()

    async def _evict_buffer(self) -> None:
        self.buffer.evict()

    async def _get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            'buffer': self.buffer.stats(),
            'batcher': self.batcher.status(),
            'backfill': self.backfiller.status(),
            'tasks': self.scheduler.status(),
            'providers': {
                client.name: client.get_health_status()
                for client in (self.blocknative, self.sei_status, self.sei_evm)
            },
        }
        try:
            status['store'] = await self.store.get_db_stats()
        except Exception as e:
            status['store'] = {'error': str(e)}
        return status

    async def stop(self) -> None:
        """Stop all components gracefully."""
        if self._stopped:
            return
        self._stopped = True
        self.logger.info("Stopping GasWatch...")
        self._running = False

        # Timers first: in-flight polls may finish within the grace period
        await self.scheduler.stop(grace=_SHUTDOWN_GRACE_S)

        if self.backfiller:
            await self.backfiller.cancel()

        if self.web:
            await self.web.stop()

        # Best-effort final flush before the store closes
        if self.batcher and self.store and self.store.connected:
            written = await self.batcher.flush()
            if len(self.batcher):
                self.logger.warning("Final flush left %d records unpersisted", len(self.batcher))
            else:
                self.logger.info("Final flush wrote %d records", written)

        for client in (self.blocknative, self.sei_status, self.sei_evm):
            if client:
                await client.close()

        if self.store:
            await self.store.close()

        self._stop_event.set()
        self.logger.info("GasWatch stopped")


async def main(config_path: Optional[str] = None) -> None:
    """Entry point for GasWatch."""
    gaswatch = GasWatchOrchestrator(config_path)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        asyncio.create_task(gaswatch.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await gaswatch.setup()
        await gaswatch.run()
    finally:
        await gaswatch.stop()


if __name__ == "__main__":
    asyncio.run(main())
