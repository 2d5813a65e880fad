"""
Retention sweeper: deletes rows older than the retention horizon and
reclaims space afterwards.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from .database import RecordStore
from .errors import PersistenceFailure
from .logger import get_logger
from .utils import timestamp_ago, utc_now

logger = get_logger('retention')


class RetentionSweeper:
    def __init__(
        self,
        store: RecordStore,
        retention_days: int = 7,
        vacuum_threshold: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.retention_days = retention_days
        self.vacuum_threshold = vacuum_threshold
        self._clock = clock
        self._deleted_total = 0

    async def sweep(self) -> int:
        """Delete expired rows; VACUUM when at least ``vacuum_threshold`` went.

        Failures are logged and left for the next scheduled sweep.
        """
        cutoff = timestamp_ago(days=self.retention_days, now=self._clock())
        try:
            deleted = await self._store.delete_older_than(cutoff)
        except PersistenceFailure as exc:
            logger.error(f"Retention sweep deferred: {exc}")
            return 0

        self._deleted_total += deleted
        if deleted:
            logger.info(f"Cleaned up {deleted} blocks older than {self.retention_days} days")
        if deleted >= self.vacuum_threshold and deleted > 0:
            try:
                await self._store.vacuum()
            except Exception as exc:
                logger.error(f"VACUUM after retention sweep failed: {exc}")
        return deleted
