"""
Durable sync point management with orphaned-record recovery.

The sync point is the stop time of the newest bundle whose rows are known to
be durably committed. It lives in the warehouse sync table, or in a sentinel
object next to the data when the connector runs storage-only.
"""

import logging
from datetime import datetime
from typing import Optional

from core.exceptions import CheckpointError, ETLException
from ingestion.loaders.sql_warehouse import SQLWarehouse, as_utc, start_of_day
from ingestion.loaders.storage import Storage

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Single owner of the sync point.

    Responsibilities:
    - Read the sync point, repairing the destination first when rows newer
      than it are found (a crash between load commit and checkpoint write)
    - Append a new sync point after every confirmed load
    """

    def __init__(
        self,
        start_time: datetime,
        storage: Storage,
        warehouse: Optional[SQLWarehouse] = None,
        storage_only: bool = False
    ):
        if warehouse is None and not storage_only:
            raise ValueError("A warehouse is required unless running storage-only")
        self.start_time = as_utc(start_time)
        self.storage = storage
        self.warehouse = warehouse
        self.storage_only = storage_only
        self._sync_table_ready = False

    async def last_sync_point(self) -> datetime:
        """
        Effective sync point to resume from.

        Raises:
            CheckpointError: the sync point could not be read or repaired
        """
        try:
            if self.storage_only:
                recorded = await self.storage.last_sync_point()
                if recorded is None:
                    logger.info(f"No sync point in storage; starting from {self.start_time.isoformat()}")
                    return self.start_time
                return recorded
            return await self._warehouse_sync_point()
        except CheckpointError:
            raise
        except ETLException as e:
            raise CheckpointError(
                "Failed to read sync point",
                context={"operation": "read"},
                original_exception=e
            )

    async def _ensure_sync_table(self):
        if not self._sync_table_ready:
            await self.warehouse.ensure_sync_table()
            self._sync_table_ready = True

    async def _warehouse_sync_point(self) -> datetime:
        wh = self.warehouse
        await self._ensure_sync_table()

        recorded = await wh.max_sync_point()
        latest = await wh.max_export_start()
        if recorded is None:
            if latest is None:
                logger.info(f"Sync table is empty; starting from {self.start_time.isoformat()}")
                return self.start_time
            return await self._recover_first_batch(latest)

        if latest is None or latest <= recorded:
            return recorded

        logger.warning(
            f"Export rows newer than sync point ({latest.isoformat()} vs {recorded.isoformat()})",
            extra={"error_context": {"sync_point": recorded.isoformat(), "latest_event": latest.isoformat()}}
        )

        if wh.partitioned:
            # Partitions are rewritten whole, so restart with the first bundle of the day
            effective = start_of_day(recorded)
            removed = await wh.delete_sync_points_after(effective)
            logger.info(
                f"Rolled sync point back to {effective.isoformat()}; removed {removed} sync rows"
            )
            return effective

        await wh.delete_export_rows_after(recorded)
        await wh.delete_sync_points_after(recorded)
        return recorded

    async def _recover_first_batch(self, latest: datetime) -> datetime:
        """
        Export rows exist but no sync point was ever recorded: the first batch
        committed and the connector died before checkpointing it.
        """
        wh = self.warehouse
        logger.warning(
            f"Export rows present (latest {latest.isoformat()}) but no sync point recorded",
            extra={"error_context": {"latest_event": latest.isoformat()}}
        )

        if wh.partitioned:
            effective = start_of_day(self.start_time)
            logger.info(f"Restarting from {effective.isoformat()}; the day is replaced on reload")
            return effective

        await wh.delete_export_rows_after(None)
        return self.start_time

    async def save_sync_point(self, stop: datetime, bundle_id: int = -1) -> None:
        """
        Record `stop` as the new sync point. Call only after the data up to
        `stop` is durably in the destination.
        """
        try:
            if self.storage_only:
                await self.storage.save_sync_point(stop)
            else:
                await self._ensure_sync_table()
                await self.warehouse.insert_sync_point(stop, bundle_id)
        except ETLException as e:
            raise CheckpointError(
                "Failed to save sync point",
                context={"operation": "write", "sync_point": stop.isoformat(), "bundle_id": bundle_id},
                original_exception=e
            )
        logger.info(f"Sync point advanced to {as_utc(stop).isoformat()} (bundle {bundle_id})")
