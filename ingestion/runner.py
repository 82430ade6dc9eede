# ============================================================================
# File: ingestion/runner.py
# Description: Export loop orchestrator with checkpointing and backoff
# ============================================================================
"""
Export Runner - drives discover, group, stage, load and checkpoint.

This module provides the long-running connector loop with:
- Resume from the durable sync point after any crash
- Bounded retry of bundle downloads, exponential backoff of whole iterations
- Cleanup of staged and temporary remote files on every path
- A sequential loop and a staged queue pipeline behind the same contract
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from core.config import settings
from core.exceptions import BackoffExhaustedError, ETLException, StorageError
from ingestion.checkpoint import CheckpointStore
from ingestion.extractors.export_client import ExportClient
from ingestion.grouping import BundleGrouper
from ingestion.loaders.sql_warehouse import SQLWarehouse
from ingestion.loaders.storage import Storage
from ingestion.pipeline import StagedExportPipeline
from ingestion.retry import RetryPolicy
from ingestion.staging import BatchStager
from ingestion.transformers.record_transformer import RecordTransformer, value_to_string
from schemas.export import CANONICAL_SCHEMA, BundleMeta, ExportSchema, StagedBatch

logger = logging.getLogger(__name__)


class ExportRunner:
    """
    Export connector orchestrator

    Responsibilities:
    - Reconcile the destination once, before the first checkpoint read
    - Process every bundle newer than the sync point, in order
    - Advance the sync point only after a confirmed load
    - Back off exponentially on failure and give up after too many in a row
    """

    def __init__(
        self,
        client: ExportClient,
        storage: Storage,
        checkpoint: CheckpointStore,
        warehouse: Optional[SQLWarehouse] = None,
        grouper: BundleGrouper = None,
        schema: ExportSchema = CANONICAL_SCHEMA,
        storage_only: bool = None,
        tmp_dir: str = None,
        save_as_json: bool = None,
        retry_policy: RetryPolicy = None,
        check_interval: float = None,
        backoff_seconds: float = None,
        backoff_steps_max: int = None,
        queue_size: int = None,
        sleep: Callable[[float], Awaitable[None]] = None
    ):
        self.client = client
        self.storage = storage
        self.checkpoint = checkpoint
        self.warehouse = warehouse
        self.grouper = grouper or BundleGrouper.from_flag(settings.GROUP_FILES_BY_DAY)
        self.schema = schema
        self.storage_only = settings.STORAGE_ONLY if storage_only is None else storage_only
        self.tmp_dir = tmp_dir
        self.save_as_json = save_as_json
        self.retry_policy = retry_policy

        self.check_interval = settings.CHECK_INTERVAL if check_interval is None else check_interval
        self.backoff_seconds = settings.BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.backoff_steps_max = settings.BACKOFF_STEPS_MAX if backoff_steps_max is None else backoff_steps_max
        self.queue_size = queue_size or settings.PIPELINE_QUEUE_SIZE
        self._sleep = sleep

        if self.warehouse is None and not self.storage_only:
            raise ValueError("A warehouse is required unless running storage-only")

        self.backoff_step = 0
        self.columns: List[str] = []
        self.stager: Optional[BatchStager] = None

    # --------------------------------------------------
    # Setup
    # --------------------------------------------------

    async def init(self):
        """
        Make the destination compatible with the canonical schema and cache
        its column order. Must run once before the first sync point read.
        """
        if self.storage_only:
            self.columns = self.schema.column_names()
            to_string = value_to_string
        else:
            added = await self.warehouse.ensure_compatible_table(self.schema)
            if added:
                logger.info(f"Reconciled export table: {len(added)} columns added")
            self.columns = await self.warehouse.get_columns()
            to_string = self.warehouse.value_to_string

        self.stager = BatchStager(
            client=self.client,
            transformer=RecordTransformer(self.schema, to_string),
            columns=self.columns,
            tmp_dir=self.tmp_dir,
            save_as_json=self.save_as_json,
            retry_policy=self.retry_policy
        )
        logger.info(f"Destination has {len(self.columns)} columns")

    # --------------------------------------------------
    # One iteration
    # --------------------------------------------------

    async def pending_bundles(self, since) -> List[BundleMeta]:
        """Bundles listed since the sync point, minus any it already covers"""
        logger.info(f"Checking for new export files since {since.isoformat()}")
        bundles = await self.client.list_bundles(since)
        pending = [b for b in bundles if b.stop > since]
        if len(pending) < len(bundles):
            logger.info(f"Skipping {len(bundles) - len(pending)} bundles already covered by the sync point")
        return pending

    async def process_next(self) -> int:
        """
        Run one iteration: read the sync point, list, group, then stage,
        load and checkpoint every group in order.

        Returns:
            Number of bundles processed
        """
        if self.stager is None:
            raise ETLException("ExportRunner.init() must be called before processing")

        since = await self.checkpoint.last_sync_point()
        bundles = await self.pending_bundles(since)

        processed = 0
        for group in self.grouper.group(bundles):
            await self.process_group(group)
            processed += len(group)
        return processed

    async def process_group(self, group: Sequence[BundleMeta]):
        mark = time.monotonic()
        batch = await self.stager.stage(list(group))
        try:
            await self.load_batch(batch)
        finally:
            self.stager.cleanup(batch)

        logger.info(
            f"Processing of {len(batch.bundles)} bundles ({batch.record_count} records, "
            f"{batch.skipped_count} skipped) took {time.monotonic() - mark:.2f}s"
        )

    async def load_batch(self, batch: StagedBatch):
        """
        Save the staged file to storage, load it and advance the sync point.

        The temporary remote object is deleted after the load attempt
        whether it succeeded or not; storage-only runs keep it.
        """
        ref = await self.storage.save_file(batch.path)
        last_bundle = batch.bundles[-1].id

        if self.storage_only:
            await self.checkpoint.save_sync_point(batch.stop, last_bundle)
            return

        try:
            await self.warehouse.load_from_staged(ref, batch.start)
            # A crash here leaves rows newer than the sync point; the next
            # read of the sync point finds and removes them
            await self.checkpoint.save_sync_point(batch.stop, last_bundle)
        except ETLException as e:
            logger.error(
                f"Failed to load {describe(batch)}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            raise
        finally:
            await self._delete_remote(ref)

    async def _delete_remote(self, ref: str):
        try:
            await self.storage.delete_file(ref)
        except StorageError as e:
            logger.warning(f"Failed to delete temporary object {ref}: {e.message}")

    # --------------------------------------------------
    # Backoff
    # --------------------------------------------------

    def record_success(self):
        self.backoff_step = 0

    async def backoff_on_error(self, error: BaseException, stop_event: asyncio.Event = None):
        """
        Wait BACKOFF_SECONDS * 2**step before the next attempt.

        Raises:
            BackoffExhaustedError: the step counter reached BACKOFF_STEPS_MAX
        """
        if self.backoff_step >= self.backoff_steps_max:
            raise BackoffExhaustedError(
                f"Reached max retries; giving up after {self.backoff_step} backoff steps",
                context={"backoff_step": self.backoff_step},
                original_exception=error if isinstance(error, Exception) else None
            )

        delay = self.backoff_seconds * (2 ** self.backoff_step)
        logger.error(
            f"Pausing; will retry operation in {delay}s",
            extra={"error_context": {"backoff_step": self.backoff_step, "error": str(error)}}
        )
        self.backoff_step += 1
        await self.wait(delay, stop_event)

    async def wait(self, seconds: float, stop_event: asyncio.Event = None):
        """Sleep for `seconds`, returning early when `stop_event` is set"""
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        if stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # --------------------------------------------------
    # Loops
    # --------------------------------------------------

    async def run(self, stop_event: asyncio.Event = None):
        """
        Sequential loop: process, then idle CHECK_INTERVAL when nothing was
        pending or loop straight away when something was.
        """
        stop_event = stop_event or asyncio.Event()
        await self.init()

        while not stop_event.is_set():
            try:
                count = await self.process_next()
            except Exception as e:
                logger.error(
                    f"Iteration failed: {e}",
                    extra={"error_context": e.to_dict() if isinstance(e, ETLException) else {"error": str(e)}}
                )
                await self.backoff_on_error(e, stop_event)
                continue

            self.record_success()
            if count == 0:
                logger.info(f"No exports pending; sleeping {self.check_interval}s")
                await self.wait(self.check_interval, stop_event)

        logger.info("Export loop stopped")

    async def run_staged(self, stop_event: asyncio.Event = None):
        """
        Same contract as run(), with download, grouping and staging running
        as concurrent queue stages. Any stage error tears the pipeline down;
        it is rebuilt from the sync point after the backoff.
        """
        stop_event = stop_event or asyncio.Event()
        await self.init()

        while not stop_event.is_set():
            pipeline = StagedExportPipeline(self, stop_event, queue_size=self.queue_size)
            try:
                await pipeline.run()
            except Exception as e:
                logger.error(f"Staged pipeline failed: {e}")
                await self.backoff_on_error(e, stop_event)

        logger.info("Staged export pipeline stopped")


def describe(batch: StagedBatch) -> str:
    if len(batch.bundles) == 1:
        return batch.first.describe()
    return (
        f"bundles {batch.bundle_ids[0]}..{batch.bundle_ids[-1]} "
        f"(start: {batch.start.isoformat()}, stop: {batch.stop.isoformat()})"
    )
