"""
Staged export pipeline: metadata fetch, grouping and staging run as
concurrent asyncio tasks joined by bounded queues.

    fetch_metadata -> pages -> group_bundles -> groups -> stage_groups -> batches -> runner

The runner consumes the batch queue and stays the only writer of the sync
point. Queues are FIFO, so batches arrive in non-decreasing start order.
Any stage error halts every task; staged files still queued are removed and
the error is raised to the runner, which backs off and rebuilds the pipeline
from the sync point.
"""

import asyncio
import logging
from typing import Any, List, Optional

from schemas.export import BundleMeta, StagedBatch

logger = logging.getLogger(__name__)


class StagedExportPipeline:
    """
    One run of the staged export loop, torn down on stop or on the first error

    Responsibilities:
    - Fetch bundle listings from the sync point onward, one page at a time
    - Split pages into load groups and stage each group to a local file
    - Hand staged batches to the runner in order and clean up whatever is left
    """

    def __init__(self, runner, stop_event: asyncio.Event, queue_size: int = 4):
        self.runner = runner
        self.stop_event = stop_event
        self.halt = asyncio.Event()
        self.pages: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.groups: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.batches: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.error: Optional[BaseException] = None

    # --------------------------------------------------
    # Queue helpers that give up when the pipeline halts
    # --------------------------------------------------

    async def _race(self, operation) -> Any:
        task = asyncio.ensure_future(operation)
        halted = asyncio.ensure_future(self.halt.wait())
        try:
            done, _ = await asyncio.wait({task, halted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            halted.cancel()
        if task in done:
            return True, task.result()
        task.cancel()
        return False, None

    async def _get(self, queue: asyncio.Queue):
        ok, item = await self._race(queue.get())
        return item if ok else None

    async def _put(self, queue: asyncio.Queue, item) -> bool:
        ok, _ = await self._race(queue.put(item))
        return ok

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self.halt.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # --------------------------------------------------
    # Stages
    # --------------------------------------------------

    async def fetch_metadata(self):
        since = await self.runner.checkpoint.last_sync_point()
        while not self.halt.is_set():
            page: List[BundleMeta] = await self.runner.pending_bundles(since)
            if not page:
                logger.info(f"No exports pending; sleeping {self.runner.check_interval}s")
                await self._idle(self.runner.check_interval)
                continue
            if not await self._put(self.pages, page):
                return
            since = max(b.stop for b in page)

    async def group_bundles(self):
        while not self.halt.is_set():
            page = await self._get(self.pages)
            if page is None:
                return
            for group in self.runner.grouper.split(page):
                if not await self._put(self.groups, group):
                    return

    async def stage_groups(self):
        while not self.halt.is_set():
            group = await self._get(self.groups)
            if group is None:
                return
            batch = await self.runner.stager.stage(group)
            if not await self._put(self.batches, batch):
                self.runner.stager.cleanup(batch)
                return

    async def _guard(self, name: str, coro):
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Pipeline stage {name} failed: {e}")
            if self.error is None:
                self.error = e
            self.halt.set()

    async def _watch_stop(self):
        await self.stop_event.wait()
        self.halt.set()

    # --------------------------------------------------
    # Driver
    # --------------------------------------------------

    async def run(self):
        """
        Load batches as they come out of the stages until the stop event is
        set or a stage fails.

        Raises:
            Exception: the first error raised by any stage or by a load
        """
        tasks = [
            asyncio.create_task(self._watch_stop()),
            asyncio.create_task(self._guard("fetch_metadata", self.fetch_metadata())),
            asyncio.create_task(self._guard("group_bundles", self.group_bundles())),
            asyncio.create_task(self._guard("stage_groups", self.stage_groups())),
        ]

        try:
            while not self.halt.is_set():
                batch: StagedBatch = await self._get(self.batches)
                if batch is None:
                    break
                try:
                    await self.runner.load_batch(batch)
                finally:
                    self.runner.stager.cleanup(batch)
                self.runner.record_success()
        finally:
            self.halt.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._drain()

        if self.error is not None:
            raise self.error

    def _drain(self):
        while not self.batches.empty():
            self.runner.stager.cleanup(self.batches.get_nowait())
        for queue in (self.pages, self.groups):
            while not queue.empty():
                queue.get_nowait()
