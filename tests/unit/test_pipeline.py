"""
Unit tests for the staged pipeline's queue handling
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from ingestion.pipeline import StagedExportPipeline


def make_pipeline():
    runner = MagicMock()
    return StagedExportPipeline(runner, asyncio.Event(), queue_size=2), runner


class TestQueueHandoff:
    """Test that queued batches are never lost when the pipeline halts"""

    @pytest.mark.asyncio
    async def test_get_returns_none_once_halted(self):
        pipeline, _ = make_pipeline()
        pipeline.halt.set()

        assert await pipeline._get(pipeline.batches) is None

    @pytest.mark.asyncio
    async def test_batch_arriving_with_halt_is_returned_or_left_queued(self):
        pipeline, _ = make_pipeline()
        batch = object()

        getter = asyncio.create_task(pipeline._get(pipeline.batches))
        for _ in range(3):
            await asyncio.sleep(0)
        pipeline.batches.put_nowait(batch)
        pipeline.halt.set()
        result = await getter

        if result is None:
            assert pipeline.batches.get_nowait() is batch
        else:
            assert result is batch
            assert pipeline.batches.empty()

    @pytest.mark.asyncio
    async def test_drain_cleans_up_queued_batches(self):
        pipeline, runner = make_pipeline()
        first, second = object(), object()
        pipeline.batches.put_nowait(first)
        pipeline.batches.put_nowait(second)
        pipeline.groups.put_nowait(["group"])

        pipeline._drain()

        assert [c.args[0] for c in runner.stager.cleanup.call_args_list] == [first, second]
        assert pipeline.batches.empty()
        assert pipeline.groups.empty()
