"""
Tests for failure scenarios and error handling
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import text

from core.exceptions import (
    BackoffExhaustedError,
    BundleDownloadError,
    DatabaseError,
    ResourceNotFoundError,
    StorageError,
)
from ingestion.checkpoint import CheckpointStore
from ingestion.grouping import BundleGrouper
from ingestion.retry import RetryPolicy
from ingestion.runner import ExportRunner
from tests.factories import FakeExportClient, START_TIME, gzip_records, sample_records


def make_runner(client, warehouse, tmp_dir, **kwargs):
    checkpoint = CheckpointStore(start_time=START_TIME, storage=warehouse.storage, warehouse=warehouse)
    return ExportRunner(
        client=client,
        storage=warehouse.storage,
        checkpoint=checkpoint,
        warehouse=warehouse,
        grouper=BundleGrouper.from_flag(False),
        storage_only=False,
        tmp_dir=str(tmp_dir),
        save_as_json=False,
        retry_policy=RetryPolicy(sleep=AsyncMock()),
        **kwargs
    )


async def count_rows(warehouse):
    async with warehouse.engine.connect() as conn:
        return (await conn.execute(text("SELECT count(*) FROM export_rows"))).scalar()


def late_records(meta):
    """Records a few minutes into the bundle, clear of its start boundary"""
    records = sample_records(meta)
    for i, record in enumerate(records):
        record["EventStart"] = (meta.start + timedelta(minutes=10 + i)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return records


@pytest.mark.asyncio
async def test_load_failure_does_not_advance_sync_point(fake_client, warehouse, tmp_dir):
    """
    Test: warehouse load fails, sync point stays put and files are cleaned up
    """
    runner = make_runner(fake_client, warehouse, tmp_dir)
    await runner.init()
    delete_file = AsyncMock(wraps=warehouse.storage.delete_file)
    warehouse.storage.delete_file = delete_file

    with patch.object(
        warehouse, "load_from_staged",
        AsyncMock(side_effect=DatabaseError("disk full", context={"table_name": "export_rows"}))
    ):
        with pytest.raises(DatabaseError):
            await runner.process_next()

    assert await warehouse.max_sync_point() is None
    assert await runner.checkpoint.last_sync_point() == START_TIME
    # Remote copy deleted even though the load failed
    delete_file.assert_awaited_once()
    assert list(tmp_dir.iterdir()) == []
    assert list(warehouse.storage.save_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_download_failure_stops_iteration(bundles, warehouse, tmp_dir):
    """
    Test: a bundle that cannot be fetched halts the iteration after the
    bundles before it were committed
    """
    client = FakeExportClient(bundles, {
        1: gzip_records(sample_records(bundles[0])),
        2: httpx.ConnectError("Connection refused"),
        3: gzip_records(sample_records(bundles[2])),
    })
    runner = make_runner(client, warehouse, tmp_dir)
    await runner.init()

    with pytest.raises(BundleDownloadError):
        await runner.process_next()

    assert await warehouse.max_sync_point() == bundles[0].stop
    assert await count_rows(warehouse) == 2
    assert client.download_calls == [1, 2, 2, 2]
    assert list(tmp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_crash_before_checkpoint_is_recovered(bundles, warehouse, tmp_dir):
    """
    Test: rows committed but sync point not written; the next run removes
    them and reloads the bundle exactly once
    """
    client = FakeExportClient(bundles, {b.id: gzip_records(late_records(b)) for b in bundles})
    runner = make_runner(client, warehouse, tmp_dir)
    await runner.init()

    with patch.object(
        runner.checkpoint, "save_sync_point",
        AsyncMock(side_effect=[None, DatabaseError("connection lost")])
    ):
        with pytest.raises(DatabaseError):
            await runner.process_next()

    # Bundles 1 and 2 are in the table but no sync point was recorded
    assert await count_rows(warehouse) == 4
    assert await warehouse.max_sync_point() is None

    # Bundle 1 was checkpointed before the crash
    await warehouse.insert_sync_point(bundles[0].stop, bundle_id=1)
    assert await runner.process_next() == 2

    assert await count_rows(warehouse) == 6
    assert await warehouse.max_sync_point() == bundles[-1].stop


@pytest.mark.asyncio
async def test_crash_before_first_checkpoint_is_recovered(fake_client, bundles, warehouse, tmp_dir):
    """
    Test: the very first batch commits but its sync point is never written;
    the reload does not duplicate its rows
    """
    runner = make_runner(fake_client, warehouse, tmp_dir)
    await runner.init()

    with patch.object(
        runner.checkpoint, "save_sync_point",
        AsyncMock(side_effect=DatabaseError("connection lost"))
    ):
        with pytest.raises(DatabaseError):
            await runner.process_next()

    assert await count_rows(warehouse) == 2
    assert await warehouse.max_sync_point() is None

    assert await runner.process_next() == 3

    assert await count_rows(warehouse) == 6
    assert await warehouse.max_sync_point() == bundles[-1].stop


@pytest.mark.asyncio
async def test_badly_typed_record_does_not_fail_batch(bundles, warehouse, tmp_dir):
    """
    Test: a record with a non-numeric int64 value is skipped; the rest of
    the bundle loads and the sync point advances
    """
    records = sample_records(bundles[0], count=3)
    records[1]["IndvId"] = "not-a-number"
    client = FakeExportClient(bundles[:1], {1: gzip_records(records)})
    runner = make_runner(client, warehouse, tmp_dir)
    await runner.init()

    assert await runner.process_next() == 1

    assert await count_rows(warehouse) == 2
    assert await warehouse.max_sync_point() == bundles[0].stop


@pytest.mark.asyncio
async def test_remote_delete_failure_is_only_logged(fake_client, bundles, warehouse, tmp_dir):
    runner = make_runner(fake_client, warehouse, tmp_dir)
    await runner.init()
    warehouse.storage.delete_file = AsyncMock(side_effect=StorageError("denied"))

    assert await runner.process_next() == 3
    assert await warehouse.max_sync_point() == bundles[-1].stop


@pytest.mark.asyncio
async def test_backoff_doubles_then_gives_up(fake_client, warehouse, tmp_dir):
    sleep = AsyncMock()
    runner = make_runner(fake_client, warehouse, tmp_dir, backoff_seconds=30, backoff_steps_max=3, sleep=sleep)
    error = RuntimeError("boom")

    await runner.backoff_on_error(error)
    await runner.backoff_on_error(error)
    await runner.backoff_on_error(error)
    with pytest.raises(BackoffExhaustedError) as exc_info:
        await runner.backoff_on_error(error)

    assert [c.args[0] for c in sleep.await_args_list] == [30, 60, 120]
    assert exc_info.value.original_exception is error


@pytest.mark.asyncio
async def test_success_resets_backoff(bundles, warehouse, tmp_dir):
    """
    Test: two failed iterations, then a success; the step counter resets
    """
    client = FakeExportClient(bundles, {b.id: gzip_records(sample_records(b)) for b in bundles})
    client.list_bundles = AsyncMock(side_effect=[
        ResourceNotFoundError("gone", status_code=404),
        httpx.ReadTimeout("slow"),
        bundles,
        [],
    ])
    stop_event = asyncio.Event()
    waits = []

    async def sleep(seconds):
        waits.append(seconds)
        if len(waits) == 3:
            stop_event.set()

    runner = make_runner(
        client, warehouse, tmp_dir,
        backoff_seconds=1, backoff_steps_max=5, check_interval=60, sleep=sleep
    )

    await asyncio.wait_for(runner.run(stop_event), timeout=10)

    assert waits == [1, 2, 60]
    assert runner.backoff_step == 0
    assert await count_rows(warehouse) == 6


@pytest.mark.asyncio
async def test_run_exits_when_backoff_exhausted(warehouse, tmp_dir, bundles):
    client = FakeExportClient(bundles, {})
    client.list_bundles = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
    runner = make_runner(client, warehouse, tmp_dir, backoff_seconds=0, backoff_steps_max=2, sleep=AsyncMock())

    with pytest.raises(BackoffExhaustedError):
        await asyncio.wait_for(runner.run(asyncio.Event()), timeout=10)

    assert client.list_bundles.await_count == 3
