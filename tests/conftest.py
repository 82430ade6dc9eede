"""
Pytest configuration and fixtures
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ingestion.loaders.sql_warehouse import PartitionedSQLWarehouse, SQLWarehouse
from ingestion.loaders.storage import LocalDiskStorage
from tests.factories import FakeExportClient, gzip_records, make_bundle, sample_records


@pytest.fixture
def bundles():
    """Three hourly bundles on 2024-01-01"""
    day = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [make_bundle(i + 1, day + timedelta(hours=i)) for i in range(3)]


@pytest.fixture
def fake_client(bundles):
    return FakeExportClient(bundles, {b.id: gzip_records(sample_records(b)) for b in bundles})


@pytest.fixture
def tmp_dir(tmp_path):
    path = tmp_path / "tmp"
    path.mkdir()
    return path


@pytest.fixture
def local_storage(tmp_path):
    return LocalDiskStorage(save_dir=str(tmp_path / "exports"))


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite warehouse engine, one database file per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def warehouse(test_engine, local_storage):
    return SQLWarehouse(
        engine=test_engine,
        storage=local_storage,
        table_name="export_rows",
        db_schema="",
        varchar_max=0
    )


@pytest.fixture
def partitioned_warehouse(test_engine, local_storage):
    return PartitionedSQLWarehouse(
        engine=test_engine,
        storage=local_storage,
        table_name="export_rows",
        db_schema="",
        varchar_max=0
    )
