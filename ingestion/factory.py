"""
Build the connector's backends from settings
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from core.config import Settings, settings as default_settings
from core.database import make_engine
from ingestion.checkpoint import CheckpointStore
from ingestion.extractors.export_client import ExportClient
from ingestion.grouping import BundleGrouper
from ingestion.loaders.sql_warehouse import PartitionedSQLWarehouse, SQLWarehouse
from ingestion.loaders.storage import LocalDiskStorage, S3Storage, Storage
from ingestion.retry import RetryPolicy
from ingestion.runner import ExportRunner

logger = logging.getLogger(__name__)


def make_storage(conf: Settings = None) -> Storage:
    conf = conf or default_settings
    if conf.STORAGE_PROVIDER == "s3":
        logger.info(f"Using s3 storage (bucket: {conf.S3_BUCKET})")
        return S3Storage(
            bucket=conf.S3_BUCKET,
            region=conf.S3_REGION,
            endpoint_url=conf.S3_ENDPOINT_URL,
            file_prefix=conf.FILE_PREFIX
        )
    logger.info(f"Using local disk storage (dir: {conf.LOCAL_SAVE_DIR})")
    return LocalDiskStorage(
        save_dir=conf.LOCAL_SAVE_DIR,
        file_prefix=conf.FILE_PREFIX,
        use_start_time=conf.LOCAL_USE_START_TIME
    )


def make_warehouse(
    storage: Storage,
    conf: Settings = None,
    engine: AsyncEngine = None
) -> Optional[SQLWarehouse]:
    """None when the connector runs storage-only"""
    conf = conf or default_settings
    if conf.STORAGE_ONLY or conf.WAREHOUSE_PROVIDER == "none":
        return None

    cls = PartitionedSQLWarehouse if conf.WAREHOUSE_PROVIDER == "partitioned_sql" else SQLWarehouse
    return cls(
        engine=engine or make_engine(conf.DATABASE_URL),
        storage=storage,
        table_name=conf.EXPORT_TABLE,
        db_schema=conf.DATABASE_SCHEMA,
        varchar_max=conf.VARCHAR_MAX
    )


def make_runner(
    conf: Settings = None,
    client: ExportClient = None,
    engine: AsyncEngine = None
) -> ExportRunner:
    """Wire client, storage, warehouse and checkpoint store into a runner"""
    conf = conf or default_settings
    storage = make_storage(conf)
    warehouse = make_warehouse(storage, conf, engine)
    storage_only = warehouse is None

    client = client or ExportClient(
        base_url=conf.EXPORT_API_URL,
        api_token=conf.EXPORT_API_TOKEN,
        timeout=conf.HTTP_TIMEOUT
    )
    checkpoint = CheckpointStore(
        start_time=conf.START_TIME,
        storage=storage,
        warehouse=warehouse,
        storage_only=storage_only
    )

    return ExportRunner(
        client=client,
        storage=storage,
        checkpoint=checkpoint,
        warehouse=warehouse,
        grouper=BundleGrouper.from_flag(conf.GROUP_FILES_BY_DAY),
        storage_only=storage_only,
        tmp_dir=conf.TMP_DIR,
        save_as_json=conf.SAVE_AS_JSON,
        retry_policy=RetryPolicy(max_attempts=conf.MAX_ATTEMPTS, default_wait=conf.DEFAULT_RETRY_AFTER),
        check_interval=conf.CHECK_INTERVAL,
        backoff_seconds=conf.BACKOFF_SECONDS,
        backoff_steps_max=conf.BACKOFF_STEPS_MAX,
        queue_size=conf.PIPELINE_QUEUE_SIZE
    )
