"""
Export connector pipeline: discover, group, stage, load and checkpoint.

Modules:
    retry: Retry decisions for the rate-limited export API
    grouping: Bundle grouping (one per file, or one file per UTC day)
    schema_reconciler: Additive reconciliation against the canonical schema
    staging: Download bundles and write the local staged file
    checkpoint: Sync point reads and writes with orphaned-record recovery
    runner: The connector loop with exponential backoff
    pipeline: Staged queue variant of the loop
    factory: Build backends and the runner from settings

Subpackages:
    extractors: Export API client
    transformers: Record to row transformation
    loaders: Storage (local disk, S3) and SQL warehouse backends

Architecture:
    Each iteration reads the sync point, lists the bundles published since,
    and for every group stages a file, saves it to storage, loads it and
    only then advances the sync point. A crash at any step leaves either
    nothing behind or rows that the next sync point read removes.

Usage:
    from ingestion.factory import make_runner

    runner = make_runner(settings)
    await runner.run(stop_event)
"""

__all__ = [
    "ExportRunner",
    "StagedExportPipeline",
    "CheckpointStore",
    "BatchStager",
    "BundleGrouper",
    "RetryPolicy",
    "RecordTransformer",
    "ExportClient",
    "LocalDiskStorage",
    "S3Storage",
    "SQLWarehouse",
    "PartitionedSQLWarehouse",
]
