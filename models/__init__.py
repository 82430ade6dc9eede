"""
SQLAlchemy ORM models for the connector's bookkeeping tables.

Models:
    base: Base declarative class
    sync_point: ExportSync, the append-only log of loaded batches whose
        newest bundle_end_time is the sync point

The export table itself is not modelled here: its columns follow the
canonical export schema and are reconciled at runtime
(see ingestion.schema_reconciler).

Usage:
    from models.sync_point import ExportSync
"""

__all__ = [
    "Base",
    "ExportSync",
]
