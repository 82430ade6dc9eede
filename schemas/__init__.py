"""
Pydantic models for export bundles and the canonical export schema.

Schemas:
    export: BundleMeta, ExportField, ExportSchema, StagedBatch and the
        CANONICAL_SCHEMA constant

Usage:
    from schemas.export import BundleMeta, CANONICAL_SCHEMA

Example:
    meta = BundleMeta.model_validate({"ID": 7, "Start": 1704067200, "Stop": 1704070800})
    assert meta.start.tzinfo is not None
    assert CANONICAL_SCHEMA.custom_vars.canonical_name == "customvars"
"""

__all__ = [
    "BundleMeta",
    "ExportField",
    "ExportSchema",
    "FieldType",
    "StagedBatch",
    "CANONICAL_SCHEMA",
]
