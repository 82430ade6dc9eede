"""
Additive reconciliation of a destination table against the canonical schema
"""

import logging
from typing import List, Sequence

from schemas.export import ExportField, ExportSchema

logger = logging.getLogger(__name__)


def columns_to_add(schema: ExportSchema, existing_columns: Sequence[str]) -> List[ExportField]:
    """
    Return the canonical fields missing from the table, in canonical order.

    Existing columns are never reordered or dropped, whatever order they are
    in and whether or not they belong to the schema. Matching is
    case-insensitive.
    """
    existing = {c.lower() for c in existing_columns}
    missing = [f for f in schema if f.canonical_name not in existing]
    if missing:
        logger.info(
            f"Found {len(missing)} missing fields: "
            f"{', '.join(f.canonical_name for f in missing)}"
        )
    return missing

