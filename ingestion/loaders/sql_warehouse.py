"""
Load staged batch files into a SQL warehouse.

The export table's columns follow the canonical export schema and are
reconciled additively at startup; the sync table (models.sync_point) records
one row per loaded batch.
"""

import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    inspect,
    insert,
    select,
    text,
)
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import sqltypes

from core.config import settings
from core.exceptions import DatabaseError, LoadError, SchemaCompatibilityError
from ingestion.loaders.storage import Storage
from ingestion.schema_reconciler import columns_to_add
from ingestion.transformers.record_transformer import parse_timestamp, value_to_string
from models.base import Base
from models.sync_point import ExportSync
from schemas.export import EVENT_START_COLUMN, ExportField, ExportSchema, FieldType

logger = logging.getLogger(__name__)


def as_utc(t: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC"""
    if t is None:
        return None
    if isinstance(t, str):
        t = parse_timestamp(t)
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc)


def start_of_day(t: datetime) -> datetime:
    t = as_utc(t)
    return t.replace(hour=0, minute=0, second=0, microsecond=0)


class SQLWarehouse:
    """
    SQL destination backed by a SQLAlchemy async engine.

    Responsibilities:
    - Create or additively widen the export table
    - Load a staged CSV file (read back from storage) in one transaction
    - Keep the sync table and expose the primitives orphan recovery needs
    """

    partitioned = False

    def __init__(
        self,
        engine: AsyncEngine,
        storage: Storage,
        table_name: str = None,
        db_schema: Optional[str] = None,
        varchar_max: int = None
    ):
        self.storage = storage
        self.table_name = table_name or settings.EXPORT_TABLE
        self.db_schema = (db_schema if db_schema is not None else settings.DATABASE_SCHEMA) or None
        self.varchar_max = varchar_max if varchar_max is not None else settings.VARCHAR_MAX

        # The sync table is declared without a schema; route it to ours
        if self.db_schema:
            engine = engine.execution_options(schema_translate_map={None: self.db_schema})
        self.engine = engine

    # ------------------------------------------------------------------
    # Types and formatting
    # ------------------------------------------------------------------

    def column_type(self, field: ExportField):
        if field.field_type == FieldType.INT64:
            return BigInteger()
        if field.field_type == FieldType.TIMESTAMP:
            return DateTime(timezone=True)
        if self.varchar_max > 0:
            return String(self.varchar_max)
        return Text()

    def value_to_string(self, value: Any, is_timestamp: bool) -> str:
        s = value_to_string(value, is_timestamp)
        if not is_timestamp and self.varchar_max > 0 and len(s) >= self.varchar_max:
            s = s[:self.varchar_max - 1]
        return s

    # ------------------------------------------------------------------
    # Export table
    # ------------------------------------------------------------------

    def _qualified_table_name(self, conn) -> str:
        preparer = conn.dialect.identifier_preparer
        name = preparer.quote(self.table_name)
        if self.db_schema:
            return f"{preparer.quote_schema(self.db_schema)}.{name}"
        return name

    def _has_table(self, sync_conn) -> bool:
        return inspect(sync_conn).has_table(self.table_name, schema=self.db_schema)

    def _column_names(self, sync_conn) -> List[str]:
        return [c["name"] for c in inspect(sync_conn).get_columns(self.table_name, schema=self.db_schema)]

    def _reflect(self, sync_conn) -> Table:
        return Table(self.table_name, MetaData(), autoload_with=sync_conn, schema=self.db_schema)

    async def ensure_compatible_table(self, schema: ExportSchema) -> List[ExportField]:
        """
        Create the export table, or add the canonical columns it lacks.

        Returns:
            The fields that were added (all of them for a new table)

        Raises:
            SchemaCompatibilityError: DDL failed
        """
        try:
            async with self.engine.begin() as conn:
                if not await conn.run_sync(self._has_table):
                    await self._create_table(conn, schema)
                    return list(schema)

                existing = await conn.run_sync(self._column_names)
                missing = columns_to_add(schema, existing)
                for field in missing:
                    ddl_type = self.column_type(field).compile(dialect=conn.dialect)
                    await conn.execute(text(
                        f"ALTER TABLE {self._qualified_table_name(conn)} "
                        f"ADD COLUMN {conn.dialect.identifier_preparer.quote(field.canonical_name)} {ddl_type}"
                    ))
                    logger.info(f"Added column {field.canonical_name} ({ddl_type}) to {self.table_name}")
                return missing
        except SQLAlchemyError as e:
            raise SchemaCompatibilityError(
                f"Could not reconcile table {self.table_name}",
                context={"operation": "ALTER", "table_name": self.table_name},
                original_exception=e
            )

    async def _create_table(self, conn: AsyncConnection, schema: ExportSchema):
        logger.info(f"Creating table {self.table_name}")
        table = Table(
            self.table_name,
            MetaData(),
            *[Column(f.canonical_name, self.column_type(f), nullable=True) for f in schema],
            schema=self.db_schema
        )
        await conn.run_sync(table.create)

    async def get_columns(self) -> List[str]:
        """Lower-cased export table columns in table order"""
        try:
            async with self.engine.connect() as conn:
                names = await conn.run_sync(self._column_names)
        except (NoSuchTableError, SQLAlchemyError) as e:
            raise DatabaseError(
                f"Could not read columns of {self.table_name}",
                context={"operation": "INSPECT", "table_name": self.table_name},
                original_exception=e
            )
        if not names:
            raise DatabaseError(
                f"Table {self.table_name} does not exist",
                context={"operation": "INSPECT", "table_name": self.table_name}
            )
        return [n.lower() for n in names]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _convert(column: Column, value: str):
        if value == "":
            return None
        if isinstance(column.type, sqltypes.Integer):
            return int(float(value)) if "." in value or "e" in value.lower() else int(value)
        if isinstance(column.type, sqltypes.DateTime):
            return parse_timestamp(value)
        return value

    def _rows(self, table: Table, body: bytes) -> List[Dict[str, Any]]:
        columns = list(table.columns)
        rows = []
        for line_no, line in enumerate(csv.reader(io.StringIO(body.decode("utf-8"))), start=1):
            if len(line) > len(columns):
                raise LoadError(
                    "Staged row is wider than the export table",
                    context={"line": line_no, "row_width": len(line), "table_width": len(columns)}
                )
            # Short rows predate columns added since; those stay NULL
            line = line + [""] * (len(columns) - len(line))
            try:
                rows.append({
                    col.name: self._convert(col, value)
                    for col, value in zip(columns, line)
                })
            except ValueError as e:
                raise LoadError(
                    f"Staged row {line_no} does not match column types",
                    context={"line": line_no, "table_name": self.table_name},
                    original_exception=e
                )
        return rows

    async def _before_insert(self, conn: AsyncConnection, table: Table, batch_key: datetime):
        """Hook run inside the load transaction before rows are inserted"""
        pass

    async def load_from_staged(self, ref: str, batch_key: datetime) -> int:
        """
        Insert every row of the staged file at `ref` into the export table.

        All rows land in one transaction: either the whole batch is visible
        or none of it is.

        Args:
            ref: Storage reference of the staged CSV file
            batch_key: Start time of the batch's first bundle

        Returns:
            Number of rows inserted
        """
        body = await self.storage.read_file(ref)

        try:
            async with self.engine.begin() as conn:
                table = await conn.run_sync(self._reflect)
                rows = self._rows(table, body)
                await self._before_insert(conn, table, batch_key)
                if rows:
                    await conn.execute(insert(table), rows)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to load {ref} into {self.table_name}",
                context={
                    "operation": "INSERT",
                    "table_name": self.table_name,
                    "ref": ref,
                    "batch_key": batch_key.isoformat(),
                },
                original_exception=e
            )

        logger.info(f"Loaded {len(rows)} rows from {ref} into {self.table_name}")
        return len(rows)

    # ------------------------------------------------------------------
    # Sync table and orphan recovery primitives
    # ------------------------------------------------------------------

    async def _run(self, stmt, operation: str, table_name: str):
        try:
            async with self.engine.begin() as conn:
                return await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"{operation} on {table_name} failed",
                context={"operation": operation, "table_name": table_name},
                original_exception=e
            )

    async def ensure_sync_table(self):
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all, tables=[ExportSync.__table__])
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Could not create sync table",
                context={"operation": "CREATE", "table_name": ExportSync.__tablename__},
                original_exception=e
            )

    async def max_sync_point(self) -> Optional[datetime]:
        result = await self._run(
            select(func.max(ExportSync.bundle_end_time)), "SELECT", ExportSync.__tablename__
        )
        return as_utc(result.scalar())

    async def insert_sync_point(self, stop: datetime, bundle_id: int = -1):
        await self._run(
            insert(ExportSync).values(
                bundle_id=bundle_id,
                processed_at=datetime.now(timezone.utc),
                bundle_end_time=as_utc(stop)
            ),
            "INSERT",
            ExportSync.__tablename__
        )

    async def delete_sync_points_after(self, t: datetime) -> int:
        result = await self._run(
            delete(ExportSync).where(ExportSync.bundle_end_time > as_utc(t)),
            "DELETE",
            ExportSync.__tablename__
        )
        return result.rowcount

    async def max_export_start(self) -> Optional[datetime]:
        """Newest event start in the export table, None when empty or absent"""
        try:
            async with self.engine.connect() as conn:
                if not await conn.run_sync(self._has_table):
                    return None
                table = await conn.run_sync(self._reflect)
                if EVENT_START_COLUMN not in table.c:
                    return None
                result = await conn.execute(select(func.max(table.c[EVENT_START_COLUMN])))
                return as_utc(result.scalar())
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Could not read max({EVENT_START_COLUMN}) from {self.table_name}",
                context={"operation": "SELECT", "table_name": self.table_name},
                original_exception=e
            )

    async def delete_export_rows_after(self, t: Optional[datetime]) -> int:
        """Delete rows whose event start is after `t`; every row when `t` is None"""
        try:
            async with self.engine.begin() as conn:
                table = await conn.run_sync(self._reflect)
                stmt = delete(table)
                if t is not None:
                    stmt = stmt.where(table.c[EVENT_START_COLUMN] > as_utc(t))
                result = await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Could not remove orphaned rows from {self.table_name}",
                context={"operation": "DELETE", "table_name": self.table_name, "after": t.isoformat() if t else None},
                original_exception=e
            )
        logger.info(f"Removed {result.rowcount} orphaned rows from {self.table_name}")
        return result.rowcount


class PartitionedSQLWarehouse(SQLWarehouse):
    """
    Export rows are treated as day partitions keyed on the event start.

    A load whose batch key is exactly midnight UTC opens a new day and
    replaces whatever that day already holds, which is how rows left behind
    by a crash are cleaned up after the sync point is rolled back to the
    start of the day.
    """

    partitioned = True

    async def _before_insert(self, conn: AsyncConnection, table: Table, batch_key: datetime):
        day = start_of_day(batch_key)
        if as_utc(batch_key) != day:
            return
        result = await conn.execute(
            delete(table).where(
                table.c[EVENT_START_COLUMN] >= day,
                table.c[EVENT_START_COLUMN] < day + timedelta(days=1)
            )
        )
        logger.info(f"Replacing partition {day.date().isoformat()}: removed {result.rowcount} rows")
