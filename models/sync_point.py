from sqlalchemy import Column, BigInteger, Integer, DateTime, Index
from datetime import datetime, timezone
from models.base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ExportSync(Base):
    """
    One row per durably loaded batch.

    Purpose:
    - The newest bundle_end_time is the connector's sync point
    - Rows are only ever appended, except when orphan recovery rolls the
      sync point back

    Design:
    - bundle_id is the last bundle of the batch (-1 when unknown)
    - processed_at records when the load was confirmed
    """
    __tablename__ = "export_sync"

    # SQLite only autoincrements INTEGER primary keys
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    bundle_id = Column(BigInteger, nullable=False, default=-1)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    bundle_end_time = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_export_sync_end_time", "bundle_end_time"),
    )
