"""
Pydantic models for export bundles and the canonical export schema
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import enum

from pydantic import BaseModel, Field, validator

from core.exceptions import SchemaValidationError


class FieldType(str, enum.Enum):
    """Column types understood by every destination"""
    INT64 = "int64"
    STRING = "string"
    TIMESTAMP = "timestamp"


class BundleMeta(BaseModel):
    """
    Metadata about one immutable export bundle.

    The list endpoint reports `Start`/`Stop` as Unix seconds; they are
    kept here as UTC datetimes.
    """

    id: int = Field(..., alias="ID")
    start: datetime = Field(..., alias="Start")
    stop: datetime = Field(..., alias="Stop")

    @validator("start", "stop", pre=True)
    def parse_epoch(cls, v):
        if isinstance(v, (int, float)):
            return datetime.fromtimestamp(v, tz=timezone.utc)
        return v

    @validator("start", "stop")
    def as_utc(cls, v):
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @validator("stop")
    def stop_not_before_start(cls, v, values):
        start = values.get("start")
        if start is not None and v < start:
            raise ValueError("bundle stop precedes start")
        return v

    def describe(self) -> str:
        return f"bundle {self.id} (start: {self.start.isoformat()}, stop: {self.stop.isoformat()})"

    class Config:
        frozen = True
        populate_by_name = True


class ExportField(BaseModel):
    """One column of the canonical export schema"""

    canonical_name: str
    display_name: str
    field_type: FieldType
    is_custom_vars: bool = False

    @validator("canonical_name")
    def lower_name(cls, v):
        return v.lower()

    @property
    def is_timestamp(self) -> bool:
        return self.field_type == FieldType.TIMESTAMP

    class Config:
        frozen = True


class ExportSchema:
    """
    Ordered, append-only list of export fields.

    Exactly one field aggregates the record's custom variables.
    """

    def __init__(self, fields: List[ExportField]):
        aggregates = [f for f in fields if f.is_custom_vars]
        if len(aggregates) != 1:
            raise SchemaValidationError(
                "Export schema must have exactly one custom vars field",
                context={"custom_vars_fields": [f.canonical_name for f in aggregates]}
            )
        names = [f.canonical_name for f in fields]
        if len(set(names)) != len(names):
            raise SchemaValidationError("Export schema has duplicate field names")

        self.fields = list(fields)
        self.custom_vars = aggregates[0]
        self._by_name = {f.canonical_name: f for f in self.fields}

    def __iter__(self):
        return iter(self.fields)

    def __len__(self):
        return len(self.fields)

    def get(self, name: str) -> Optional[ExportField]:
        return self._by_name.get(name.lower())

    def column_names(self) -> List[str]:
        return [f.canonical_name for f in self.fields]

    def known_names(self) -> set:
        """Lower-cased names of the fields records may supply directly"""
        return {f.canonical_name for f in self.fields if not f.is_custom_vars}

    def extend(self, fields: List[ExportField]) -> "ExportSchema":
        """Return a new schema with fields appended"""
        return ExportSchema(self.fields + list(fields))


def _field(name: str, field_type: FieldType) -> ExportField:
    return ExportField(canonical_name=name, display_name=name, field_type=field_type)


CANONICAL_SCHEMA = ExportSchema([
    _field("IndvId", FieldType.INT64),
    _field("UserId", FieldType.INT64),
    _field("SessionId", FieldType.INT64),
    _field("PageId", FieldType.INT64),
    _field("UserCreated", FieldType.TIMESTAMP),
    _field("UserAppKey", FieldType.STRING),
    _field("UserDisplayName", FieldType.STRING),
    _field("UserEmail", FieldType.STRING),
    _field("EventStart", FieldType.TIMESTAMP),
    _field("EventType", FieldType.STRING),
    _field("EventCustomName", FieldType.STRING),
    _field("EventTargetText", FieldType.STRING),
    _field("EventTargetSelector", FieldType.STRING),
    _field("EventModFrustrated", FieldType.INT64),
    _field("EventModDead", FieldType.INT64),
    _field("EventModError", FieldType.INT64),
    _field("EventModSuspicious", FieldType.INT64),
    _field("SessionStart", FieldType.TIMESTAMP),
    _field("PageStart", FieldType.TIMESTAMP),
    _field("PageDuration", FieldType.INT64),
    _field("PageActiveDuration", FieldType.INT64),
    _field("PageUrl", FieldType.STRING),
    _field("PageRefererUrl", FieldType.STRING),
    _field("PageIp", FieldType.STRING),
    _field("PageLatLong", FieldType.STRING),
    _field("PageUserAgent", FieldType.STRING),
    _field("PageBrowser", FieldType.STRING),
    _field("PageDevice", FieldType.STRING),
    _field("PagePlatform", FieldType.STRING),
    _field("PageOperatingSystem", FieldType.STRING),
    _field("PageScreenWidth", FieldType.INT64),
    _field("PageScreenHeight", FieldType.INT64),
    _field("PageViewportWidth", FieldType.INT64),
    _field("PageViewportHeight", FieldType.INT64),
    _field("PageNumInfos", FieldType.INT64),
    _field("PageNumWarnings", FieldType.INT64),
    _field("PageNumErrors", FieldType.INT64),
    _field("PageClusterId", FieldType.INT64),
    _field("LoadDomContentTime", FieldType.INT64),
    _field("LoadEventTime", FieldType.INT64),
    _field("LoadFirstPaintTime", FieldType.INT64),
    ExportField(
        canonical_name="CustomVars",
        display_name="CustomVars",
        field_type=FieldType.STRING,
        is_custom_vars=True,
    ),
])

# Rows are partitioned and checked for orphans on this column
EVENT_START_COLUMN = "eventstart"


class StagedBatch(BaseModel):
    """A group of bundles written to one local staged file"""

    bundles: List[BundleMeta]
    path: Path
    record_count: int = 0
    skipped_count: int = 0

    @property
    def first(self) -> BundleMeta:
        return self.bundles[0]

    @property
    def start(self) -> datetime:
        return self.bundles[0].start

    @property
    def stop(self) -> datetime:
        return max(b.stop for b in self.bundles)

    @property
    def bundle_ids(self) -> List[int]:
        return [b.id for b in self.bundles]
