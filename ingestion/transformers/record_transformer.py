"""
Transform raw export records into rows ordered like the destination table
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from core.exceptions import RecordTransformError
from schemas.export import ExportSchema, FieldType

logger = logging.getLogger(__name__)

# Fixed microsecond precision, always UTC
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

ValueToString = Callable[[Any, bool], str]


def parse_timestamp(value: Any):
    """Parse an ISO-8601 timestamp (trailing Z accepted) into an aware UTC datetime"""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def value_to_string(value: Any, is_timestamp: bool) -> str:
    """
    Default conversion of a record value to its staged-file text.

    Timestamps are normalised to TIMESTAMP_FORMAT (unparsable ones become
    empty); strings lose newlines, carriage returns and NULs so that one
    record stays one line.
    """
    if value is None:
        return ""
    if is_timestamp:
        try:
            return parse_timestamp(value).strftime(TIMESTAMP_FORMAT)
        except (TypeError, ValueError):
            logger.debug(f"Unparsable timestamp {value!r}; writing empty value")
            return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))

    s = str(value)
    s = s.replace("\n", " ").replace("\r", " ")
    return s.replace("\x00", "")


class RecordTransformer:
    """
    Map one record onto an ordered list of destination columns.

    Keys that match a non-aggregate schema field (case-insensitively) are
    "known"; everything else is folded into the custom vars column as a
    JSON object. Columns the record does not supply are written empty.
    """

    def __init__(self, schema: ExportSchema, to_string: ValueToString = value_to_string):
        self.schema = schema
        self.to_string = to_string
        self._known = schema.known_names()

    def transform(self, record: Dict[str, Any], columns: Sequence[str]) -> List[str]:
        """
        Args:
            record: One decoded export record
            columns: Lower-cased destination column names, in table order

        Returns:
            Exactly len(columns) strings

        Raises:
            RecordTransformError: custom vars could not be serialized, or an
                int64 field holds something that is not an integer
        """
        known: Dict[str, Any] = {}
        custom: Dict[str, Any] = {}

        for key, value in record.items():
            lower_key = key.lower()
            if lower_key in self._known:
                known[lower_key] = value
            else:
                custom[key] = value

        line = []
        for col in columns:
            field = self.schema.get(col)
            if field is None:
                # Column in the table that the export does not populate
                line.append("")
            elif field.is_custom_vars:
                line.append(self._custom_vars(custom))
            elif known.get(field.canonical_name) is not None:
                value = known[field.canonical_name]
                if field.field_type == FieldType.INT64:
                    value = self._int64(field.canonical_name, value)
                line.append(self.to_string(value, field.field_type == FieldType.TIMESTAMP))
            else:
                line.append("")
        return line

    @staticmethod
    def _custom_vars(custom: Dict[str, Any]) -> str:
        try:
            return json.dumps(custom, sort_keys=True, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise RecordTransformError(
                "Could not serialize custom vars",
                context={"custom_keys": sorted(custom)},
                original_exception=e
            )

    @staticmethod
    def _int64(name: str, value: Any) -> int:
        """Coerce an int64 field value; integral floats and numeric strings are accepted"""
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise RecordTransformError(
                f"Field {name} is not an integer",
                context={"field": name, "value": repr(value)[:100]},
                original_exception=e
            )
        if not number.is_integer():
            raise RecordTransformError(
                f"Field {name} is not an integer",
                context={"field": name, "value": repr(value)[:100]}
            )
        return int(number)
