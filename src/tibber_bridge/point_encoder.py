"""Maps readings onto the tag/field/timestamp schema of the storage backend.

String values shorter than ``MAX_TAG_LENGTH`` become indexed tags; everything
else that can be stored becomes a field. Long strings are kept out of the tag
index so free text cannot blow up series cardinality.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from influxdb_client import Point as InfluxPoint
from influxdb_client import WritePrecision


logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 64
TIMESTAMP_KEY = "timestamp"

FieldValue = Union[float, bool, str]
Reading = Dict[str, Any]


@dataclass(frozen=True)
class Point:
    """One persistable measurement."""
    measurement: str
    timestamp: Optional[datetime]
    tags: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, FieldValue] = field(default_factory=dict)

    def to_influx(self) -> InfluxPoint:
        point = InfluxPoint(self.measurement)
        for key, value in self.tags.items():
            point.tag(key, value)
        for key, value in self.fields.items():
            point.field(key, value)
        if self.timestamp is not None:
            point.time(self.timestamp, WritePrecision.MS)
        return point


def parse_instant(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 instant, accepting a trailing ``Z``."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_timestamp(value: Any) -> Optional[datetime]:
    """Timestamp of a reading, or None when it cannot be resolved."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, str):
        return parse_instant(value)
    return None


def encode(measurement: str, reading: Mapping[str, Any]) -> Point:
    """Build a Point from one reading. Never raises; unsupported values are dropped."""
    tags: Dict[str, str] = {}
    fields: Dict[str, FieldValue] = {}

    for key, value in reading.items():
        if key == TIMESTAMP_KEY or value is None:
            continue

        # bool before numbers: bool is an int subclass
        if isinstance(value, bool):
            fields[key] = value
        elif isinstance(value, (int, float)):
            number = float(value)
            if math.isfinite(number):
                fields[key] = number
            else:
                logger.debug(f"Dropping non-finite value for {key}")
        elif isinstance(value, str):
            if len(value) < MAX_TAG_LENGTH:
                tags[key] = value
            else:
                fields[key] = value
        elif isinstance(value, datetime):
            fields[key] = value.isoformat()
        else:
            logger.debug(f"Dropping {key} of unsupported type {type(value).__name__}")

    return Point(
        measurement=measurement,
        timestamp=resolve_timestamp(reading.get(TIMESTAMP_KEY)),
        tags=tags,
        fields=fields,
    )
