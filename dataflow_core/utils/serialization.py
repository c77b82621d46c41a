"""Serialization utilities.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import json
import logging
from dataclasses import fields, is_dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from dataflow_core.utils.timing import ensure_utc

logger = logging.getLogger(__name__)


def to_jsonable(obj: Any) -> Any:
    """Convert runtime objects into plain JSON-compatible values.

    Dataclasses become dicts (private ``_`` fields skipped), enums become
    their value, datetimes ISO strings and timedeltas seconds.
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: to_jsonable(getattr(obj, f.name))
            for f in fields(obj)
            if not f.name.startswith("_")
        }
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, BaseException):
        return str(obj)
    return str(obj)


class JSONSerializer:
    """JSON serializer with extended type support."""

    def __init__(self, indent: Optional[int] = None, sort_keys: bool = False):
        self.indent = indent
        self.sort_keys = sort_keys

    def serialize(self, obj: Any) -> str:
        """Serialize to a JSON string."""
        return json.dumps(
            to_jsonable(obj),
            indent=self.indent,
            sort_keys=self.sort_keys,
        )

    def deserialize(self, data: str) -> Any:
        """Deserialize a JSON string."""
        return json.loads(data)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp, passing datetimes and None through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(str(value)))


__all__ = ["JSONSerializer", "parse_datetime", "to_jsonable"]
