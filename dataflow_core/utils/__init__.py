"""Utilities module."""

from dataflow_core.utils.serialization import (
    JSONSerializer,
    parse_datetime,
    to_jsonable,
)
from dataflow_core.utils.hashing import canonical_json, unit_hash
from dataflow_core.utils.timing import Timer, ensure_utc, utcnow
from dataflow_core.utils.ids import new_id, slugify

__all__ = [
    "JSONSerializer",
    "parse_datetime",
    "to_jsonable",
    "canonical_json",
    "unit_hash",
    "Timer",
    "ensure_utc",
    "utcnow",
    "new_id",
    "slugify",
]
