"""Dataflow Transforms - Record Transformation Engine.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

Operations are plain dicts so pipeline definitions stay JSON:

    {"type": "field_mapping", "mappings": {"Email": "email"}, "remove_source": true}
    {"type": "normalize", "fields": {"email": "email", "company": "trim"}}
    {"type": "filter", "field": "score", "op": ">=", "value": 0.5}
    {"type": "default", "values": {"country": "US"}}
    {"type": "derive", "field": "open_rate", "op": "divide", "args": ["opens", "sends"]}
    {"type": "validate", "rules": [{"field": "email", "rule": "email", "required": true}]}
    {"type": "drop_fields", "fields": ["raw"]}
    {"type": "aggregate", "group_by": "company", "fields": [{"name": "score", "function": "avg"}]}
"""

from __future__ import annotations

import logging
import operator
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import numpy as np

from dataflow_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")

COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
}

ARITHMETIC: Dict[str, Callable[[float, float], float]] = {
    "add": operator.add,
    "subtract": operator.sub,
    "multiply": operator.mul,
    "divide": operator.truediv,
}


class RecordRejected(Exception):
    """A single record failed an operation."""


def normalize_phone(value: str) -> str:
    return re.sub(r"[^\d+]", "", value)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_url(value: str) -> str:
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.netloc:
        return value.strip()
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/",
                       parts.query, parts.fragment))


NORMALIZERS: Dict[str, Callable[[str], str]] = {
    "lowercase": str.lower,
    "uppercase": str.upper,
    "trim": str.strip,
    "email": normalize_email,
    "phone": normalize_phone,
    "url": normalize_url,
}


def check_rule(value: Any, rule: Dict[str, Any]) -> bool:
    """Evaluate one field validation rule."""
    kind = rule.get("rule", "required")

    if kind == "required":
        return value is not None and value != ""
    if value is None:
        return True
    if kind == "email":
        return isinstance(value, str) and bool(_EMAIL_RE.match(value))
    if kind == "phone":
        return isinstance(value, str) and bool(_PHONE_RE.match(value))
    if kind == "url":
        parts = urlsplit(str(value))
        return bool(parts.scheme and parts.netloc)
    if kind == "range":
        try:
            number = float(value)
        except (TypeError, ValueError):
            return False
        return rule.get("min", float("-inf")) <= number <= rule.get("max", float("inf"))
    if kind == "length":
        length = len(str(value))
        return rule.get("min_length", 0) <= length <= rule.get("max_length", float("inf"))
    if kind == "pattern":
        return isinstance(value, str) and bool(re.search(rule.get("pattern", ""), value))
    raise ConfigurationError(f"Unknown validation rule: {kind}")


@dataclass
class TransformResult:
    """Output of a transformation pass.

    Attributes:
        records: Records that survived every operation
        processed: Input record count
        succeeded: Records emitted
        failed: Records dropped because an operation raised
        filtered: Records removed by filters (not failures)
        errors: Sample of per-record error messages
    """

    records: List[Record] = field(default_factory=list)
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    filtered: int = 0
    errors: List[str] = field(default_factory=list)


class TransformationEngine:
    """Applies a sequence of operations to a batch of records.

    Record-level operations run per record; a record that raises is
    counted as failed and dropped without affecting the others. Aggregation
    works over the whole surviving batch.
    """

    max_error_samples = 20

    def __init__(self):
        self._custom: Dict[str, Callable[[Record, Dict[str, Any]], Optional[Record]]] = {}

    def register_operation(
        self,
        name: str,
        func: Callable[[Record, Dict[str, Any]], Optional[Record]],
    ) -> None:
        """Register a custom record operation.

        Args:
            name: Operation type name
            func: Receives (record, operation) and returns the new record,
                or None to filter it out
        """
        self._custom[name] = func

    def validate_operations(self, operations: List[Dict[str, Any]]) -> None:
        known = {"field_mapping", "normalize", "filter", "default", "derive",
                 "validate", "drop_fields", "aggregate", *self._custom}
        for op in operations:
            if op.get("type") not in known:
                raise ConfigurationError(f"Unknown transform operation: {op.get('type')}")

    def transform(
        self,
        records: List[Record],
        operations: List[Dict[str, Any]],
    ) -> TransformResult:
        """Run operations over records.

        Args:
            records: Input records (left unmodified)
            operations: Operation definitions, applied in order

        Returns:
            TransformResult
        """
        self.validate_operations(operations)
        result = TransformResult(processed=len(records))
        current = [dict(r) for r in records]

        for op in operations:
            if op["type"] == "aggregate":
                current = self._aggregate(current, op)
                continue

            survivors = []
            for record in current:
                try:
                    out = self._apply(record, op)
                except (RecordRejected, TypeError, ValueError, KeyError, ZeroDivisionError) as e:
                    result.failed += 1
                    if len(result.errors) < self.max_error_samples:
                        result.errors.append(f"{op['type']}: {e}")
                    continue
                if out is None:
                    result.filtered += 1
                    continue
                survivors.append(out)
            current = survivors

        result.records = current
        result.succeeded = len(current)

        if result.failed:
            logger.warning(
                f"Transform dropped {result.failed}/{result.processed} records"
            )

        return result

    def _apply(self, record: Record, op: Dict[str, Any]) -> Optional[Record]:
        kind = op["type"]

        if kind == "field_mapping":
            for source, target in op.get("mappings", {}).items():
                if source in record:
                    value = record[source]
                    if op.get("remove_source") and source != target:
                        del record[source]
                    record[target] = value
            return record

        if kind == "normalize":
            for name, how in op.get("fields", {}).items():
                if how not in NORMALIZERS:
                    raise ConfigurationError(f"Unknown normalization: {how}")
                if record.get(name) is not None:
                    record[name] = NORMALIZERS[how](str(record[name]))
            return record

        if kind == "filter":
            name, op_name = op["field"], op.get("op", "==")
            if op_name == "exists":
                return record if record.get(name) is not None else None
            if op_name not in COMPARATORS:
                raise ConfigurationError(f"Unknown filter operator: {op_name}")
            if name not in record:
                return None
            return record if COMPARATORS[op_name](record[name], op.get("value")) else None

        if kind == "default":
            for name, value in op.get("values", {}).items():
                if record.get(name) is None:
                    record[name] = value
            return record

        if kind == "derive":
            func = op.get("function")
            if callable(func):
                record[op["field"]] = func(record)
                return record
            arith = ARITHMETIC.get(op.get("op", ""))
            if arith is None:
                raise ConfigurationError(f"Unknown derive operation: {op.get('op')}")
            left, right = (
                record[a] if isinstance(a, str) else a for a in op["args"]
            )
            record[op["field"]] = arith(float(left), float(right))
            return record

        if kind == "validate":
            for rule in op.get("rules", []):
                if not check_rule(record.get(rule["field"]), rule):
                    if rule.get("required", False):
                        raise RecordRejected(
                            f"{rule['field']} failed {rule.get('rule', 'required')}"
                        )
                    record.setdefault("_validation_errors", []).append(rule["field"])
            return record

        if kind == "drop_fields":
            for name in op.get("fields", []):
                record.pop(name, None)
            return record

        return self._custom[kind](record, op)

    def _aggregate(self, records: List[Record], op: Dict[str, Any]) -> List[Record]:
        group_by = op.get("group_by")
        groups: "OrderedDict[Any, List[Record]]" = OrderedDict()
        for record in records:
            groups.setdefault(record.get(group_by) if group_by else None, []).append(record)

        reducers = {
            "sum": np.sum,
            "avg": np.mean,
            "min": np.min,
            "max": np.max,
        }

        output = []
        for key, members in groups.items():
            row: Record = {group_by: key} if group_by else {}
            for agg in op.get("fields", []):
                name, func = agg["name"], agg.get("function", "sum")
                values = [m[name] for m in members if isinstance(m.get(name), (int, float))]
                if func == "count":
                    row[f"{name}_count"] = sum(1 for m in members if m.get(name) is not None)
                elif func in reducers:
                    row[f"{name}_{func}"] = float(reducers[func](values)) if values else None
                else:
                    raise ConfigurationError(f"Unknown aggregation function: {func}")
            output.append(row)

        return output


__all__ = [
    "TransformationEngine",
    "TransformResult",
    "check_rule",
    "normalize_email",
    "normalize_phone",
    "normalize_url",
]
