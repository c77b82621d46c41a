"""Hashing utilities.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, is_dataclass
from typing import Any

# 52 bits fit losslessly in a float mantissa
_UNIT_BITS = 52


def canonical_json(data: Any) -> str:
    """Serialize data to a canonical JSON string.

    Keys are sorted and separators fixed so that equal inputs always
    produce byte-identical output regardless of dict insertion order.
    """
    if is_dataclass(data) and not isinstance(data, type):
        data = asdict(data)
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def unit_hash(data: Any) -> float:
    """Map data deterministically onto [0, 1).

    Used for traffic splitting: the same input always lands on the same
    point, and points are close to uniform across varied inputs.

    Args:
        data: JSON-serializable value

    Returns:
        Float in [0, 1)
    """
    digest = hashlib.sha256(canonical_json(data).encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], "big") >> (64 - _UNIT_BITS)
    return value / float(1 << _UNIT_BITS)


__all__ = ["canonical_json", "unit_hash"]
