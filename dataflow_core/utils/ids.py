"""Identifier helpers.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import re
import uuid

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier, e.g. ``run_3f2a9c1e0b7d``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def slugify(name: str) -> str:
    """Lowercase, dash-separated form of a name."""
    slug = _SLUG_RE.sub("-", name.strip().lower()).strip("-")
    return slug or "unnamed"


__all__ = ["new_id", "slugify"]
