"""Timing utilities.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Timer:
    """Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            await backend.predict(...)
        print(f"Took {t.elapsed_ms:.1f}ms")

        # Or with name for logging
        with Timer("materialize"):
            store.materialize("view")
    """

    def __init__(self, name: Optional[str] = None, log: bool = True):
        self.name = name
        self.log = log
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.end_time = time.perf_counter()

        if self.log and self.name:
            logger.debug(f"{self.name} took {self.elapsed:.3f}s")

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.perf_counter()
        return end - self.start_time

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        return self.elapsed * 1000


__all__ = ["Timer", "ensure_utc", "utcnow"]
