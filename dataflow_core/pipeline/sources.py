"""Dataflow Sources - Extract Sources and Load Sinks.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

Extract stages read materialized message payloads from a ``MessageSource``;
the stream transport that fills it lives outside the core. Load stages
write to a ``DataSink``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class MessageSource(ABC):
    """Source of records for extract stages."""

    @abstractmethod
    async def fetch(self, limit: Optional[int] = None) -> List[Record]:
        """Take up to ``limit`` records (all available when None)."""


class InMemoryMessageSource(MessageSource):
    """Buffer of published message payloads, drained by fetch.

    Example:
        source = InMemoryMessageSource()
        source.publish({"email": "a@example.com"})
        await source.fetch(limit=100)
    """

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self._buffer: Deque[Record] = deque(records or [])
        self._lock = asyncio.Lock()

    def publish(self, *records: Record) -> None:
        self._buffer.extend(records)

    async def fetch(self, limit: Optional[int] = None) -> List[Record]:
        async with self._lock:
            count = len(self._buffer) if limit is None else min(limit, len(self._buffer))
            return [dict(self._buffer.popleft()) for _ in range(count)]

    def __len__(self) -> int:
        return len(self._buffer)


class DataSink(ABC):
    """Destination for load stages."""

    @abstractmethod
    async def write(self, records: List[Record]) -> int:
        """Write records and return how many were stored."""


class InMemorySink(DataSink):
    """Sink that keeps written records in a list."""

    def __init__(self):
        self.records: List[Record] = []

    async def write(self, records: List[Record]) -> int:
        self.records.extend(dict(r) for r in records)
        logger.debug(f"Sink stored {len(records)} records")
        return len(records)


__all__ = [
    "Record",
    "MessageSource",
    "InMemoryMessageSource",
    "DataSink",
    "InMemorySink",
]
