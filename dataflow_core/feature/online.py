"""Dataflow Online Store - Low-Latency Feature Serving.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from dataflow_core.config import OnlineStoreConfig
from dataflow_core.errors import ConfigurationError
from dataflow_core.events import EventBus, EventType, FeatureEvent
from dataflow_core.feature.registry import FeatureRegistry
from dataflow_core.feature.types import FeatureQuery, FeatureValue
from dataflow_core.utils.timing import Timer, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnlineOp:
    """One keyspace operation inside a round trip.

    Attributes:
        kind: "get", "set", "delete" or "ping"
        key: Storage key
        value: Serialized value for "set"
        ttl: Seconds until expiry for "set" (None or 0 never expires)
    """

    kind: str
    key: str = ""
    value: Optional[Dict[str, Any]] = None
    ttl: Optional[int] = None


@dataclass
class OpResult:
    """Result of one operation: a value or the error it raised."""

    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class OnlineBackend(ABC):
    """Keyspace behind the online store.

    ``execute`` is one round trip for any number of operations. Each
    operation applies atomically on its own; one failing does not stop
    the rest.
    """

    @abstractmethod
    async def execute(self, ops: List[OnlineOp]) -> List[OpResult]:
        """Apply operations and return results positionally."""

    async def size(self) -> int:
        return 0

    async def close(self) -> None:
        pass


class InMemoryOnlineBackend(OnlineBackend):
    """Process-local keyspace with TTL expiry.

    Args:
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._data: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}
        self.round_trips = 0

    async def execute(self, ops: List[OnlineOp]) -> List[OpResult]:
        self.round_trips += 1
        now = self.clock()
        results = []
        for op in ops:
            try:
                results.append(OpResult(value=self._apply(op, now)))
            except Exception as e:
                results.append(OpResult(error=e))
        return results

    def _apply(self, op: OnlineOp, now: float) -> Any:
        if op.kind == "get":
            entry = self._data.get(op.key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at is not None and now >= expires_at:
                del self._data[op.key]
                return None
            return dict(payload)

        if op.kind == "set":
            expires_at = now + op.ttl if op.ttl else None
            self._data[op.key] = (dict(op.value or {}), expires_at)
            return True

        if op.kind == "delete":
            return self._data.pop(op.key, None) is not None

        if op.kind == "ping":
            return "PONG"

        raise ValueError(f"Unsupported operation: {op.kind}")

    async def size(self) -> int:
        now = self.clock()
        return sum(
            1 for _, expires_at in self._data.values()
            if expires_at is None or now < expires_at
        )


@dataclass
class FeatureWrite:
    """One entry of a batched write."""

    feature: str
    entity_id: str
    value: Any
    ttl: Optional[int] = None


@dataclass
class AccessMetrics:
    """Per-feature access counters."""

    reads: int = 0
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0
    last_accessed: Optional[datetime] = None

    @property
    def hit_rate(self) -> float:
        return self.hits / self.reads if self.reads else 0.0


@dataclass
class StoreHealth:
    """Online store health snapshot."""

    status: str
    latency_ms: float
    keys: int = 0
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)


QueryLike = Union[FeatureQuery, Tuple[str, str]]
WriteLike = Union[FeatureWrite, Tuple[str, str, Any]]


class OnlineFeatureStore:
    """Online feature store keyed by (feature, entity).

    Features:
    - TTL per feature, inherited from the group or the store default
    - Batched reads and writes in a single backend round trip
    - Per-key error isolation in batches
    - Access metrics and health checks
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        config: Optional[OnlineStoreConfig] = None,
        backend: Optional[OnlineBackend] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.registry = registry
        self.config = config or OnlineStoreConfig()
        self.backend = backend or InMemoryOnlineBackend()
        self.event_bus = event_bus
        self._metrics: Dict[str, AccessMetrics] = {}
        self._health: Optional[StoreHealth] = None
        self._health_task: Optional[asyncio.Task] = None

    @staticmethod
    def make_key(feature: str, entity_id: str) -> str:
        return f"feature:{feature}:{entity_id}"

    def _ttl_for(self, feature: str, ttl: Optional[int]) -> Optional[int]:
        if ttl is not None:
            return ttl
        return self.registry.resolve_ttl(feature, self.config.default_ttl)

    def _to_value(self, feature: str, value: Any) -> FeatureValue:
        definition = self.registry.get_feature(feature)
        if isinstance(value, FeatureValue):
            raw = value.value
        else:
            raw = value
            value = FeatureValue(
                value=value,
                version=definition.version if definition else 1,
            )
        if definition is not None and not definition.validate(raw):
            raise ConfigurationError(
                f"Value {raw!r} does not match type {definition.value_type.value} "
                f"of feature {feature}"
            )
        return value

    def _metrics_for(self, feature: str) -> AccessMetrics:
        metrics = self._metrics.setdefault(feature, AccessMetrics())
        metrics.last_accessed = utcnow()
        return metrics

    def _record_read(self, feature: str, result: OpResult) -> None:
        metrics = self._metrics_for(feature)
        metrics.reads += 1
        if not result.ok:
            metrics.errors += 1
        elif result.value is None:
            metrics.misses += 1
        else:
            metrics.hits += 1

    async def get(self, feature: str, entity_id: str) -> Optional[FeatureValue]:
        """Get one value.

        Returns:
            FeatureValue, or None if absent or expired
        """
        [result] = await self.backend.execute(
            [OnlineOp("get", self.make_key(feature, entity_id))]
        )
        self._record_read(feature, result)
        if not result.ok:
            raise result.error
        return FeatureValue.from_dict(result.value) if result.value else None

    async def get_batch(
        self,
        queries: Iterable[QueryLike],
    ) -> Dict[str, Optional[FeatureValue]]:
        """Get many values in one round trip.

        Args:
            queries: FeatureQuery objects or (feature, entity_id) pairs

        Returns:
            Mapping of "feature:entity_id" to value, None when absent,
            expired or failed
        """
        queries = [q if isinstance(q, FeatureQuery) else FeatureQuery(*q) for q in queries]
        if not queries:
            return {}

        results = await self.backend.execute(
            [OnlineOp("get", self.make_key(q.feature, q.entity_id)) for q in queries]
        )

        values: Dict[str, Optional[FeatureValue]] = {}
        for query, result in zip(queries, results):
            self._record_read(query.feature, result)
            if not result.ok:
                logger.warning(f"Online read failed for {query.key}: {result.error}")
                values[query.key] = None
                continue
            values[query.key] = FeatureValue.from_dict(result.value) if result.value else None

        return values

    async def set(
        self,
        feature: str,
        entity_id: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> FeatureValue:
        """Store one value with the feature's TTL.

        Args:
            feature: Feature name
            entity_id: Entity identifier
            value: Raw value or FeatureValue
            ttl: Override TTL in seconds

        Returns:
            The stored FeatureValue
        """
        stored = self._to_value(feature, value)
        [result] = await self.backend.execute([
            OnlineOp("set", self.make_key(feature, entity_id), stored.to_dict(),
                     self._ttl_for(feature, ttl))
        ])
        metrics = self._metrics_for(feature)
        if not result.ok:
            metrics.errors += 1
            raise result.error
        metrics.writes += 1

        self._publish(EventType.FEATURE_UPDATED, feature=feature, entity_id=entity_id,
                      data={"count": 1})
        return stored

    async def set_batch(self, items: Iterable[WriteLike]) -> Dict[str, Exception]:
        """Store many values in one round trip.

        Args:
            items: FeatureWrite objects or (feature, entity_id, value) triples

        Returns:
            Mapping of "feature:entity_id" to error, for failed keys only
        """
        writes = [i if isinstance(i, FeatureWrite) else FeatureWrite(*i) for i in items]
        failures: Dict[str, Exception] = {}
        ops: List[OnlineOp] = []
        op_writes: List[FeatureWrite] = []

        for write in writes:
            key = f"{write.feature}:{write.entity_id}"
            try:
                stored = self._to_value(write.feature, write.value)
            except ConfigurationError as e:
                failures[key] = e
                continue
            ops.append(OnlineOp("set", self.make_key(write.feature, write.entity_id),
                                stored.to_dict(), self._ttl_for(write.feature, write.ttl)))
            op_writes.append(write)

        results = await self.backend.execute(ops) if ops else []
        for write, result in zip(op_writes, results):
            metrics = self._metrics_for(write.feature)
            if result.ok:
                metrics.writes += 1
            else:
                metrics.errors += 1
                failures[f"{write.feature}:{write.entity_id}"] = result.error

        if failures:
            logger.warning(f"Online batch write: {len(failures)}/{len(writes)} keys failed")

        written = len(writes) - len(failures)
        if written:
            self._publish(EventType.FEATURE_UPDATED, data={"count": written})
        return failures

    async def delete(self, feature: str, entity_id: str) -> bool:
        """Delete one value. Returns True if it existed."""
        [result] = await self.backend.execute(
            [OnlineOp("delete", self.make_key(feature, entity_id))]
        )
        if not result.ok:
            self._metrics_for(feature).errors += 1
            raise result.error
        return bool(result.value)

    def get_access_metrics(self, feature: Optional[str] = None) -> Dict[str, AccessMetrics]:
        if feature is not None:
            return {feature: self._metrics.get(feature, AccessMetrics())}
        return dict(self._metrics)

    async def check_health(self) -> StoreHealth:
        """Ping the backend and compare latency with the threshold."""
        with Timer() as t:
            [result] = await self.backend.execute([OnlineOp("ping")])

        if not result.ok:
            health = StoreHealth(status="unhealthy", latency_ms=t.elapsed_ms,
                                 error=str(result.error))
        else:
            status = (
                "healthy" if t.elapsed_ms <= self.config.latency_threshold_ms else "degraded"
            )
            health = StoreHealth(status=status, latency_ms=t.elapsed_ms,
                                 keys=await self.backend.size())

        if self._health and self._health.status != health.status:
            logger.warning(
                f"Online store health {self._health.status} -> {health.status}"
            )
        self._health = health
        return health

    def get_health(self) -> Optional[StoreHealth]:
        """Last health snapshot from the background loop or check_health."""
        return self._health

    async def start(self) -> None:
        if self._health_task is None:
            await self.check_health()
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        await self.backend.close()

    async def _health_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.health_check_interval)
                await self.check_health()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Online health check error: {e}")

    def _publish(self, event_type: EventType, data=None, **fields) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(FeatureEvent(event_type, data=data or {}, **fields))


__all__ = [
    "OnlineOp",
    "OpResult",
    "OnlineBackend",
    "InMemoryOnlineBackend",
    "FeatureWrite",
    "AccessMetrics",
    "StoreHealth",
    "OnlineFeatureStore",
]
