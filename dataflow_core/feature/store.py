"""Dataflow Feature Store - Online/Offline Facade.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dataflow_core.errors import ConfigurationError
from dataflow_core.feature.offline import JobStatus, OfflineFeatureStore
from dataflow_core.feature.online import FeatureWrite, OnlineFeatureStore
from dataflow_core.feature.registry import FeatureRegistry
from dataflow_core.feature.types import FeatureQuery, FeatureValue
from dataflow_core.utils.timing import Timer, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of a dual write.

    Attributes:
        online_written: Values written to the online store
        offline_written: Values appended to offline history
        skipped: Online writes skipped because a newer value exists
        failures: Online keys that failed, with their errors
    """

    online_written: int = 0
    offline_written: int = 0
    skipped: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


class FeatureStore:
    """Feature store over one registry and two storage engines.

    The online store serves low-latency lookups with TTL expiry, the
    offline store keeps full history for point-in-time retrieval. Group
    flags decide which engines a write reaches.

    Example:
        store = FeatureStore(registry, online, offline)
        await store.write_features("prospect_engagement", "p1", {"open_rate": 0.4})
        await store.get_online_features(["open_rate"], "p1")
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        online: OnlineFeatureStore,
        offline: OfflineFeatureStore,
    ):
        self.registry = registry
        self.online = online
        self.offline = offline

    async def write_features(
        self,
        group_name: str,
        entity_id: str,
        values: Dict[str, Any],
        source: str = "",
        timestamp: Optional[datetime] = None,
    ) -> WriteResult:
        """Write one entity's values for a feature group.

        The online copy is last-write-wins by timestamp: a value older
        than the one already served is kept out of the online store but
        still lands in offline history.

        Args:
            group_name: Feature group
            entity_id: Entity identifier
            values: Feature name -> value
            source: Producer identifier
            timestamp: Event time (defaults to now)

        Returns:
            WriteResult

        Raises:
            NotFoundError: If the group is unknown
            ConfigurationError: If a feature is not a member of the group
        """
        group = self.registry.require_feature_group(group_name)
        foreign = sorted(set(values) - set(group.features))
        if foreign:
            raise ConfigurationError(f"Features {foreign} are not in group {group_name}")

        timestamp = ensure_utc(timestamp) if timestamp else utcnow()
        result = WriteResult()
        stamped = {
            name: FeatureValue(
                value=value,
                timestamp=timestamp,
                version=self.registry.require_feature(name).version,
                source=source,
            )
            for name, value in values.items()
        }

        if group.offline_enabled:
            for name, value in stamped.items():
                self.offline.write(name, entity_id, value)
            result.offline_written = len(stamped)

        if group.online_enabled and stamped:
            current = await self.online.get_batch(
                [FeatureQuery(name, entity_id) for name in stamped]
            )
            writes = []
            for name, value in stamped.items():
                existing = current.get(f"{name}:{entity_id}")
                if existing is not None and existing.timestamp > value.timestamp:
                    result.skipped.append(name)
                    continue
                writes.append(FeatureWrite(name, entity_id, value))

            failures = await self.online.set_batch(writes) if writes else {}
            result.failures = {k: str(e) for k, e in failures.items()}
            result.online_written = len(writes) - len(failures)

        return result

    async def get_online_features(
        self,
        names: List[str],
        entity_id: str,
    ) -> Dict[str, Any]:
        """Current values for one entity, None where absent."""
        values = await self.online.get_batch([FeatureQuery(n, entity_id) for n in names])
        return {
            name: (v.value if (v := values.get(f"{name}:{entity_id}")) else None)
            for name in names
        }

    async def materialize(
        self,
        view_name: str,
        point_in_time: Optional[datetime] = None,
    ) -> int:
        """Copy a feature view's rows into the online store.

        Args:
            view_name: Feature view
            point_in_time: Evaluate the view as of this time

        Returns:
            Number of values written online
        """
        with Timer(f"materialize {view_name}"):
            view = self.offline.get_feature_view(view_name)
            rows = self.offline.read_feature_view(view_name, point_in_time)
            writes = [
                FeatureWrite(name, row["entity_id"], row[name])
                for row in rows
                for name in view.features
                if row[name] is not None
            ]
            failures = await self.online.set_batch(writes) if writes else {}

        written = len(writes) - len(failures)
        logger.info(f"Materialized {view_name}: {written} values from {len(rows)} rows")
        return written

    async def get_health(self) -> Dict[str, Any]:
        """Health of both engines and registry size."""
        online = await self.online.check_health()
        running = self.offline.list_jobs(JobStatus.RUNNING)
        return {
            "status": online.status,
            "online": {
                "status": online.status,
                "latency_ms": online.latency_ms,
                "keys": online.keys,
                "error": online.error,
            },
            "offline": {
                "running_jobs": len(running),
                "views": len(self.offline.list_feature_views()),
            },
            "registry": {
                "features": len(self.registry),
                "groups": len(self.registry.list_feature_groups()),
            },
        }

    async def start(self) -> None:
        await self.online.start()

    async def stop(self) -> None:
        await self.online.stop()


__all__ = ["FeatureStore", "WriteResult"]
