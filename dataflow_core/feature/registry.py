"""Dataflow Feature Registry - Feature Catalog and Lineage.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.events import EventBus, EventType, FeatureEvent
from dataflow_core.feature.types import (
    Feature,
    FeatureGroup,
    FeatureStatus,
    ValueType,
)

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


@dataclass
class FeatureLineage:
    """Lineage record for one feature.

    Attributes:
        feature: Feature name
        dependencies: Features it is derived from
        dependents: Features derived from it
        transformation: Transformation reference
    """

    feature: str
    dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    transformation: Optional[str] = None


@dataclass
class LineageGraph:
    """Transitive lineage around a feature.

    Attributes:
        feature: Root feature
        upstream: Transitive dependencies, nearest first
        downstream: Transitive dependents, nearest first
        edges: (from, to) pairs meaning "to is derived from from"
    """

    feature: str
    upstream: List[str] = field(default_factory=list)
    downstream: List[str] = field(default_factory=list)
    edges: List[Tuple[str, str]] = field(default_factory=list)


class FeatureRegistry:
    """Catalog of feature definitions shared by the online and offline stores.

    Registering a feature that declares dependencies updates every
    dependency's dependents list in the same commit as the new record:
    either all changes land or none do.

    Example:
        registry = FeatureRegistry()
        registry.register_feature(Feature("emails_sent"))
        registry.register_feature(Feature("emails_opened"))
        registry.register_feature(
            Feature("open_rate", dependencies=["emails_sent", "emails_opened"])
        )
        registry.get_feature_lineage("open_rate").upstream
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus
        self._features: Dict[str, Feature] = {}
        self._lineage: Dict[str, FeatureLineage] = {}
        self._groups: Dict[str, FeatureGroup] = {}
        self._lock = threading.RLock()

    def register_feature(self, feature: Feature) -> Feature:
        """Register or re-register a feature.

        Args:
            feature: Feature definition

        Returns:
            The stored feature (version bumped on re-registration)

        Raises:
            ConfigurationError: On an invalid name, unknown or self
                dependency, or an unknown group
        """
        stored = self._register_feature(feature)
        self._publish_feature(stored)
        return stored

    def _register_feature(self, feature: Feature) -> Feature:
        if not feature.name or not _NAME_RE.match(feature.name):
            raise ConfigurationError(f"Invalid feature name: {feature.name!r}")

        with self._lock:
            for dep in feature.dependencies:
                if dep == feature.name:
                    raise ConfigurationError(f"Feature {feature.name} depends on itself")
                if dep not in self._features:
                    raise ConfigurationError(
                        f"Feature {feature.name} depends on unknown feature {dep}"
                    )
            if feature.group and feature.group not in self._groups:
                raise ConfigurationError(
                    f"Feature {feature.name} references unknown group {feature.group}"
                )

            existing = self._features.get(feature.name)
            stored = feature
            if existing is not None:
                stored = replace(feature, id=existing.id, version=existing.version + 1,
                                 group=feature.group or existing.group)
            if self._would_cycle(stored):
                raise ConfigurationError(
                    f"Dependencies of {feature.name} would form a cycle"
                )

            # Stage every change before touching shared state
            previous = self._lineage.get(feature.name)
            lineage = FeatureLineage(
                feature=stored.name,
                dependencies=list(stored.dependencies),
                dependents=list(previous.dependents) if previous else [],
                transformation=stored.transformation,
            )
            staged: Dict[str, FeatureLineage] = {stored.name: lineage}

            old_deps = set(previous.dependencies) if previous else set()
            for dep in old_deps - set(stored.dependencies):
                dep_lineage = self._lineage[dep]
                staged[dep] = replace(
                    dep_lineage,
                    dependents=[d for d in dep_lineage.dependents if d != stored.name],
                )
            for dep in stored.dependencies:
                dep_lineage = staged.get(dep) or self._lineage[dep]
                if stored.name not in dep_lineage.dependents:
                    staged[dep] = replace(
                        dep_lineage, dependents=[*dep_lineage.dependents, stored.name]
                    )

            self._features[stored.name] = stored
            self._lineage.update(staged)
            if stored.group:
                group = self._groups[stored.group]
                if stored.name not in group.features:
                    group.features.append(stored.name)

        logger.info(f"Registered feature {stored.name} v{stored.version}")
        return stored

    def _publish_feature(self, stored: Feature) -> None:
        self._publish(EventType.FEATURE_REGISTERED, feature=stored.name,
                      group=stored.group,
                      data={"version": stored.version,
                            "dependencies": list(stored.dependencies)})

    def _would_cycle(self, feature: Feature) -> bool:
        # Only re-registration can close a loop: walk upstream from the new deps
        seen: Set[str] = set()
        queue = deque(feature.dependencies)
        while queue:
            name = queue.popleft()
            if name == feature.name:
                return True
            if name in seen:
                continue
            seen.add(name)
            lineage = self._lineage.get(name)
            if lineage:
                queue.extend(lineage.dependencies)
        return False

    def register_feature_group(
        self,
        group: FeatureGroup,
        features: Optional[List[Feature]] = None,
    ) -> FeatureGroup:
        """Register a feature group and bind its members.

        Args:
            group: Group definition; ``group.features`` names members
                that must already be registered
            features: Feature definitions to register into the group

        Returns:
            The stored group

        Raises:
            ConfigurationError: If a named member is unknown or a supplied
                feature is invalid. Nothing is registered in that case.
        """
        if not group.name:
            raise ConfigurationError("Feature group requires a name")

        with self._lock:
            unknown = [
                name for name in group.features
                if name not in self._features
                and name not in {f.name for f in features or []}
            ]
            if unknown:
                raise ConfigurationError(
                    f"Feature group {group.name} references unknown features {unknown}"
                )

            # Members either all register with the group or none do
            snapshot = (
                dict(self._features),
                dict(self._lineage),
                dict(self._groups),
                {name: list(g.features) for name, g in self._groups.items()},
                list(group.features),
            )
            try:
                self._groups[group.name] = group
                for name in list(group.features):
                    if name in self._features:
                        self._features[name] = replace(self._features[name], group=group.name)
                stored = [
                    self._register_feature(replace(feature, group=group.name))
                    for feature in features or []
                ]
            except ConfigurationError:
                self._features, self._lineage, self._groups, members, own = snapshot
                for name, g in self._groups.items():
                    g.features[:] = members[name]
                group.features[:] = own
                raise

        for feature in stored:
            self._publish_feature(feature)

        logger.info(f"Registered feature group {group.name} ({len(group.features)} features)")
        self._publish(EventType.FEATURE_GROUP_REGISTERED, group=group.name,
                      data={"features": list(group.features),
                            "entity_type": group.entity_type.value})
        return group

    def get_feature(self, name: str) -> Optional[Feature]:
        return self._features.get(name)

    def require_feature(self, name: str) -> Feature:
        feature = self._features.get(name)
        if feature is None:
            raise NotFoundError(f"Feature not found: {name}", feature=name)
        return feature

    def get_feature_group(self, name: str) -> Optional[FeatureGroup]:
        return self._groups.get(name)

    def require_feature_group(self, name: str) -> FeatureGroup:
        group = self._groups.get(name)
        if group is None:
            raise NotFoundError(f"Feature group not found: {name}", group=name)
        return group

    def list_feature_groups(self) -> List[FeatureGroup]:
        return list(self._groups.values())

    def list_features(
        self,
        tags: Optional[List[str]] = None,
        owner: Optional[str] = None,
        value_type: Optional[ValueType] = None,
        status: Optional[FeatureStatus] = None,
        group: Optional[str] = None,
    ) -> List[Feature]:
        """List features matching every given filter.

        Args:
            tags: Feature must carry all of these tags
            owner: Owner to match
            value_type: Value type to match
            status: Status to match
            group: Group to match

        Returns:
            Matching features in registration order
        """
        result = []
        for feature in self._features.values():
            if tags and not set(tags).issubset(feature.tags):
                continue
            if owner is not None and feature.owner != owner:
                continue
            if value_type is not None and feature.value_type != value_type:
                continue
            if status is not None and feature.status != status:
                continue
            if group is not None and feature.group != group:
                continue
            result.append(feature)
        return result

    def resolve_ttl(self, name: str, default: Optional[int]) -> Optional[int]:
        """TTL for a feature: its own, else its group's, else the default."""
        feature = self._features.get(name)
        if feature is not None:
            if feature.ttl is not None:
                return feature.ttl
            group = self._groups.get(feature.group) if feature.group else None
            if group is not None and group.ttl is not None:
                return group.ttl
        return default

    def get_lineage_record(self, name: str) -> Optional[FeatureLineage]:
        return self._lineage.get(name)

    def get_feature_lineage(self, name: str, depth: Optional[int] = None) -> LineageGraph:
        """Traverse dependency and dependents lists breadth-first.

        Args:
            name: Feature name
            depth: Maximum hops in each direction (None for unbounded)

        Returns:
            LineageGraph

        Raises:
            NotFoundError: If the feature is unknown
        """
        if name not in self._lineage:
            raise NotFoundError(f"Feature not found: {name}", feature=name)

        graph = LineageGraph(feature=name)
        edges: Set[Tuple[str, str]] = set()

        for direction in ("upstream", "downstream"):
            seen = {name}
            queue = deque([(name, 0)])
            while queue:
                current, hops = queue.popleft()
                if depth is not None and hops >= depth:
                    continue
                lineage = self._lineage[current]
                neighbours = (
                    lineage.dependencies if direction == "upstream" else lineage.dependents
                )
                for other in neighbours:
                    edges.add((other, current) if direction == "upstream" else (current, other))
                    if other in seen:
                        continue
                    seen.add(other)
                    getattr(graph, direction).append(other)
                    queue.append((other, hops + 1))

        graph.edges = sorted(edges)
        return graph

    def _publish(self, event_type: EventType, data=None, **fields) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(FeatureEvent(event_type, data=data or {}, **fields))

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, name: str) -> bool:
        return name in self._features


__all__ = ["FeatureRegistry", "FeatureLineage", "LineageGraph"]
