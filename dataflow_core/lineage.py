"""Dataflow Lineage - Event-Driven Lineage Recording.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from dataflow_core.events import (
    Event,
    EventBus,
    EventType,
    FeatureEvent,
    ModelEvent,
    PipelineEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class LineageNode:
    """A tracked asset.

    Attributes:
        id: Node id, ``<kind>:<name>``
        kind: feature, model, pipeline or run
        attributes: Latest known attributes
        updated_at: When it was last touched
    """

    id: str
    kind: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class LineageEdge:
    """Directed relation between two nodes."""

    source: str
    target: str
    relation: str


class LineageRecorder:
    """Builds a lineage graph from published events.

    Subscribes to feature registration, model registration and pipeline
    completion or failure. Handlers are synchronous and cheap, so
    publishers never wait on them.

    Example:
        recorder = LineageRecorder()
        recorder.attach(bus)
        recorder.upstream("feature:reply_rate")
    """

    def __init__(self):
        self.nodes: Dict[str, LineageNode] = {}
        self.edges: Set[LineageEdge] = set()
        self._bus: Optional[EventBus] = None

    _EVENTS: Tuple[EventType, ...] = (
        EventType.FEATURE_REGISTERED,
        EventType.MODEL_REGISTERED,
        EventType.MODEL_DEPLOYED,
        EventType.PIPELINE_COMPLETED,
        EventType.PIPELINE_FAILED,
    )

    def attach(self, bus: EventBus) -> None:
        for event_type in self._EVENTS:
            bus.subscribe(event_type, self.handle)
        self._bus = bus

    def detach(self) -> None:
        if self._bus is None:
            return
        for event_type in self._EVENTS:
            self._bus.unsubscribe(event_type, self.handle)
        self._bus = None

    def handle(self, event: Event) -> None:
        if isinstance(event, FeatureEvent) and event.type == EventType.FEATURE_REGISTERED:
            self._on_feature(event)
        elif isinstance(event, ModelEvent):
            self._on_model(event)
        elif isinstance(event, PipelineEvent):
            self._on_run(event)

    def _on_feature(self, event: FeatureEvent) -> None:
        node = self._touch(f"feature:{event.feature}", "feature", event, **event.data)
        if event.group:
            self._link(f"group:{event.group}", node.id, "contains", event, kind="group")
        for upstream in event.data.get("dependencies", []):
            self._link(f"feature:{upstream}", node.id, "derives", event, kind="feature")

    def _on_model(self, event: ModelEvent) -> None:
        model = self._touch(f"model:{event.model_id}", "model", event)
        if event.version is None:
            return
        version = self._touch(
            f"model:{event.model_id}@{event.version}", "model_version", event,
            status=event.type.value, **event.data,
        )
        self.edges.add(LineageEdge(model.id, version.id, "version"))

    def _on_run(self, event: PipelineEvent) -> None:
        pipeline = self._touch(f"pipeline:{event.pipeline_id}", "pipeline", event)
        status = "completed" if event.type == EventType.PIPELINE_COMPLETED else "failed"
        run = self._touch(f"run:{event.run_id}", "run", event, status=status, **event.data)
        self.edges.add(LineageEdge(pipeline.id, run.id, "executed"))

    def _touch(self, node_id: str, kind: str, event: Event, **attributes: Any) -> LineageNode:
        node = self.nodes.get(node_id)
        if node is None:
            node = LineageNode(id=node_id, kind=kind)
            self.nodes[node_id] = node
        node.attributes.update(attributes)
        node.updated_at = event.timestamp
        return node

    def _link(self, source: str, target: str, relation: str, event: Event, kind: str) -> None:
        self._touch(source, kind, event)
        self.edges.add(LineageEdge(source, target, relation))

    def upstream(self, node_id: str) -> List[str]:
        """Direct sources of a node."""
        return sorted(e.source for e in self.edges if e.target == node_id)

    def downstream(self, node_id: str) -> List[str]:
        """Direct targets of a node."""
        return sorted(e.target for e in self.edges if e.source == node_id)


__all__ = ["LineageNode", "LineageEdge", "LineageRecorder"]
