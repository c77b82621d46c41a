"""Dataflow Events - Typed Publish/Subscribe.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

Components publish typed events to an explicit ``EventBus`` handed to them
at construction. Subscribers (lineage tracking, quality monitoring,
alerting) never block the publisher: synchronous handlers run inline with
their exceptions logged, coroutine handlers are scheduled as tasks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types published by the core."""

    # Pipeline engine
    PIPELINE_REGISTERED = "pipeline_registered"
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    PIPELINE_CANCELLED = "pipeline_cancelled"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_RETRYING = "stage_retrying"

    # Feature store
    FEATURE_REGISTERED = "feature_registered"
    FEATURE_GROUP_REGISTERED = "feature_group_registered"
    FEATURE_UPDATED = "feature_updated"
    FEATURE_VIEW_CREATED = "feature_view_created"
    COMPUTATION_PROGRESS = "computation_progress"
    COMPUTATION_COMPLETED = "computation_completed"
    COMPUTATION_FAILED = "computation_failed"

    # Model store
    MODEL_REGISTERED = "model_registered"
    MODEL_DEPLOYED = "model_deployed"
    MODEL_PROMOTED = "model_promoted"
    MODEL_ROLLEDBACK = "model_rolledback"
    MODEL_HEALTH_DEGRADED = "model_health_degraded"
    MODEL_PERFORMANCE_DEGRADED = "model_performance_degraded"
    AB_TEST_STARTED = "ab_test_started"
    AB_TEST_CONCLUDED = "ab_test_concluded"


@dataclass
class Event:
    """Base event payload.

    Attributes:
        type: Event type
        data: Free-form details
        timestamp: When the event was published
    """

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PipelineEvent(Event):
    """Pipeline run or stage lifecycle event."""

    pipeline_id: str = ""
    run_id: Optional[str] = None
    stage_id: Optional[str] = None


@dataclass
class FeatureEvent(Event):
    """Feature registry or store event."""

    feature: Optional[str] = None
    group: Optional[str] = None
    entity_id: Optional[str] = None
    job_id: Optional[str] = None


@dataclass
class ModelEvent(Event):
    """Model lifecycle, deployment or experiment event."""

    model_id: str = ""
    version: Optional[str] = None
    deployment_id: Optional[str] = None
    test_id: Optional[str] = None


Handler = Callable[[Event], Any]


class EventBus:
    """In-process event bus.

    Example:
        bus = EventBus()
        bus.subscribe(EventType.PIPELINE_FAILED, alert)
        bus.publish(PipelineEvent(EventType.PIPELINE_FAILED, pipeline_id="p1"))
    """

    def __init__(self, history_size: int = 1000):
        """Initialize bus.

        Args:
            history_size: Number of recent events kept for inspection
        """
        self._handlers: Dict[EventType, List[Handler]] = defaultdict(list)
        self._global_handlers: List[Handler] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._pending: Set[asyncio.Task] = set()
        self.handler_errors = 0

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        """Subscribe a handler to one event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe a handler to every event."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: Optional[EventType], handler: Handler) -> None:
        """Remove a handler; ``None`` removes a global subscription."""
        handlers = self._global_handlers if event_type is None else self._handlers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event) -> None:
        """Deliver an event to its subscribers without blocking.

        Args:
            event: Event to publish
        """
        self._history.append(event)
        logger.debug(f"Event {event.type.value}")

        for handler in [*self._handlers.get(event.type, ()), *self._global_handlers]:
            self._deliver(handler, event)

    def _deliver(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
        except Exception as e:
            self.handler_errors += 1
            logger.error(f"Event handler failed for {event.type.value}: {e}")
            return

        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.handler_errors += 1
                logger.warning(
                    f"No running loop for async handler of {event.type.value}, dropped"
                )
                if inspect.iscoroutine(result):
                    result.close()
                return
            task = loop.create_task(result)
            self._pending.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.handler_errors += 1
            logger.error(f"Async event handler failed: {error}")

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def history(
        self,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Recent events, oldest first."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        if limit is not None:
            events = events[-limit:]
        return events


__all__ = [
    "EventType",
    "Event",
    "PipelineEvent",
    "FeatureEvent",
    "ModelEvent",
    "EventBus",
]
