"""Dataflow Runtime - Component Wiring and Lifecycle.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from typing import Optional

from dataflow_core.config import Settings
from dataflow_core.events import EventBus
from dataflow_core.feature.offline import OfflineFeatureStore
from dataflow_core.feature.online import OnlineBackend, OnlineFeatureStore
from dataflow_core.feature.registry import FeatureRegistry
from dataflow_core.feature.store import FeatureStore
from dataflow_core.lineage import LineageRecorder
from dataflow_core.model.backends import PredictionBackend
from dataflow_core.model.store import ModelStore
from dataflow_core.pipeline.engine import PipelineEngine
from dataflow_core.pipeline.handlers import StageServices
from dataflow_core.quality.monitor import QualityMonitor, RuleQualityMonitor

logger = logging.getLogger(__name__)


class DataflowRuntime:
    """One process-wide set of dataflow components.

    Builds every component from ``Settings`` and hands each its
    collaborators explicitly; nothing is looked up globally.

    Example:
        async with DataflowRuntime(Settings.from_env()) as runtime:
            runtime.engine.register_pipeline(pipeline)
            run_id = await runtime.engine.execute_pipeline(pipeline.id)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_bus: Optional[EventBus] = None,
        prediction_backend: Optional[PredictionBackend] = None,
        online_backend: Optional[OnlineBackend] = None,
        quality_monitor: Optional[QualityMonitor] = None,
    ):
        """Initialize runtime.

        Args:
            settings: Component configuration
            event_bus: Shared bus (a fresh one when omitted)
            prediction_backend: Primary model serving backend
            online_backend: Online feature keyspace
            quality_monitor: Monitor for validate stages
        """
        self.settings = settings or Settings()
        self.event_bus = event_bus or EventBus()

        self.feature_registry = FeatureRegistry(event_bus=self.event_bus)
        self.online_store = OnlineFeatureStore(
            self.feature_registry, self.settings.online, online_backend, self.event_bus
        )
        self.offline_store = OfflineFeatureStore(
            self.feature_registry, self.settings.offline, self.event_bus
        )
        self.feature_store = FeatureStore(
            self.feature_registry, self.online_store, self.offline_store
        )
        self.model_store = ModelStore(
            self.settings.models, backend=prediction_backend, event_bus=self.event_bus
        )
        self.quality_monitor = quality_monitor or RuleQualityMonitor()

        self.engine = PipelineEngine(
            self.settings.engine,
            services=StageServices(
                feature_store=self.feature_store,
                model_store=self.model_store,
                quality_monitor=self.quality_monitor,
            ),
            event_bus=self.event_bus,
        )

        self.lineage = LineageRecorder()
        self.lineage.attach(self.event_bus)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.feature_store.start()
        await self.model_store.start()
        await self.engine.start()
        self._started = True
        logger.info("Dataflow runtime started")

    async def stop(self) -> None:
        """Stop the engine first so in-flight runs can still use the stores."""
        if not self._started:
            return
        await self.engine.stop()
        await self.model_store.stop()
        await self.feature_store.stop()
        await self.event_bus.drain()
        self._started = False
        logger.info("Dataflow runtime stopped")

    async def __aenter__(self) -> "DataflowRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


__all__ = ["DataflowRuntime"]
