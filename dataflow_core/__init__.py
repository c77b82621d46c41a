"""Dataflow Core - Outreach Data Pipeline, Feature and Model Stores.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

The data core of a B2B outreach platform:
- DAG pipeline engine with concurrent stage groups, retries and cancellation
- Resource-gated stage execution and stuck-run sweeping
- Feature store with TTL online serving and point-in-time offline history
- Feature registry with dependency lineage
- Model store with deployment, A/B routing and automatic rollback
- Typed event bus feeding lineage and monitoring

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                      Dataflow Core Runtime                       │
    ├─────────────────────────────────────────────────────────────────┤
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────┐             │
    │  │   Engine    │  │    DAG      │  │  Handlers   │  PIPELINE   │
    │  │ Runs/Sweep  │  │   Groups    │  │ Stage Types │    LAYER    │
    │  └──────┬──────┘  └──────┬──────┘  └──────┬──────┘             │
    │         │                │                │                     │
    │  ┌──────┴────────────────┴────────────────┴──────┐             │
    │  │                Feature Store                   │             │
    │  │   ┌──────┐  ┌───────┐  ┌────────┐  ┌─────┐   │   FEATURE   │
    │  │   │Online│  │Offline│  │Registry│  │View │   │    LAYER    │
    │  │   └──────┘  └───────┘  └────────┘  └─────┘   │             │
    │  └──────────────────────┬────────────────────────┘             │
    │                         │                                       │
    │  ┌──────────────────────┴────────────────────────┐             │
    │  │                 Model Store                    │             │
    │  │   ┌────────┐  ┌────────┐  ┌────────┐         │   MODEL     │
    │  │   │Deploy  │  │  A/B   │  │Rollback│         │   LAYER     │
    │  │   └────────┘  └────────┘  └────────┘         │             │
    │  └──────────────────────┬────────────────────────┘             │
    │                         │                                       │
    │  ┌──────────────────────┴────────────────────────┐             │
    │  │                  Event Bus                     │             │
    │  │   ┌────────┐  ┌────────┐  ┌────────┐         │   EVENT     │
    │  │   │Lineage │  │Quality │  │ Alerts │         │   LAYER     │
    │  │   └────────┘  └────────┘  └────────┘         │             │
    │  └──────────────────────────────────────────────┘             │
    └─────────────────────────────────────────────────────────────────┘

Example Usage:
    from dataflow_core import DataflowRuntime, DataPipeline, Settings

    pipeline = DataPipeline.from_dict({
        "id": "prospect-enrichment",
        "name": "Prospect enrichment",
        "stages": [
            {"id": "extract", "type": "extract", "config": {"source": "crm"}},
            {"id": "clean", "type": "transform", "dependencies": ["extract"],
             "config": {"operations": [{"type": "normalize", "fields": {"email": "email"}}]}},
        ],
    })

    async with DataflowRuntime(Settings.from_env()) as runtime:
        runtime.engine.register_pipeline(pipeline)
        run_id = await runtime.engine.execute_pipeline(pipeline.id)
        run = await runtime.engine.wait_for_run(run_id)
"""

__version__ = "1.0.0"
__author__ = "BlackRoad OS"

from dataflow_core.config import (
    EngineConfig,
    ModelStoreConfig,
    OfflineStoreConfig,
    OnlineStoreConfig,
    Settings,
)
from dataflow_core.errors import (
    CapacityError,
    ConfigurationError,
    DataflowError,
    EngineStateError,
    NotFoundError,
    PipelineCancelledError,
    PredictionError,
    QualityGateError,
    StageExecutionError,
)
from dataflow_core.events import EventBus, EventType
from dataflow_core.pipeline import (
    DataPipeline,
    PipelineEngine,
    PipelineRun,
    PipelineStage,
    RetryPolicy,
    RunStatus,
    StageType,
)
from dataflow_core.feature import (
    Feature,
    FeatureGroup,
    FeatureRegistry,
    FeatureStore,
    OfflineFeatureStore,
    OnlineFeatureStore,
)
from dataflow_core.model import ABTestConfig, MLModel, ModelStore, ModelType
from dataflow_core.quality import QualityMonitor, RuleQualityMonitor
from dataflow_core.lineage import LineageRecorder
from dataflow_core.runtime import DataflowRuntime

__all__ = [
    # Config
    "Settings",
    "EngineConfig",
    "OnlineStoreConfig",
    "OfflineStoreConfig",
    "ModelStoreConfig",
    # Errors
    "DataflowError",
    "ConfigurationError",
    "NotFoundError",
    "CapacityError",
    "EngineStateError",
    "StageExecutionError",
    "PipelineCancelledError",
    "PredictionError",
    "QualityGateError",
    # Events
    "EventBus",
    "EventType",
    # Pipeline
    "DataPipeline",
    "PipelineStage",
    "PipelineRun",
    "RunStatus",
    "StageType",
    "RetryPolicy",
    "PipelineEngine",
    # Feature
    "Feature",
    "FeatureGroup",
    "FeatureRegistry",
    "OnlineFeatureStore",
    "OfflineFeatureStore",
    "FeatureStore",
    # Model
    "MLModel",
    "ModelType",
    "ModelStore",
    "ABTestConfig",
    # Quality and lineage
    "QualityMonitor",
    "RuleQualityMonitor",
    "LineageRecorder",
    # Runtime
    "DataflowRuntime",
]
