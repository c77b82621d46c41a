"""Model module - registry, serving, experiments and rollback."""

from dataflow_core.model.types import (
    DeploymentStatus,
    HealthState,
    MLModel,
    ModelDeployment,
    ModelPrediction,
    ModelStatus,
    ModelType,
    PredictionOptions,
    TimeRange,
)
from dataflow_core.model.registry import ModelRegistry
from dataflow_core.model.metrics import PerformanceMetrics, compute_performance_metrics
from dataflow_core.model.backends import (
    HttpPredictionBackend,
    LocalPredictionBackend,
    PredictionBackend,
    PredictionOutput,
    create_prediction_backend,
)
from dataflow_core.model.abtest import (
    ABTestConfig,
    ABTestResults,
    ABTestStatus,
    route_version,
    two_proportion_z_test,
)
from dataflow_core.model.store import ModelStore

__all__ = [
    "ModelType",
    "ModelStatus",
    "DeploymentStatus",
    "HealthState",
    "MLModel",
    "ModelDeployment",
    "ModelPrediction",
    "PredictionOptions",
    "TimeRange",
    "ModelRegistry",
    "PerformanceMetrics",
    "compute_performance_metrics",
    "PredictionBackend",
    "PredictionOutput",
    "HttpPredictionBackend",
    "LocalPredictionBackend",
    "create_prediction_backend",
    "ABTestConfig",
    "ABTestResults",
    "ABTestStatus",
    "route_version",
    "two_proportion_z_test",
    "ModelStore",
]
