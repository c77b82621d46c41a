"""Dataflow Model Types - Models, Deployments and Predictions.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dataflow_core.utils.ids import new_id
from dataflow_core.utils.timing import ensure_utc, utcnow


class ModelType(Enum):
    """Model families."""

    CLASSIFICATION = "classification"
    REGRESSION = "regression"
    CLUSTERING = "clustering"
    RECOMMENDATION = "recommendation"
    ANOMALY_DETECTION = "anomaly_detection"
    TIME_SERIES = "time_series"
    NLP = "nlp"
    EMBEDDING = "embedding"


class ModelStatus(Enum):
    """Model version lifecycle status."""

    TRAINING = "training"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    FAILED = "failed"


class DeploymentStatus(Enum):
    """Deployment status.

    SUPERSEDED marks a deployment replaced by a newer one; it is the pool
    rollback targets are chosen from.
    """

    DEPLOYING = "deploying"
    ACTIVE = "active"
    UNHEALTHY = "unhealthy"
    ROLLEDBACK = "rolledback"
    SUPERSEDED = "superseded"

    @property
    def is_serving(self) -> bool:
        return self in (DeploymentStatus.ACTIVE, DeploymentStatus.UNHEALTHY)


class HealthState(Enum):
    """Last observed endpoint health."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class MLModel:
    """A registered model version.

    Attributes:
        name: Model name
        version: Version label
        type: Model family
        features: Input feature names
        target: Target variable
        config: Algorithm and hyperparameters
        status: Lifecycle status
        id: Model id shared by all versions of one name
        metadata: Free-form metadata (owner, training stats)
        created_at: Registration time
    """

    name: str
    version: str
    type: ModelType
    features: List[str] = field(default_factory=list)
    target: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    status: ModelStatus = ModelStatus.ACTIVE
    id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = ModelType(self.type)
        if isinstance(self.status, str):
            self.status = ModelStatus(self.status)
        self.version = str(self.version)


@dataclass
class ModelDeployment:
    """A version deployed behind a serving endpoint.

    Attributes:
        model_id: Model id
        version: Deployed version
        status: Deployment status
        endpoint: Prediction endpoint URL
        health_status: Last observed health
        config: Deployment options
        id: Deployment id
        deployed_at: When it became active
        rolled_back_to: Version that replaced it on rollback
        superseded_by: Deployment id that replaced it
        last_health_check: When health was last polled
    """

    model_id: str
    version: str
    status: DeploymentStatus = DeploymentStatus.DEPLOYING
    endpoint: str = ""
    health_status: HealthState = HealthState.UNKNOWN
    config: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("dep"))
    deployed_at: Optional[datetime] = None
    rolled_back_to: Optional[str] = None
    superseded_by: Optional[str] = None
    last_health_check: Optional[datetime] = None


@dataclass
class PredictionOptions:
    """Per-request prediction options.

    Attributes:
        version: Requested version when no A/B test is active
        timeout: Remote call timeout in seconds
        explain: Ask the backend for an explanation
    """

    version: Optional[str] = None
    timeout: Optional[float] = None
    explain: bool = False


@dataclass(frozen=True)
class ModelPrediction:
    """An immutable record of one served prediction.

    Attributes:
        model_id: Model id
        version: Effective version that served it
        input: Request input
        output: Model output
        confidence: Confidence in [0, 1]
        latency_ms: End-to-end latency
        ab_group: "a" or "b" when routed by a test
        ab_test_id: Routing test
        deployment_id: Serving deployment
        served_by: "remote" or "local"
        id: Prediction id
        timestamp: When it was served
    """

    model_id: str
    version: str
    input: Any
    output: Any
    confidence: float
    latency_ms: float
    ab_group: Optional[str] = None
    ab_test_id: Optional[str] = None
    deployment_id: Optional[str] = None
    served_by: str = "remote"
    id: str = field(default_factory=lambda: new_id("pred"))
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))


@dataclass
class TimeRange:
    """Inclusive time window."""

    start: datetime
    end: datetime

    def __post_init__(self):
        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


__all__ = [
    "ModelType",
    "ModelStatus",
    "DeploymentStatus",
    "HealthState",
    "MLModel",
    "ModelDeployment",
    "PredictionOptions",
    "ModelPrediction",
    "TimeRange",
]
