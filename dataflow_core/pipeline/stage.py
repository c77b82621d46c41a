"""Dataflow Stage - Pipeline Stage Definitions.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from dataflow_core.errors import ConfigurationError


class StageType(Enum):
    """Kinds of work a stage performs."""

    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD = "load"
    VALIDATE = "validate"
    ENRICH = "enrich"
    ML_TRAINING = "ml_training"
    ML_INFERENCE = "ml_inference"


class StageStatus(Enum):
    """Stage execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class BackoffStrategy(Enum):
    """Delay growth between retry attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass
class RetryPolicy:
    """Retry policy for a stage.

    Attributes:
        max_attempts: Total attempts including the first
        backoff_strategy: How the delay grows
        base_delay: Base delay in seconds
        max_delay: Upper bound on any delay in seconds
        jitter: Randomize delays into [0.5, 1.0) of their value
    """

    max_attempts: int = 1
    backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False

    def __post_init__(self):
        if isinstance(self.backoff_strategy, str):
            self.backoff_strategy = BackoffStrategy(self.backoff_strategy)
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("Retry delays must be non-negative")


def calculate_retry_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before the retry that follows ``attempt``.

    Args:
        policy: Retry policy
        attempt: 1-based number of the attempt that just failed
        rng: Source of uniform [0, 1) values for jitter

    Returns:
        Delay in seconds, never above ``policy.max_delay``
    """
    attempt = max(1, attempt)

    if policy.backoff_strategy == BackoffStrategy.LINEAR:
        delay = policy.base_delay * attempt
    elif policy.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        delay = policy.base_delay * (2 ** (attempt - 1))
    else:
        delay = policy.base_delay

    if policy.jitter:
        delay *= 0.5 + rng() * 0.5

    return min(delay, policy.max_delay)


@dataclass
class ResourceRequirements:
    """Resources a stage holds while it runs.

    Attributes:
        cpu: CPU units
        memory: Memory in MB
        storage: Storage in MB
        gpu: GPU count
    """

    cpu: float = 0.0
    memory: float = 0.0
    storage: float = 0.0
    gpu: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "cpu": self.cpu,
            "memory": self.memory,
            "storage": self.storage,
            "gpu": self.gpu,
        }

    def fits_within(self, other: "ResourceRequirements") -> bool:
        return all(v <= other.as_dict()[k] for k, v in self.as_dict().items())

    @property
    def is_empty(self) -> bool:
        return not any(self.as_dict().values())


@dataclass
class PipelineStage:
    """A single stage in a pipeline.

    Attributes:
        id: Stage identifier, unique within the pipeline
        type: Stage type, selects the handler
        name: Human-readable name
        config: Handler configuration
        dependencies: Ids of stages that must complete first
        resources: Resources held while running
        timeout: Per-attempt timeout in seconds
        retry_policy: Retry policy
    """

    id: str
    type: StageType
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    timeout: Optional[float] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if isinstance(self.type, str):
            try:
                self.type = StageType(self.type)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown stage type '{self.type}' for stage {self.id}"
                ) from e
        if not self.name:
            self.name = self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineStage":
        """Build a stage from its JSON definition."""
        if "id" not in data or "type" not in data:
            raise ConfigurationError(f"Stage definition requires id and type: {data}")
        return cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            config=dict(data.get("config", {})),
            dependencies=list(data.get("dependencies", [])),
            resources=ResourceRequirements(**data.get("resources", {})),
            timeout=data.get("timeout"),
            retry_policy=RetryPolicy(**data.get("retry_policy", {})),
        )


@dataclass
class StageResult:
    """Result of stage execution.

    Attributes:
        stage_id: Stage identifier
        status: Execution status
        output: Handler output
        error: Error message if failed
        attempts: Attempts made
        started_at: When the first attempt started
        completed_at: When the stage finished
        duration_seconds: Total duration including retry waits
    """

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == StageStatus.COMPLETED


__all__ = [
    "StageType",
    "StageStatus",
    "BackoffStrategy",
    "RetryPolicy",
    "calculate_retry_delay",
    "ResourceRequirements",
    "PipelineStage",
    "StageResult",
]
