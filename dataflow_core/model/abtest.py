"""Dataflow A/B Testing - Traffic Splitting and Significance.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from scipy import stats

from dataflow_core.errors import ConfigurationError
from dataflow_core.model.metrics import SUCCESS_CONFIDENCE
from dataflow_core.model.types import ModelPrediction
from dataflow_core.utils.hashing import unit_hash
from dataflow_core.utils.ids import new_id
from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)

SIGNIFICANCE_LEVEL = 0.05


class ABTestStatus(Enum):
    """A/B test status."""

    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class VersionMetrics:
    """Running counters for one arm of a test."""

    version: str
    predictions: int = 0
    successes: int = 0
    total_latency_ms: float = 0.0
    total_confidence: float = 0.0

    def record(self, prediction: ModelPrediction) -> None:
        self.predictions += 1
        self.total_latency_ms += prediction.latency_ms
        self.total_confidence += prediction.confidence
        if prediction.confidence >= SUCCESS_CONFIDENCE:
            self.successes += 1

    @property
    def success_rate(self) -> float:
        return self.successes / self.predictions if self.predictions else 0.0

    @property
    def avg_latency(self) -> float:
        return self.total_latency_ms / self.predictions if self.predictions else 0.0

    @property
    def avg_confidence(self) -> float:
        return self.total_confidence / self.predictions if self.predictions else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "predictions": self.predictions,
            "success_rate": self.success_rate,
            "avg_latency": self.avg_latency,
            "avg_confidence": self.avg_confidence,
        }


@dataclass
class ABTestConfig:
    """Controlled comparison of two model versions.

    Attributes:
        version_a: Control version
        version_b: Candidate version
        traffic_split: Share of traffic routed to version_b, in [0, 1]
        min_samples: Predictions per arm before a recommendation is made
        id: Test id
        model_id: Model under test
        status: Test status
        metrics: Per-arm counters keyed "a" and "b"
        winner: Winning version, set on conclusion
        metrics_snapshot: Per-arm metrics frozen at conclusion
        created_at: Creation time
        concluded_at: Conclusion time
    """

    version_a: str
    version_b: str
    traffic_split: float = 0.5
    min_samples: int = 100
    id: str = field(default_factory=lambda: new_id("abtest"))
    model_id: str = ""
    status: ABTestStatus = ABTestStatus.ACTIVE
    metrics: Dict[str, VersionMetrics] = field(default_factory=dict)
    winner: Optional[str] = None
    metrics_snapshot: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    concluded_at: Optional[datetime] = None

    def __post_init__(self):
        self.version_a = str(self.version_a)
        self.version_b = str(self.version_b)
        if not 0.0 <= self.traffic_split <= 1.0:
            raise ConfigurationError(
                f"traffic_split must be within [0, 1], got {self.traffic_split}"
            )
        if self.version_a == self.version_b:
            raise ConfigurationError("A/B test needs two different versions")
        if not self.metrics:
            self.metrics = {
                "a": VersionMetrics(self.version_a),
                "b": VersionMetrics(self.version_b),
            }

    def version_for(self, group: str) -> str:
        return self.version_b if group == "b" else self.version_a


def route_version(config: ABTestConfig, input: Any) -> Tuple[str, str]:
    """Pick the arm for an input.

    The input hash is compared with the split, so the same input always
    lands in the same arm.

    Returns:
        (version, group)
    """
    group = "b" if unit_hash(input) < config.traffic_split else "a"
    return config.version_for(group), group


def two_proportion_z_test(
    successes_a: int,
    n_a: int,
    successes_b: int,
    n_b: int,
) -> Tuple[float, float]:
    """Two-tailed z-test for a difference in success proportions.

    Returns:
        (z score, p value); (0.0, 1.0) when there is nothing to compare
    """
    if n_a == 0 or n_b == 0:
        return 0.0, 1.0

    p_a = successes_a / n_a
    p_b = successes_b / n_b
    p_pool = (successes_a + successes_b) / (n_a + n_b)
    se = math.sqrt(p_pool * (1 - p_pool) * (1 / n_a + 1 / n_b))
    if se == 0:
        return 0.0, 1.0

    z = (p_b - p_a) / se
    p_value = 2 * (1 - stats.norm.cdf(abs(z)))
    return float(z), float(p_value)


@dataclass
class ABTestResults:
    """Evaluation of a test.

    Attributes:
        test_id: Test id
        model_id: Model id
        status: Test status
        traffic_split: Configured split
        version_a: Control arm metrics
        version_b: Candidate arm metrics
        z_score: Test statistic
        p_value: Two-tailed p value
        statistical_significance: 1 - p_value
        recommendation: "a", "b" or "inconclusive"
        winner: Winner if concluded
    """

    test_id: str
    model_id: str
    status: ABTestStatus
    traffic_split: float
    version_a: Dict[str, Any]
    version_b: Dict[str, Any]
    z_score: float
    p_value: float
    statistical_significance: float
    recommendation: str
    winner: Optional[str] = None


def evaluate_ab_test(config: ABTestConfig) -> ABTestResults:
    """Compare the two arms of a test."""
    arm_a, arm_b = config.metrics["a"], config.metrics["b"]
    z, p_value = two_proportion_z_test(
        arm_a.successes, arm_a.predictions, arm_b.successes, arm_b.predictions
    )

    enough = min(arm_a.predictions, arm_b.predictions) >= config.min_samples
    if enough and p_value < SIGNIFICANCE_LEVEL:
        recommendation = "b" if arm_b.success_rate > arm_a.success_rate else "a"
    else:
        recommendation = "inconclusive"

    return ABTestResults(
        test_id=config.id,
        model_id=config.model_id,
        status=config.status,
        traffic_split=config.traffic_split,
        version_a=arm_a.to_dict(),
        version_b=arm_b.to_dict(),
        z_score=z,
        p_value=p_value,
        statistical_significance=1.0 - p_value,
        recommendation=recommendation,
        winner=config.winner,
    )


__all__ = [
    "ABTestStatus",
    "VersionMetrics",
    "ABTestConfig",
    "ABTestResults",
    "route_version",
    "two_proportion_z_test",
    "evaluate_ab_test",
]
