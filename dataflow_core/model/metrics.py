"""Dataflow Model Metrics - Rolling Prediction Performance.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from dataflow_core.model.types import ModelPrediction, TimeRange
from dataflow_core.utils.timing import utcnow

SUCCESS_CONFIDENCE = 0.5


def confidence_bucket(confidence: float) -> str:
    """Histogram bucket label, the confidence floored to tenths."""
    bucket = math.floor(min(max(confidence, 0.0), 1.0) * 10) / 10
    return f"{bucket:.1f}"


@dataclass
class PerformanceMetrics:
    """Metrics over a set of predictions.

    Attributes:
        model_id: Model id
        total_predictions: Predictions counted
        successful_predictions: Predictions with confidence >= 0.5
        avg_latency: Mean latency in ms
        p50_latency: Median latency in ms
        p95_latency: 95th percentile latency in ms
        success_rate: successful / total
        error_rate: 1 - success_rate
        avg_confidence: Mean confidence
        confidence_distribution: Bucket label -> count
        time_range: Window the metrics cover
        last_updated: When they were computed
    """

    model_id: str
    total_predictions: int = 0
    successful_predictions: int = 0
    avg_latency: float = 0.0
    p50_latency: float = 0.0
    p95_latency: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_confidence: float = 0.0
    confidence_distribution: Dict[str, int] = field(default_factory=dict)
    time_range: Optional[TimeRange] = None
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "model_id": self.model_id,
            "total_predictions": self.total_predictions,
            "successful_predictions": self.successful_predictions,
            "avg_latency": self.avg_latency,
            "p50_latency": self.p50_latency,
            "p95_latency": self.p95_latency,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "avg_confidence": self.avg_confidence,
            "confidence_distribution": dict(self.confidence_distribution),
        }


def compute_performance_metrics(
    model_id: str,
    predictions: Iterable[ModelPrediction],
    time_range: Optional[TimeRange] = None,
) -> PerformanceMetrics:
    """Aggregate prediction records.

    Args:
        model_id: Model id the metrics are reported for
        predictions: Prediction records (already filtered by caller)
        time_range: Window reported back on the result

    Returns:
        PerformanceMetrics; all-zero when there are no predictions
    """
    predictions = list(predictions)
    metrics = PerformanceMetrics(model_id=model_id, time_range=time_range)
    if not predictions:
        return metrics

    latencies = np.array([p.latency_ms for p in predictions], dtype=float)
    confidences = np.array([p.confidence for p in predictions], dtype=float)

    successes = int(np.sum(confidences >= SUCCESS_CONFIDENCE))
    distribution: Dict[str, int] = {}
    for confidence in confidences:
        label = confidence_bucket(float(confidence))
        distribution[label] = distribution.get(label, 0) + 1

    metrics.total_predictions = len(predictions)
    metrics.successful_predictions = successes
    metrics.success_rate = successes / len(predictions)
    metrics.error_rate = 1.0 - metrics.success_rate
    metrics.avg_latency = float(np.mean(latencies))
    metrics.p50_latency = float(np.percentile(latencies, 50))
    metrics.p95_latency = float(np.percentile(latencies, 95))
    metrics.avg_confidence = float(np.mean(confidences))
    metrics.confidence_distribution = dict(sorted(distribution.items()))
    return metrics


def success_rate(predictions: List[ModelPrediction]) -> float:
    """Fraction of predictions with confidence >= 0.5."""
    if not predictions:
        return 0.0
    return sum(1 for p in predictions if p.confidence >= SUCCESS_CONFIDENCE) / len(predictions)


__all__ = [
    "SUCCESS_CONFIDENCE",
    "PerformanceMetrics",
    "compute_performance_metrics",
    "confidence_bucket",
    "success_rate",
]
