"""Quality module - batch quality checks for validate stages."""

from dataflow_core.quality.monitor import (
    QualityCheckResult,
    QualityMonitor,
    QualityReport,
    RuleQualityMonitor,
)

__all__ = [
    "QualityCheckResult",
    "QualityMonitor",
    "QualityReport",
    "RuleQualityMonitor",
]
