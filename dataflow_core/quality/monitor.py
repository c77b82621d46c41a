"""Dataflow Quality - Record Batch Quality Checks.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from dataflow_core.errors import ConfigurationError
from dataflow_core.utils.hashing import canonical_json
from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


@dataclass
class QualityCheckResult:
    """Outcome of one declared check.

    Attributes:
        name: Check name
        check_type: Check type
        score: Fraction of records passing, in [0, 1]
        threshold: Minimum score to pass
        failing_rows: Indices of failing records (capped)
    """

    name: str
    check_type: str
    score: float
    threshold: float
    failing_rows: List[int] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.score >= self.threshold


@dataclass
class QualityReport:
    """Pass/fail report with per-check scores."""

    passed: bool
    results: List[QualityCheckResult] = field(default_factory=list)
    record_count: int = 0
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def scores(self) -> Dict[str, float]:
        return {r.name: r.score for r in self.results}

    @property
    def failures(self) -> List[str]:
        return [r.name for r in self.results if not r.passed]


class QualityMonitor(ABC):
    """Executes declared checks over a batch of records."""

    @abstractmethod
    def check(self, records: List[Record], checks: List[Dict[str, Any]]) -> QualityReport:
        """Run checks and report per-check scores."""


class RuleQualityMonitor(QualityMonitor):
    """Quality monitor with a small built-in rule set.

    Check definitions:
        {"type": "not_null", "field": "email"}
        {"type": "unique", "field": "id"}
        {"type": "range", "field": "score", "min": 0, "max": 1}
        {"type": "pattern", "field": "domain", "pattern": "^[a-z0-9.-]+$"}
        {"type": "completeness", "fields": ["email", "company"], "threshold": 0.9}

    ``threshold`` defaults to 1.0 (every record must pass).
    """

    max_failing_rows = 100

    def __init__(self):
        self._rules: Dict[str, Callable[[List[Record], Dict[str, Any]], List[bool]]] = {
            "not_null": self._not_null,
            "unique": self._unique,
            "range": self._in_range,
            "pattern": self._pattern,
            "completeness": self._completeness,
        }

    def add_rule(
        self,
        check_type: str,
        rule: Callable[[List[Record], Dict[str, Any]], List[bool]],
    ) -> None:
        """Register a custom check type returning one bool per record."""
        self._rules[check_type] = rule

    def check(self, records: List[Record], checks: List[Dict[str, Any]]) -> QualityReport:
        results = []

        for i, check in enumerate(checks):
            check_type = check.get("type")
            rule = self._rules.get(check_type)
            if rule is None:
                raise ConfigurationError(f"Unknown quality check: {check_type}")

            outcomes = rule(records, check) if records else []
            passing = sum(outcomes)
            score = passing / len(outcomes) if outcomes else 1.0
            failing = [idx for idx, ok in enumerate(outcomes) if not ok]

            results.append(QualityCheckResult(
                name=check.get("name", f"{check_type}_{check.get('field', i)}"),
                check_type=check_type,
                score=score,
                threshold=float(check.get("threshold", 1.0)),
                failing_rows=failing[:self.max_failing_rows],
            ))

        report = QualityReport(
            passed=all(r.passed for r in results),
            results=results,
            record_count=len(records),
        )

        if not report.passed:
            logger.info(f"Quality checks failed: {report.failures}")

        return report

    def _not_null(self, records, check):
        name = check["field"]
        return [r.get(name) is not None for r in records]

    def _unique(self, records, check):
        name = check["field"]
        seen: Dict[str, int] = {}
        for r in records:
            key = canonical_json(r.get(name))
            seen[key] = seen.get(key, 0) + 1
        return [seen[canonical_json(r.get(name))] == 1 for r in records]

    def _in_range(self, records, check):
        name = check["field"]
        low = check.get("min", float("-inf"))
        high = check.get("max", float("inf"))
        return [
            isinstance(r.get(name), (int, float)) and low <= r[name] <= high
            for r in records
        ]

    def _pattern(self, records, check):
        name = check["field"]
        pattern = re.compile(check["pattern"])
        return [isinstance(r.get(name), str) and bool(pattern.search(r[name])) for r in records]

    def _completeness(self, records, check):
        names = check["fields"]
        return [all(r.get(n) not in (None, "") for n in names) for r in records]


__all__ = [
    "QualityCheckResult",
    "QualityReport",
    "QualityMonitor",
    "RuleQualityMonitor",
]
