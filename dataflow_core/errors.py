"""Dataflow Errors - Exception Hierarchy.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

Every error carries a ``retryable`` flag so API callers can tell
configuration problems from transient and capacity conditions.
"""

from __future__ import annotations

from typing import Optional


class DataflowError(Exception):
    """Base class for all dataflow errors."""

    retryable: bool = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        """Structured form for API responses."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


class ConfigurationError(DataflowError):
    """Invalid definition: cyclic pipeline, unknown reference, bad config."""


class NotFoundError(DataflowError):
    """Referenced pipeline, run, model, test or job does not exist."""


class CapacityError(DataflowError):
    """Concurrency ceiling or resource capacity reached."""

    retryable = True


class EngineStateError(DataflowError):
    """Operation requires a started component."""


class StageExecutionError(DataflowError):
    """A pipeline stage failed after exhausting its retry policy."""

    retryable = True

    def __init__(
        self,
        message: str,
        stage_id: Optional[str] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, stage_id=stage_id, attempts=attempts)
        self.stage_id = stage_id
        self.attempts = attempts
        self.cause = cause


class PipelineCancelledError(DataflowError):
    """Raised inside a run once cooperative cancellation is observed."""


class QualityGateError(DataflowError):
    """A quality gate rejected a batch of records."""


class PredictionError(DataflowError):
    """Remote serving and local fallback both failed."""

    retryable = True


__all__ = [
    "DataflowError",
    "ConfigurationError",
    "NotFoundError",
    "CapacityError",
    "EngineStateError",
    "StageExecutionError",
    "PipelineCancelledError",
    "PredictionError",
    "QualityGateError",
]
