"""Dataflow Config - Component Configuration.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

Each component takes a validated pydantic model. ``Settings`` aggregates
them and reads ``DATAFLOW_*`` environment variables, with nested sections
addressed as ``DATAFLOW_ENGINE__MAX_CONCURRENT_RUNS``.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from dataflow_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DATAFLOW_"


class EngineConfig(BaseModel):
    """Pipeline engine configuration.

    Attributes:
        max_concurrent_runs: Ceiling on in-flight runs
        monitor_interval: Seconds between stuck-run sweeps
        run_timeout: Seconds a run may stay running before the sweep cancels it
        drain_timeout: Seconds stop() waits for active runs
        cpu_capacity: Total CPU units for concurrent stages
        memory_capacity: Total memory (MB)
        storage_capacity: Total storage (MB)
        gpu_capacity: Total GPUs
    """

    model_config = ConfigDict(extra="forbid")

    max_concurrent_runs: PositiveInt = 10
    monitor_interval: PositiveFloat = 30.0
    run_timeout: PositiveFloat = 3600.0
    drain_timeout: NonNegativeFloat = 30.0
    cpu_capacity: NonNegativeFloat = 16.0
    memory_capacity: NonNegativeFloat = 32768.0
    storage_capacity: NonNegativeFloat = 102400.0
    gpu_capacity: NonNegativeFloat = 0.0


class OnlineStoreConfig(BaseModel):
    """Online feature store configuration.

    Attributes:
        default_ttl: Seconds before a value expires when no TTL is configured
        latency_threshold_ms: Ping latency above which health is degraded
        health_check_interval: Seconds between background health checks
    """

    model_config = ConfigDict(extra="forbid")

    default_ttl: PositiveInt = 3600
    latency_threshold_ms: PositiveFloat = 10.0
    health_check_interval: PositiveFloat = 30.0


class OfflineStoreConfig(BaseModel):
    """Offline feature store configuration."""

    model_config = ConfigDict(extra="forbid")

    default_parallelism: PositiveInt = 4
    default_chunk_hours: PositiveFloat = 24.0

    @property
    def default_chunk_size(self) -> timedelta:
        return timedelta(hours=self.default_chunk_hours)


class ModelStoreConfig(BaseModel):
    """Model store configuration.

    Attributes:
        serving_base_url: Base URL of remote serving endpoints
        serving_transport: "local" or "http"
        performance_threshold: Success rate below which a model is degraded
        auto_rollback: Roll back automatically on degradation
        rollback_min_predictions: Predictions needed before the rollback check applies
        rollback_window: Most recent predictions the rollback check looks at
        rollback_on_health_degradation: Also roll back when health checks fail
        max_prediction_history: Bounded prediction history size
        health_check_interval: Seconds between deployment health polls
        prediction_timeout: Seconds before a remote prediction falls back
        batch_size: Chunk size for batch predictions
    """

    model_config = ConfigDict(extra="forbid")

    serving_base_url: str = "http://localhost:8501"
    serving_transport: Literal["local", "http"] = "local"
    performance_threshold: float = Field(0.5, ge=0.0, le=1.0)
    auto_rollback: bool = True
    rollback_min_predictions: PositiveInt = 20
    rollback_window: PositiveInt = 100
    rollback_on_health_degradation: bool = False
    max_prediction_history: PositiveInt = 10000
    health_check_interval: PositiveFloat = 30.0
    prediction_timeout: PositiveFloat = 5.0
    batch_size: PositiveInt = 32

    @model_validator(mode="after")
    def _check_window(self) -> "ModelStoreConfig":
        if self.rollback_window < self.rollback_min_predictions:
            raise ValueError("rollback_window must be at least rollback_min_predictions")
        return self


class Settings(BaseSettings):
    """Aggregate configuration for a dataflow runtime."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="forbid",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    online: OnlineStoreConfig = Field(default_factory=OnlineStoreConfig)
    offline: OfflineStoreConfig = Field(default_factory=OfflineStoreConfig)
    models: ModelStoreConfig = Field(default_factory=ModelStoreConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from DATAFLOW_* environment variables.

        Raises:
            ConfigurationError: If a variable does not validate
        """
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}") from e

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a nested dictionary.

        Values given here take precedence over DATAFLOW_* variables.

        Args:
            data: Mapping of section name to field values

        Returns:
            Settings

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Settings":
        """Load settings from a JSON file."""
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e
        logger.info(f"Loaded settings from {path}")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


__all__ = [
    "EngineConfig",
    "OnlineStoreConfig",
    "OfflineStoreConfig",
    "ModelStoreConfig",
    "Settings",
]
