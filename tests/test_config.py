"""Tests for configuration loading.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from dataflow_core.config import (
    EngineConfig,
    ModelStoreConfig,
    OfflineStoreConfig,
    Settings,
)
from dataflow_core.errors import ConfigurationError


class TestSettings:
    """Test Settings class."""

    def test_defaults(self):
        """Test default values."""
        settings = Settings.from_dict({})
        assert settings.engine.max_concurrent_runs == 10
        assert settings.online.default_ttl == 3600
        assert settings.offline.default_chunk_size == timedelta(hours=24)
        assert settings.models.auto_rollback is True
        assert settings.log_level == "INFO"

    def test_from_env(self, monkeypatch):
        """Test nested DATAFLOW_* variables are parsed into typed fields."""
        monkeypatch.setenv("DATAFLOW_ENGINE__MAX_CONCURRENT_RUNS", "3")
        monkeypatch.setenv("DATAFLOW_ENGINE__RUN_TIMEOUT", "90.5")
        monkeypatch.setenv("DATAFLOW_MODELS__AUTO_ROLLBACK", "false")
        monkeypatch.setenv("DATAFLOW_MODELS__SERVING_TRANSPORT", "http")
        monkeypatch.setenv("DATAFLOW_LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.engine.max_concurrent_runs == 3
        assert settings.engine.run_timeout == 90.5
        assert settings.models.auto_rollback is False
        assert settings.models.serving_transport == "http"
        assert settings.online.default_ttl == 3600
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("name, value", [
        ("DATAFLOW_ENGINE__MAX_CONCURRENT_RUNS", "many"),
        ("DATAFLOW_ENGINE__MAX_CONCURRENT_RUNS", "0"),
        ("DATAFLOW_MODELS__AUTO_ROLLBACK", "ture"),
        ("DATAFLOW_MODELS__PERFORMANCE_THRESHOLD", "1.5"),
        ("DATAFLOW_LOG_LEVEL", "chatty"),
    ])
    def test_invalid_env(self, monkeypatch, name, value):
        """Test unparsable or out-of-range variables are configuration errors."""
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_from_dict_coerces_and_validates(self):
        """Test file values are typed and bad values rejected."""
        settings = Settings.from_dict({"engine": {"max_concurrent_runs": "5"}})
        assert settings.engine.max_concurrent_runs == 5
        assert isinstance(settings.engine.max_concurrent_runs, int)

        with pytest.raises(ConfigurationError, match="cpu_capacity"):
            Settings.from_dict({"engine": {"cpu_capacity": "lots"}})
        with pytest.raises(ConfigurationError):
            Settings.from_dict({"engine": {"memory_capacity": -1}})

    def test_from_dict_overrides_environment(self, monkeypatch):
        """Test explicit values win over variables."""
        monkeypatch.setenv("DATAFLOW_LOG_LEVEL", "ERROR")
        assert Settings.from_dict({"log_level": "WARNING"}).log_level == "WARNING"
        assert Settings.from_dict({}).log_level == "ERROR"

    def test_load_file(self, tmp_path):
        """Test loading a JSON settings file."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({
            "engine": {"max_concurrent_runs": 2},
            "offline": {"default_chunk_hours": 6},
            "log_level": "WARNING",
        }))

        settings = Settings.load(path)

        assert settings.engine.max_concurrent_runs == 2
        assert settings.offline.default_chunk_size == timedelta(hours=6)
        assert settings.models == ModelStoreConfig()
        assert Settings.from_dict(settings.to_dict()) == settings

    @pytest.mark.parametrize("data", [
        {"cache": {}},
        {"engine": {"workers": 4}},
    ])
    def test_unknown_keys(self, data):
        """Test unknown sections and fields are rejected."""
        with pytest.raises(ConfigurationError):
            Settings.from_dict(data)

    def test_unreadable_file(self, tmp_path):
        """Test missing or malformed files."""
        with pytest.raises(ConfigurationError):
            Settings.load(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        with pytest.raises(ConfigurationError):
            Settings.load(bad)


class TestModelStoreConfig:
    """Test ModelStoreConfig class."""

    @pytest.mark.parametrize("kwargs", [
        {"serving_transport": "grpc"},
        {"performance_threshold": 1.5},
        {"rollback_min_predictions": 50, "rollback_window": 10},
        {"batch_size": 0},
    ])
    def test_validation(self, kwargs):
        """Test transport, threshold and window checks."""
        with pytest.raises(ValidationError):
            ModelStoreConfig(**kwargs)

    def test_offline_chunk_size(self):
        """Test chunk width conversion."""
        assert OfflineStoreConfig(default_chunk_hours=0.5).default_chunk_size == timedelta(
            minutes=30
        )

    def test_engine_capacity(self):
        """Test capacities accept zero but not negatives."""
        assert EngineConfig(gpu_capacity=0).gpu_capacity == 0.0
        with pytest.raises(ValidationError):
            EngineConfig(gpu_capacity=-1)
