"""Tests for stage definitions and retry policies.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

import pytest

from dataflow_core.errors import ConfigurationError
from dataflow_core.pipeline import (
    BackoffStrategy,
    DataPipeline,
    PipelineRun,
    PipelineStage,
    ResourceRequirements,
    RetryPolicy,
    RunStatus,
    StageType,
    calculate_retry_delay,
)


class TestRetryPolicy:
    """Test RetryPolicy class."""

    def test_defaults(self):
        """Test a default policy makes a single attempt."""
        policy = RetryPolicy()
        assert policy.max_attempts == 1
        assert policy.backoff_strategy == BackoffStrategy.FIXED

    def test_strategy_from_string(self):
        """Test strategies given as strings."""
        assert RetryPolicy(backoff_strategy="linear").backoff_strategy == BackoffStrategy.LINEAR

    def test_invalid(self):
        """Test invalid policies are rejected."""
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ConfigurationError):
            RetryPolicy(base_delay=-1)


class TestRetryDelay:
    """Test calculate_retry_delay function."""

    def test_exponential(self):
        """Test exponential delays double and then cap."""
        policy = RetryPolicy(max_attempts=3, backoff_strategy="exponential",
                             base_delay=1.0, max_delay=30.0)
        assert [calculate_retry_delay(policy, a) for a in (1, 2)] == [1.0, 2.0]

        capped = RetryPolicy(backoff_strategy="exponential", base_delay=1.0, max_delay=5.0)
        assert calculate_retry_delay(capped, 10) == 5.0

    def test_linear(self):
        """Test linear delays grow by the base each attempt."""
        policy = RetryPolicy(backoff_strategy="linear", base_delay=2.0, max_delay=30.0)
        assert [calculate_retry_delay(policy, a) for a in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_fixed(self):
        """Test fixed delays stay constant."""
        policy = RetryPolicy(base_delay=3.0)
        assert calculate_retry_delay(policy, 1) == calculate_retry_delay(policy, 4) == 3.0

    def test_jitter_bounds(self):
        """Test jitter keeps delays in [0.5, 1.0] of the base value."""
        policy = RetryPolicy(backoff_strategy="exponential", base_delay=2.0,
                             max_delay=30.0, jitter=True)
        assert calculate_retry_delay(policy, 2, rng=lambda: 0.0) == 2.0
        assert calculate_retry_delay(policy, 2, rng=lambda: 0.999) == pytest.approx(3.998)

    def test_jitter_respects_cap(self):
        """Test jittered delays never exceed the maximum."""
        policy = RetryPolicy(backoff_strategy="exponential", base_delay=10.0,
                             max_delay=4.0, jitter=True)
        for value in (0.0, 0.5, 0.99):
            assert calculate_retry_delay(policy, 3, rng=lambda: value) <= 4.0


class TestPipelineStage:
    """Test PipelineStage class."""

    def test_from_dict(self):
        """Test building a stage from JSON."""
        stage = PipelineStage.from_dict({
            "id": "score",
            "type": "ml_inference",
            "dependencies": ["extract"],
            "resources": {"cpu": 2, "memory": 512},
            "timeout": 5,
            "retry_policy": {"max_attempts": 3, "backoff_strategy": "linear"},
        })
        assert stage.type == StageType.ML_INFERENCE
        assert stage.name == "score"
        assert stage.resources.cpu == 2
        assert stage.retry_policy.max_attempts == 3

    def test_unknown_type(self):
        """Test an unknown type is a configuration error."""
        with pytest.raises(ConfigurationError, match="Unknown stage type"):
            PipelineStage(id="x", type="teleport")

    def test_missing_fields(self):
        """Test stage definitions need id and type."""
        with pytest.raises(ConfigurationError):
            PipelineStage.from_dict({"id": "x"})

    def test_resources_fit(self):
        """Test resource comparisons."""
        small = ResourceRequirements(cpu=1, memory=100)
        big = ResourceRequirements(cpu=4, memory=1000)
        assert small.fits_within(big)
        assert not big.fits_within(small)
        assert ResourceRequirements().is_empty


class TestDataPipeline:
    """Test DataPipeline class."""

    def test_round_trip(self):
        """Test to_dict output is accepted by from_dict."""
        pipeline = DataPipeline.from_dict({
            "id": "p",
            "name": "P",
            "stages": [
                {"id": "a", "type": "extract", "config": {"records": []}},
                {"id": "b", "type": "load", "dependencies": ["a"]},
            ],
        })
        again = DataPipeline.from_dict(pipeline.to_dict())
        assert again == pipeline
        assert again.get_stage("b").dependencies == ["a"]


class TestPipelineRun:
    """Test PipelineRun class."""

    def test_status_is_monotonic(self):
        """Test a run never leaves a terminal status."""
        run = PipelineRun(id="r", pipeline_id="p")
        assert run.transition(RunStatus.RUNNING)
        assert run.start_time is not None
        assert not run.transition(RunStatus.QUEUED)
        assert run.transition(RunStatus.COMPLETED)
        assert run.end_time is not None
        assert not run.transition(RunStatus.FAILED)
        assert not run.transition(RunStatus.CANCELLED)
        assert run.status == RunStatus.COMPLETED

    def test_log(self):
        """Test run log entries."""
        run = PipelineRun(id="r", pipeline_id="p")
        run.log("info", "hello", stage_id="a")
        assert run.logs[0].message == "hello"
        assert run.logs[0].metadata == {"stage_id": "a"}
