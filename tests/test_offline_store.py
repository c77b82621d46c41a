"""Tests for the offline feature store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.events import EventType
from dataflow_core.feature import FeatureRecord, JobStatus, RetrievalOptions
from dataflow_core.feature.offline import parse_filter_expression

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def at(hours):
    return T0 + timedelta(hours=hours)


class TestHistoricalRetrieval:
    """Test point-in-time lookups."""

    def test_point_in_time(self, offline_store):
        """Test the latest value at or before the point in time is returned."""
        offline_store.write("open_rate", "p1", 0.1, timestamp=at(0))
        offline_store.write("open_rate", "p1", 0.3, timestamp=at(10))
        offline_store.write("open_rate", "p1", 0.2, timestamp=at(5))

        def lookup(hours):
            return offline_store.get_historical_features(["open_rate"], ["p1"], at(hours))

        assert lookup(-1) == {"p1": {"open_rate": None}}
        assert lookup(0) == {"p1": {"open_rate": 0.1}}
        assert lookup(7) == {"p1": {"open_rate": 0.2}}
        assert lookup(10) == {"p1": {"open_rate": 0.3}}
        assert [v.value for v in offline_store.get_history("open_rate", "p1")] == [0.1, 0.2, 0.3]

    def test_max_age(self, offline_store):
        """Test stale values are treated as missing."""
        offline_store.write("open_rate", "p1", 0.1, timestamp=at(0))
        options = RetrievalOptions(max_age=timedelta(hours=2))
        assert offline_store.get_historical_features(
            ["open_rate"], ["p1"], at(3), options
        ) == {"p1": {"open_rate": None}}

    def test_include_metadata(self, offline_store):
        """Test full values are returned on request."""
        offline_store.write("open_rate", "p1", 0.1, timestamp=at(0), source="crm")
        row = offline_store.get_historical_features(
            ["open_rate"], ["p1"], at(1), RetrievalOptions(include_metadata=True)
        )["p1"]
        assert row["open_rate"].source == "crm"

    def test_unknown_feature(self, offline_store):
        """Test unregistered features come back empty."""
        assert offline_store.get_historical_features(["ghost"], ["p1"], at(0)) == {
            "p1": {"ghost": None}
        }


class TestComputation:
    """Test chunked computation jobs."""

    async def test_chunks_in_parallel(self, offline_store, bus):
        """Test every chunk is computed and written."""
        seen = []

        async def compute(group, start, end):
            seen.append((start, end))
            yield FeatureRecord("open_rate", "p1", start.hour / 100, start)

        offline_store.register_computation("prospect_engagement", compute)
        job_id = await offline_store.compute_features(
            "prospect_engagement", at(0), at(10), parallelism=2, chunk_size=timedelta(hours=4)
        )
        job = await offline_store.wait_for_job(job_id, timeout=2)

        assert job.status == JobStatus.COMPLETED
        assert job.chunks_total == 3
        assert job.records_written == 3
        assert job.progress == 1.0
        assert sorted(seen) == [(at(0), at(4)), (at(4), at(8)), (at(8), at(10))]
        assert len(offline_store.get_history("open_rate", "p1")) == 3
        assert len(bus.history(EventType.COMPUTATION_PROGRESS)) == 3
        assert bus.history(EventType.COMPUTATION_COMPLETED)[0].job_id == job_id

    async def test_coroutine_computation(self, offline_store):
        """Test computations may return a list."""
        async def compute(group, start, end):
            return [FeatureRecord("reply_rate", "p1", 0.05, start)]

        offline_store.register_computation("prospect_engagement", compute)
        job_id = await offline_store.compute_features("prospect_engagement", at(0), at(24))
        job = await offline_store.wait_for_job(job_id, timeout=2)
        assert job.status == JobStatus.COMPLETED
        assert offline_store.list_jobs(JobStatus.COMPLETED) == [job]

    async def test_foreign_feature_fails_job(self, offline_store, bus):
        """Test a computation emitting another group's feature fails."""
        async def compute(group, start, end):
            return [FeatureRecord("company_size", "c1", 10, start)]

        offline_store.register_computation("prospect_engagement", compute)
        job_id = await offline_store.compute_features("prospect_engagement", at(0), at(1))
        job = await offline_store.wait_for_job(job_id, timeout=2)

        assert job.status == JobStatus.FAILED
        assert "company_size" in job.error
        assert bus.history(EventType.COMPUTATION_FAILED)

    async def test_invalid_requests(self, offline_store):
        """Test requests that cannot start a job."""
        with pytest.raises(NotFoundError):
            await offline_store.compute_features("ghost", at(0), at(1))
        with pytest.raises(ConfigurationError, match="No computation"):
            await offline_store.compute_features("prospect_engagement", at(0), at(1))

        offline_store.register_computation("prospect_engagement", lambda g, s, e: [])
        with pytest.raises(ConfigurationError):
            await offline_store.compute_features("prospect_engagement", at(1), at(1))
        with pytest.raises(ConfigurationError):
            await offline_store.compute_features("prospect_engagement", at(0), at(1),
                                                 chunk_size=timedelta(0))
        with pytest.raises(NotFoundError):
            offline_store.get_computation_status("job_missing")


class TestFeatureViews:
    """Test feature views."""

    def test_read_view(self, offline_store):
        """Test filtering and projecting at a point in time."""
        offline_store.write("open_rate", "p1", 0.6, timestamp=at(0))
        offline_store.write("open_rate", "p2", 0.1, timestamp=at(0))
        offline_store.write("last_channel", "p1", "email", timestamp=at(0))
        offline_store.write("last_channel", "p2", "phone", timestamp=at(0))
        offline_store.write("open_rate", "p2", 0.9, timestamp=at(5))

        offline_store.create_feature_view(
            "engaged", ["last_channel"], ["p1", "p2", "p3"], "open_rate >= 0.5"
        )

        assert offline_store.read_feature_view("engaged", at(1)) == [
            {"entity_id": "p1", "last_channel": "email"},
        ]
        assert offline_store.read_feature_view("engaged", at(6)) == [
            {"entity_id": "p1", "last_channel": "email"},
            {"entity_id": "p2", "last_channel": "phone"},
        ]

    def test_view_validation(self, offline_store):
        """Test duplicate names and unknown features are rejected."""
        offline_store.create_feature_view("v", ["open_rate"], ["p1"])
        with pytest.raises(ConfigurationError):
            offline_store.create_feature_view("v", ["open_rate"], ["p1"])
        with pytest.raises(ConfigurationError):
            offline_store.create_feature_view("w", ["ghost"], ["p1"])
        with pytest.raises(ConfigurationError):
            offline_store.create_feature_view("x", ["open_rate"], ["p1"], "ghost > 1")
        with pytest.raises(NotFoundError):
            offline_store.get_feature_view("missing")
        assert [v.name for v in offline_store.list_feature_views()] == ["v"]

    def test_parse_filter(self):
        """Test filter expression parsing."""
        clauses = parse_filter_expression("open_rate >= 0.5 AND last_channel == 'email'")
        assert [(c.feature, c.op, c.literal) for c in clauses] == [
            ("open_rate", ">=", 0.5),
            ("last_channel", "==", "email"),
        ]
        with pytest.raises(ConfigurationError):
            parse_filter_expression("open_rate ~ 3")
