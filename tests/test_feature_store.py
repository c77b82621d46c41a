"""Tests for the combined feature store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.feature import EntityType, Feature, FeatureGroup

T0 = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


class TestFeatureStore:
    """Test FeatureStore class."""

    async def test_write_reaches_both_engines(self, feature_store):
        """Test a group write lands online and in history."""
        result = await feature_store.write_features(
            "prospect_engagement", "p1", {"open_rate": 0.4, "last_channel": "email"},
            source="crm", timestamp=T0,
        )
        assert result.online_written == 2
        assert result.offline_written == 2
        assert await feature_store.get_online_features(["open_rate", "reply_rate"], "p1") == {
            "open_rate": 0.4,
            "reply_rate": None,
        }
        history = feature_store.offline.get_history("open_rate", "p1")
        assert [(v.value, v.source) for v in history] == [(0.4, "crm")]

    async def test_older_write_does_not_override_online(self, feature_store):
        """Test the online copy keeps the newest timestamp."""
        await feature_store.write_features("prospect_engagement", "p1", {"open_rate": 0.9},
                                           timestamp=T0)
        result = await feature_store.write_features(
            "prospect_engagement", "p1", {"open_rate": 0.1}, timestamp=T0 - timedelta(hours=1)
        )

        assert result.skipped == ["open_rate"]
        assert result.online_written == 0
        assert (await feature_store.get_online_features(["open_rate"], "p1"))["open_rate"] == 0.9
        assert len(feature_store.offline.get_history("open_rate", "p1")) == 2

    async def test_foreign_feature(self, feature_store):
        """Test writing a feature outside the group."""
        with pytest.raises(ConfigurationError):
            await feature_store.write_features("prospect_engagement", "p1", {"employees": 10})
        with pytest.raises(NotFoundError):
            await feature_store.write_features("ghost", "p1", {"open_rate": 0.1})

    async def test_offline_only_group(self, feature_store, feature_registry):
        """Test group flags route writes."""
        feature_registry.register_feature_group(
            FeatureGroup("campaign_history", EntityType.CAMPAIGN, online_enabled=False),
            features=[Feature("sends")],
        )
        result = await feature_store.write_features("campaign_history", "c1", {"sends": 100})
        assert result.online_written == 0
        assert result.offline_written == 1
        assert await feature_store.online.get("sends", "c1") is None

    async def test_materialize(self, feature_store):
        """Test a view is copied into the online store."""
        offline = feature_store.offline
        offline.write("open_rate", "p1", 0.7, timestamp=T0)
        offline.write("open_rate", "p2", 0.2, timestamp=T0)
        offline.create_feature_view("hot", ["open_rate"], ["p1", "p2"], "open_rate > 0.5")

        assert await feature_store.materialize("hot", T0) == 1
        assert (await feature_store.online.get("open_rate", "p1")).value == 0.7
        assert await feature_store.online.get("open_rate", "p2") is None

    async def test_health(self, feature_store):
        """Test the health summary."""
        health = await feature_store.get_health()
        assert health["status"] in ("healthy", "degraded")
        assert health["registry"] == {"features": 3, "groups": 1}
        assert health["offline"]["running_jobs"] == 0
