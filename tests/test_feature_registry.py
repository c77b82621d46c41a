"""Tests for the feature registry.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

import pytest

from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.events import EventType
from dataflow_core.feature import (
    EntityType,
    Feature,
    FeatureGroup,
    FeatureRegistry,
    FeatureStatus,
    ValueType,
)


@pytest.fixture
def registry():
    registry = FeatureRegistry()
    registry.register_feature(Feature("emails_sent"))
    registry.register_feature(Feature("emails_opened"))
    registry.register_feature(
        Feature("open_rate", dependencies=["emails_sent", "emails_opened"])
    )
    registry.register_feature(Feature("engagement_score", dependencies=["open_rate"]))
    return registry


class TestFeature:
    """Test Feature class."""

    def test_validate_types(self):
        """Test value type checks."""
        assert Feature("n", value_type="number").validate(1.5)
        assert not Feature("n").validate(True)
        assert not Feature("s", value_type=ValueType.STRING).validate(3)
        assert Feature("e", value_type=ValueType.EMBEDDING).validate([0.1, 0.2])
        assert Feature("b", value_type=ValueType.BOOLEAN).validate(None)


class TestFeatureRegistry:
    """Test FeatureRegistry class."""

    def test_lineage(self, registry):
        """Test upstream and downstream traversal."""
        graph = registry.get_feature_lineage("open_rate")
        assert graph.upstream == ["emails_sent", "emails_opened"]
        assert graph.downstream == ["engagement_score"]
        assert graph.edges == [
            ("emails_opened", "open_rate"),
            ("emails_sent", "open_rate"),
            ("open_rate", "engagement_score"),
        ]

        root = registry.get_feature_lineage("emails_sent")
        assert root.downstream == ["open_rate", "engagement_score"]
        assert registry.get_feature_lineage("emails_sent", depth=1).downstream == ["open_rate"]

    def test_dependents_recorded(self, registry):
        """Test each dependency lists its dependents."""
        assert registry.get_lineage_record("emails_sent").dependents == ["open_rate"]

    def test_unknown_dependency_leaves_registry_unchanged(self, registry):
        """Test a failed registration changes nothing."""
        with pytest.raises(ConfigurationError):
            registry.register_feature(Feature("reply_rate", dependencies=["emails_sent", "ghost"]))
        assert "reply_rate" not in registry
        assert registry.get_lineage_record("emails_sent").dependents == ["open_rate"]

    def test_self_dependency(self, registry):
        """Test a feature cannot depend on itself."""
        with pytest.raises(ConfigurationError):
            registry.register_feature(Feature("loop", dependencies=["loop"]))

    def test_cycle_on_reregistration(self, registry):
        """Test re-registering cannot close a dependency loop."""
        with pytest.raises(ConfigurationError, match="cycle"):
            registry.register_feature(Feature("emails_sent", dependencies=["engagement_score"]))
        assert registry.get_feature("emails_sent").version == 1

    def test_reregistration_bumps_version(self, registry):
        """Test versions increase and dependents move."""
        stored = registry.register_feature(Feature("open_rate", dependencies=["emails_sent"]))
        assert stored.version == 2
        assert registry.get_lineage_record("emails_opened").dependents == []
        assert registry.get_lineage_record("open_rate").dependents == ["engagement_score"]

    def test_invalid_name(self):
        """Test names must be identifiers."""
        with pytest.raises(ConfigurationError):
            FeatureRegistry().register_feature(Feature("open rate"))

    def test_groups(self, bus):
        """Test groups bind members and ttl resolution."""
        registry = FeatureRegistry(event_bus=bus)
        registry.register_feature(Feature("employee_count", ttl=60))
        group = registry.register_feature_group(
            FeatureGroup("company_firmographics", EntityType.COMPANY,
                         features=["employee_count"], ttl=600),
            features=[Feature("industry", value_type="string")],
        )

        assert group.features == ["employee_count", "industry"]
        assert registry.get_feature("industry").group == "company_firmographics"
        assert registry.get_feature("employee_count").group == "company_firmographics"
        assert registry.resolve_ttl("employee_count", 3600) == 60
        assert registry.resolve_ttl("industry", 3600) == 600
        assert registry.resolve_ttl("unknown", 3600) == 3600
        assert [e.type for e in bus.history()] == [
            EventType.FEATURE_REGISTERED,
            EventType.FEATURE_REGISTERED,
            EventType.FEATURE_GROUP_REGISTERED,
        ]

    def test_group_with_unknown_member(self):
        """Test groups cannot name unregistered features."""
        with pytest.raises(ConfigurationError):
            FeatureRegistry().register_feature_group(
                FeatureGroup("g", EntityType.PROSPECT, features=["missing"])
            )

    def test_group_rolls_back_on_invalid_member(self, bus):
        """Test a failing member leaves no partial group behind."""
        registry = FeatureRegistry(event_bus=bus)
        registry.register_feature(Feature("emails_sent"))
        registry.register_feature(Feature("emails_replied"))
        before = len(bus.history())

        with pytest.raises(ConfigurationError):
            registry.register_feature_group(
                FeatureGroup("reply_health", EntityType.PROSPECT, features=["emails_replied"]),
                features=[Feature("reply_rate", dependencies=["emails_sent"]),
                          Feature("bad name")],
            )

        assert registry.get_feature_group("reply_health") is None
        assert registry.get_feature("reply_rate") is None
        assert registry.get_feature("emails_replied").group is None
        assert registry.get_feature_lineage("emails_sent").downstream == []
        assert len(bus.history()) == before

    def test_list_features(self, registry):
        """Test filtering the catalog."""
        registry.register_feature(Feature("bounce_rate", tags=["email", "health"],
                                          owner="deliverability",
                                          status=FeatureStatus.EXPERIMENTAL))
        assert [f.name for f in registry.list_features(tags=["email"])] == ["bounce_rate"]
        assert [f.name for f in registry.list_features(owner="deliverability")] == ["bounce_rate"]
        assert len(registry.list_features(status=FeatureStatus.ACTIVE)) == 4

    def test_not_found(self, registry):
        """Test lookups of unknown names."""
        with pytest.raises(NotFoundError):
            registry.require_feature("ghost")
        with pytest.raises(NotFoundError):
            registry.require_feature_group("ghost")
        with pytest.raises(NotFoundError):
            registry.get_feature_lineage("ghost")
