"""Shared test fixtures.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

import pytest

from dataflow_core.config import ModelStoreConfig
from dataflow_core.events import EventBus
from dataflow_core.feature import (
    EntityType,
    Feature,
    FeatureGroup,
    FeatureRegistry,
    FeatureStore,
    InMemoryOnlineBackend,
    OfflineFeatureStore,
    OnlineFeatureStore,
    ValueType,
)
from dataflow_core.model import LocalPredictionBackend, ModelStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feature_registry(bus):
    registry = FeatureRegistry(event_bus=bus)
    registry.register_feature_group(
        FeatureGroup(name="prospect_engagement", entity_type=EntityType.PROSPECT),
        features=[
            Feature(name="open_rate", value_type=ValueType.NUMBER),
            Feature(name="reply_rate", value_type=ValueType.NUMBER),
            Feature(name="last_channel", value_type=ValueType.STRING),
        ],
    )
    return registry


@pytest.fixture
def online_backend(clock):
    return InMemoryOnlineBackend(clock=clock)


@pytest.fixture
def online_store(feature_registry, online_backend, bus):
    return OnlineFeatureStore(feature_registry, backend=online_backend, event_bus=bus)


@pytest.fixture
def offline_store(feature_registry, bus):
    return OfflineFeatureStore(feature_registry, event_bus=bus)


@pytest.fixture
def feature_store(feature_registry, online_store, offline_store):
    return FeatureStore(feature_registry, online_store, offline_store)


@pytest.fixture
def local_backend():
    return LocalPredictionBackend()


@pytest.fixture
def model_store(local_backend, bus):
    return ModelStore(
        ModelStoreConfig(rollback_min_predictions=5, batch_size=4),
        backend=local_backend,
        event_bus=bus,
    )
