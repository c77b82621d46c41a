"""Feature module - registry, online and offline stores."""

from dataflow_core.feature.types import (
    EntityType,
    Feature,
    FeatureGroup,
    FeatureQuery,
    FeatureRecord,
    FeatureStatus,
    FeatureValue,
    FeatureView,
    RetrievalOptions,
    ValueType,
)
from dataflow_core.feature.registry import FeatureLineage, FeatureRegistry, LineageGraph
from dataflow_core.feature.online import (
    FeatureWrite,
    InMemoryOnlineBackend,
    OnlineBackend,
    OnlineFeatureStore,
)
from dataflow_core.feature.offline import (
    ComputationStatus,
    JobStatus,
    OfflineFeatureStore,
)
from dataflow_core.feature.store import FeatureStore, WriteResult

__all__ = [
    "EntityType",
    "Feature",
    "FeatureGroup",
    "FeatureQuery",
    "FeatureRecord",
    "FeatureStatus",
    "FeatureValue",
    "FeatureView",
    "RetrievalOptions",
    "ValueType",
    "FeatureLineage",
    "FeatureRegistry",
    "LineageGraph",
    "FeatureWrite",
    "InMemoryOnlineBackend",
    "OnlineBackend",
    "OnlineFeatureStore",
    "ComputationStatus",
    "JobStatus",
    "OfflineFeatureStore",
    "FeatureStore",
    "WriteResult",
]
