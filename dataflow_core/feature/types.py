"""Dataflow Feature Types - Feature Definitions and Values.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from dataflow_core.errors import ConfigurationError
from dataflow_core.utils.ids import new_id
from dataflow_core.utils.serialization import parse_datetime
from dataflow_core.utils.timing import ensure_utc, utcnow


class ValueType(Enum):
    """Feature value types."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"
    ARRAY = "array"
    EMBEDDING = "embedding"


class FeatureStatus(Enum):
    """Feature lifecycle status."""

    ACTIVE = "active"
    DEPRECATED = "deprecated"
    EXPERIMENTAL = "experimental"
    ARCHIVED = "archived"


class EntityType(Enum):
    """Entities that features describe."""

    PROSPECT = "prospect"
    COMPANY = "company"
    CAMPAIGN = "campaign"
    INTERACTION = "interaction"
    USER = "user"


@dataclass
class Feature:
    """A single feature definition.

    Attributes:
        name: Unique feature name
        value_type: Value type
        group: Owning feature group
        ttl: Online TTL in seconds (None inherits from group or store)
        transformation: Reference to the transformation producing it
        status: Lifecycle status
        version: Definition version, bumped on re-registration
        owner: Owning team or person
        description: Feature description
        tags: Free-form tags
        dependencies: Names of features this one is derived from
        id: Feature identifier
    """

    name: str
    value_type: ValueType = ValueType.NUMBER
    group: Optional[str] = None
    ttl: Optional[int] = None
    transformation: Optional[str] = None
    status: FeatureStatus = FeatureStatus.ACTIVE
    version: int = 1
    owner: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("feat"))
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if isinstance(self.value_type, str):
            self.value_type = ValueType(self.value_type)
        if isinstance(self.status, str):
            self.status = FeatureStatus(self.status)

    def validate(self, value: Any) -> bool:
        """Check a value against the declared type."""
        if value is None:
            return True
        if self.value_type == ValueType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.value_type == ValueType.BOOLEAN:
            return isinstance(value, bool)
        if self.value_type == ValueType.STRING:
            return isinstance(value, str)
        if self.value_type == ValueType.DATE:
            return isinstance(value, (datetime, str))
        if self.value_type in (ValueType.ARRAY, ValueType.EMBEDDING):
            return isinstance(value, (list, tuple))
        return True


@dataclass
class FeatureGroup:
    """Named set of features bound to an entity type.

    Attributes:
        name: Group name
        entity_type: Entity the features describe
        features: Member feature names
        online_enabled: Write values to the online store
        offline_enabled: Write values to offline history
        ttl: Default online TTL in seconds for members
        description: Group description
    """

    name: str
    entity_type: EntityType
    features: List[str] = field(default_factory=list)
    online_enabled: bool = True
    offline_enabled: bool = True
    ttl: Optional[int] = None
    description: str = ""
    id: str = field(default_factory=lambda: new_id("fgrp"))

    def __post_init__(self):
        if isinstance(self.entity_type, str):
            self.entity_type = EntityType(self.entity_type)


@dataclass(frozen=True)
class FeatureValue:
    """A feature value as written by a producer.

    Attributes:
        value: The value
        timestamp: Event time of the value
        version: Feature definition version that produced it
        source: Producer identifier
    """

    value: Any
    timestamp: datetime = field(default_factory=utcnow)
    version: int = 1
    source: str = ""

    def __post_init__(self):
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureValue":
        return cls(
            value=data.get("value"),
            timestamp=parse_datetime(data.get("timestamp")) or utcnow(),
            version=int(data.get("version", 1)),
            source=data.get("source", ""),
        )


@dataclass(frozen=True)
class FeatureQuery:
    """One (feature, entity) lookup."""

    feature: str
    entity_id: str

    @property
    def key(self) -> str:
        return f"{self.feature}:{self.entity_id}"


@dataclass(frozen=True)
class FeatureRecord:
    """A computed offline value emitted by a computation function."""

    feature: str
    entity_id: str
    value: Any
    timestamp: datetime


@dataclass
class RetrievalOptions:
    """Options for historical retrieval.

    Attributes:
        max_age: Treat values older than point_in_time - max_age as missing
        include_metadata: Return FeatureValue objects instead of bare values
    """

    max_age: Optional[timedelta] = None
    include_metadata: bool = False


@dataclass
class FeatureView:
    """Reusable projection over offline history.

    Attributes:
        name: View name
        features: Feature names projected
        entities: Entity ids included
        filter_expression: Row filter in ``feature op literal [and ...]`` form
    """

    name: str
    features: List[str]
    entities: List[str]
    filter_expression: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Feature view requires a name")
        if not self.features:
            raise ConfigurationError(f"Feature view {self.name} has no features")


__all__ = [
    "ValueType",
    "FeatureStatus",
    "EntityType",
    "Feature",
    "FeatureGroup",
    "FeatureValue",
    "FeatureQuery",
    "FeatureRecord",
    "RetrievalOptions",
    "FeatureView",
]
