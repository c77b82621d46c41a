"""Dataflow Model Registry - Model Version Catalog.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.model.types import MLModel, ModelStatus, ModelType
from dataflow_core.utils.ids import slugify

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = {"status", "config", "metadata", "features", "target"}


class ModelRegistry:
    """Catalog of model versions.

    Versions of one model name share a model id. Each model has a default
    version, the one served when a request names none; deploying moves it.

    Example:
        registry = ModelRegistry()
        model_id = registry.register(MLModel("lead-scorer", "1", ModelType.CLASSIFICATION))
        registry.get(model_id, "1")
    """

    def __init__(self):
        self._models: Dict[str, Dict[str, MLModel]] = {}
        self._default_version: Dict[str, str] = {}
        self._lock = threading.RLock()

    def register(self, model: MLModel, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Register a model version.

        Args:
            model: Model version definition
            metadata: Extra metadata merged into the model's

        Returns:
            Model id

        Raises:
            ConfigurationError: If name, version or type is missing, or the
                version already exists
        """
        if not model.name or not model.name.strip():
            raise ConfigurationError("Model requires a name")
        if not model.version or not model.version.strip():
            raise ConfigurationError(f"Model {model.name} requires a version")
        if not isinstance(model.type, ModelType):
            raise ConfigurationError(f"Model {model.name} has invalid type {model.type!r}")

        model_id = model.id or slugify(model.name)

        with self._lock:
            versions = self._models.setdefault(model_id, {})
            if model.version in versions:
                raise ConfigurationError(
                    f"Model {model_id} version {model.version} already registered"
                )

            stored = replace(model, id=model_id,
                             metadata={**model.metadata, **(metadata or {})})
            versions[stored.version] = stored
            self._default_version.setdefault(model_id, stored.version)

        logger.info(f"Registered model {model_id} v{stored.version} ({stored.type.value})")
        return model_id

    def get(self, model_id: str, version: Optional[str] = None) -> Optional[MLModel]:
        """Get a model version, the default version when none is given."""
        versions = self._models.get(model_id)
        if not versions:
            return None
        return versions.get(str(version) if version else self._default_version.get(model_id))

    def require(self, model_id: str, version: Optional[str] = None) -> MLModel:
        """Get a model version or raise.

        Raises:
            NotFoundError: If the model is unknown
            ConfigurationError: If the version is missing
        """
        if model_id not in self._models:
            raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)
        model = self.get(model_id, version)
        if model is None:
            raise ConfigurationError(
                f"Model {model_id} has no version {version}", model_id=model_id
            )
        return model

    def exists(self, model_id: str) -> bool:
        return model_id in self._models

    def list_versions(self, model_id: str) -> List[MLModel]:
        return list(self._models.get(model_id, {}).values())

    def default_version(self, model_id: str) -> Optional[str]:
        return self._default_version.get(model_id)

    def set_default_version(self, model_id: str, version: str) -> None:
        self.require(model_id, version)
        self._default_version[model_id] = version

    def list_models(
        self,
        type: Optional[ModelType] = None,
        status: Optional[ModelStatus] = None,
        **metadata: Any,
    ) -> List[MLModel]:
        """Default versions of all models, optionally filtered.

        Args:
            type: Model type to match
            status: Status to match
            **metadata: Metadata key/values that must all match

        Returns:
            Matching models
        """
        result = []
        for model_id in self._models:
            model = self.get(model_id)
            if model is None:
                continue
            if type is not None and model.type != type:
                continue
            if status is not None and model.status != status:
                continue
            if any(model.metadata.get(k) != v for k, v in metadata.items()):
                continue
            result.append(model)
        return result

    def update(self, model_id: str, version: Optional[str] = None, **updates: Any) -> MLModel:
        """Update mutable fields of a model version.

        Raises:
            ConfigurationError: When an immutable field is targeted
        """
        illegal = set(updates) - _MUTABLE_FIELDS
        if illegal:
            raise ConfigurationError(f"Cannot update model fields {sorted(illegal)}")

        with self._lock:
            model = self.require(model_id, version)
            updated = replace(model, **updates)
            self._models[model_id][model.version] = updated
        return updated

    def delete(self, model_id: str, version: Optional[str] = None) -> None:
        """Delete one version, or every version when none is given."""
        with self._lock:
            if model_id not in self._models:
                raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)

            if version is None:
                del self._models[model_id]
                self._default_version.pop(model_id, None)
                logger.info(f"Deleted model {model_id}")
                return

            versions = self._models[model_id]
            if versions.pop(str(version), None) is None:
                raise ConfigurationError(f"Model {model_id} has no version {version}")
            if not versions:
                del self._models[model_id]
                self._default_version.pop(model_id, None)
            elif self._default_version.get(model_id) == str(version):
                self._default_version[model_id] = next(reversed(versions))
            logger.info(f"Deleted model {model_id} v{version}")

    def __len__(self) -> int:
        return len(self._models)

    def __repr__(self) -> str:
        return f"ModelRegistry(models={len(self._models)})"


__all__ = ["ModelRegistry"]
