"""Dataflow Model Store - Deployment, Serving and Experiments.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from dataflow_core.config import ModelStoreConfig
from dataflow_core.errors import ConfigurationError, NotFoundError, PredictionError
from dataflow_core.events import EventBus, EventType, ModelEvent
from dataflow_core.model.abtest import (
    ABTestConfig,
    ABTestResults,
    ABTestStatus,
    evaluate_ab_test,
    route_version,
)
from dataflow_core.model.backends import (
    LocalPredictionBackend,
    PredictionBackend,
    PredictionOutput,
    create_prediction_backend,
)
from dataflow_core.model.metrics import (
    PerformanceMetrics,
    compute_performance_metrics,
    success_rate,
)
from dataflow_core.model.registry import ModelRegistry
from dataflow_core.model.types import (
    DeploymentStatus,
    HealthState,
    MLModel,
    ModelDeployment,
    ModelPrediction,
    PredictionOptions,
    TimeRange,
)
from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)


class ModelStore:
    """Model lifecycle and serving.

    Keeps one serving deployment per model, routes predictions through a
    remote backend with local fallback, records every prediction, splits
    traffic for A/B tests and rolls back deployments whose success rate
    drops below the configured threshold.

    Example:
        store = ModelStore(ModelStoreConfig())
        model_id = store.register_model(MLModel("lead-scorer", "1", ModelType.CLASSIFICATION))
        await store.deploy_model(model_id, "1")
        prediction = await store.predict(model_id, {"open_rate": 0.4})
    """

    def __init__(
        self,
        config: Optional[ModelStoreConfig] = None,
        registry: Optional[ModelRegistry] = None,
        backend: Optional[PredictionBackend] = None,
        fallback_backend: Optional[PredictionBackend] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize store.

        Args:
            config: Store configuration
            registry: Model catalog (a fresh one when omitted)
            backend: Primary serving backend (built from config when omitted)
            fallback_backend: Backend used when the primary fails; defaults
                to in-process inference unless the primary already is local
            event_bus: Bus for lifecycle events
        """
        self.config = config or ModelStoreConfig()
        self.registry = registry or ModelRegistry()
        self.backend = backend or create_prediction_backend(self.config)
        if fallback_backend is None and not isinstance(self.backend, LocalPredictionBackend):
            fallback_backend = LocalPredictionBackend()
        self.fallback_backend = fallback_backend
        self.event_bus = event_bus

        self._deployments: Dict[str, List[ModelDeployment]] = {}
        self._tests: Dict[str, ABTestConfig] = {}
        self._active_tests: Dict[str, str] = {}
        self._predictions: Deque[ModelPrediction] = deque(
            maxlen=self.config.max_prediction_history
        )
        self._degraded: Set[str] = set()
        self._rolling_back: Set[str] = set()
        self._lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None

    # Catalog

    def register_model(self, model: MLModel, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Register a model version and return its model id."""
        model_id = self.registry.register(model, metadata)
        self._publish(EventType.MODEL_REGISTERED, model_id, version=model.version,
                      data={"type": model.type.value})
        return model_id

    def get_model(self, model_id: str, version: Optional[str] = None) -> Optional[MLModel]:
        return self.registry.get(model_id, version)

    def list_models(self, **filters: Any) -> List[MLModel]:
        return self.registry.list_models(**filters)

    def list_versions(self, model_id: str) -> List[MLModel]:
        return self.registry.list_versions(model_id)

    def update_model(self, model_id: str, version: Optional[str] = None, **updates: Any) -> MLModel:
        return self.registry.update(model_id, version, **updates)

    def delete_model(self, model_id: str, version: Optional[str] = None) -> None:
        """Delete a model version, or the whole model.

        Raises:
            ConfigurationError: If the version is currently serving
        """
        serving = self.get_deployment(model_id)
        if version is not None and serving is not None and serving.version == str(version):
            raise ConfigurationError(
                f"Cannot delete {model_id} v{version} while it is deployed"
            )

        self.registry.delete(model_id, version)
        if version is None:
            self._deployments.pop(model_id, None)
            test_id = self._active_tests.pop(model_id, None)
            if test_id is not None:
                self._tests[test_id].status = ABTestStatus.COMPLETED

    # Deployments

    def get_deployment(self, model_id: str) -> Optional[ModelDeployment]:
        """The serving deployment of a model, if any."""
        for deployment in reversed(self._deployments.get(model_id, [])):
            if deployment.status.is_serving:
                return deployment
        return None

    def list_deployments(self, model_id: Optional[str] = None) -> List[ModelDeployment]:
        """Deployment history, oldest first."""
        if model_id is not None:
            return list(self._deployments.get(model_id, []))
        return [d for history in self._deployments.values() for d in history]

    async def deploy_model(
        self,
        model_id: str,
        version: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> ModelDeployment:
        """Deploy a model version, superseding the current deployment.

        Args:
            model_id: Model id
            version: Version to serve
            config: Deployment options

        Returns:
            The new active deployment

        Raises:
            NotFoundError: If the model is unknown
            ConfigurationError: If the version is unknown
        """
        model = self.registry.require(model_id, str(version))
        async with self._lock:
            deployment = await self._activate(
                model_id, model.version, config or {}, DeploymentStatus.SUPERSEDED
            )

        self._publish(EventType.MODEL_DEPLOYED, model_id, version=deployment.version,
                      deployment_id=deployment.id, data={"endpoint": deployment.endpoint})
        return deployment

    async def promote_model(self, model_id: str, version: str) -> ModelDeployment:
        """Deploy a version and mark it promoted."""
        deployment = await self.deploy_model(model_id, version)
        self._publish(EventType.MODEL_PROMOTED, model_id, version=deployment.version,
                      deployment_id=deployment.id)
        return deployment

    async def rollback_model(
        self,
        model_id: str,
        target_version: Optional[str] = None,
        reason: str = "manual",
    ) -> ModelDeployment:
        """Replace the serving deployment with an earlier version.

        Args:
            model_id: Model id
            target_version: Version to restore; the newest superseded
                deployment of another version when omitted
            reason: Why the rollback happened, carried on the event

        Returns:
            The new active deployment

        Raises:
            NotFoundError: If the model has no serving deployment
            ConfigurationError: If there is no version to roll back to
        """
        async with self._lock:
            current = self.get_deployment(model_id)
            if current is None:
                raise NotFoundError(f"No serving deployment for {model_id}", model_id=model_id)

            if target_version is None:
                target = self._rollback_target(current)
                if target is None:
                    raise ConfigurationError(
                        f"No earlier deployment of {model_id} to roll back to",
                        model_id=model_id,
                    )
                target_version = target.version
            else:
                target_version = str(target_version)
                self.registry.require(model_id, target_version)
                if target_version == current.version:
                    raise ConfigurationError(
                        f"{model_id} v{target_version} is already serving", model_id=model_id
                    )

            deployment = await self._activate(
                model_id, target_version, current.config, DeploymentStatus.ROLLEDBACK
            )
            current.rolled_back_to = target_version

        logger.warning(
            f"Rolled back {model_id} from v{current.version} to v{target_version} ({reason})"
        )
        self._publish(
            EventType.MODEL_ROLLEDBACK,
            model_id,
            version=target_version,
            deployment_id=deployment.id,
            data={"from_version": current.version, "to_version": target_version,
                  "reason": reason},
        )
        return deployment

    async def _activate(
        self,
        model_id: str,
        version: str,
        config: Dict[str, Any],
        previous_status: DeploymentStatus,
    ) -> ModelDeployment:
        deployment = ModelDeployment(model_id=model_id, version=version, config=dict(config))
        history = self._deployments.setdefault(model_id, [])
        previous = self.get_deployment(model_id)
        history.append(deployment)

        try:
            deployment.endpoint = await self.backend.deploy(deployment)
        except Exception as e:
            history.remove(deployment)
            logger.error(f"Deployment of {model_id} v{version} failed: {e}")
            raise

        if previous is not None:
            previous.status = previous_status
            self._degraded.discard(previous.id)
            if previous_status == DeploymentStatus.SUPERSEDED:
                previous.superseded_by = deployment.id

        deployment.status = DeploymentStatus.ACTIVE
        deployment.deployed_at = utcnow()
        self.registry.set_default_version(model_id, version)
        logger.info(f"Deployed {model_id} v{version} at {deployment.endpoint}")
        return deployment

    def _rollback_target(self, current: ModelDeployment) -> Optional[ModelDeployment]:
        for deployment in reversed(self._deployments.get(current.model_id, [])):
            if (deployment.status == DeploymentStatus.SUPERSEDED
                    and deployment.version != current.version):
                return deployment
        return None

    # Serving

    async def predict(
        self,
        model_id: str,
        input: Any,
        options: Optional[PredictionOptions] = None,
    ) -> ModelPrediction:
        """Serve one prediction.

        An active A/B test picks the version from the input hash; otherwise
        the requested version, then the deployed one, is used. Remote
        failures fall back to local inference.

        Args:
            model_id: Model id
            input: Model input
            options: Version, timeout and explain options

        Returns:
            The recorded prediction

        Raises:
            NotFoundError: If the model or its deployment is missing
            PredictionError: If every backend failed
        """
        options = options or PredictionOptions()
        if not self.registry.exists(model_id):
            raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)
        deployment = self.get_deployment(model_id)
        if deployment is None:
            raise NotFoundError(f"No serving deployment for {model_id}", model_id=model_id)

        test = self._active_test(model_id)
        ab_group = None
        if test is not None:
            version, ab_group = route_version(test, input)
        elif options.version:
            version = self.registry.require(model_id, str(options.version)).version
        else:
            version = deployment.version

        started = time.perf_counter()
        output, served_by = await self._serve(deployment, input, version, options)
        latency_ms = (time.perf_counter() - started) * 1000

        prediction = ModelPrediction(
            model_id=model_id,
            version=version,
            input=input,
            output=output.output,
            confidence=output.confidence,
            latency_ms=latency_ms,
            ab_group=ab_group,
            ab_test_id=test.id if test is not None else None,
            deployment_id=deployment.id,
            served_by=served_by,
        )
        self.record_prediction(prediction)
        if test is not None:
            test.metrics[ab_group].record(prediction)

        await self._check_performance(model_id)
        return prediction

    async def _serve(
        self,
        deployment: ModelDeployment,
        input: Any,
        version: str,
        options: PredictionOptions,
    ) -> Tuple[PredictionOutput, str]:
        timeout = options.timeout or self.config.prediction_timeout
        try:
            output = await asyncio.wait_for(
                self.backend.predict(deployment, input, version, options), timeout
            )
            return output, self.backend.name
        except Exception as e:
            if self.fallback_backend is None:
                raise PredictionError(
                    f"Prediction failed for {deployment.model_id} v{version}: {e}",
                    model_id=deployment.model_id, version=version,
                ) from e
            logger.warning(
                f"{self.backend.name} prediction failed for {deployment.model_id} "
                f"v{version}, using {self.fallback_backend.name}: {e}"
            )

        try:
            output = await self.fallback_backend.predict(deployment, input, version, options)
        except Exception as e:
            raise PredictionError(
                f"Prediction failed for {deployment.model_id} v{version} on every backend: {e}",
                model_id=deployment.model_id, version=version,
            ) from e
        return output, self.fallback_backend.name

    async def batch_predict(
        self,
        model_id: str,
        inputs: List[Any],
        options: Optional[PredictionOptions] = None,
    ) -> List[ModelPrediction]:
        """Serve many predictions, in input order.

        Inputs are processed in chunks of ``batch_size``; each chunk runs
        concurrently.
        """
        results: List[ModelPrediction] = []
        size = max(1, self.config.batch_size)
        for offset in range(0, len(inputs), size):
            chunk = inputs[offset:offset + size]
            results.extend(
                await asyncio.gather(*(self.predict(model_id, i, options) for i in chunk))
            )
        return results

    def record_prediction(self, prediction: ModelPrediction) -> None:
        """Append a prediction to the bounded history."""
        self._predictions.append(prediction)

    def get_predictions(
        self,
        model_id: Optional[str] = None,
        version: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ModelPrediction]:
        """Recorded predictions, oldest first."""
        predictions = [
            p for p in self._predictions
            if (model_id is None or p.model_id == model_id)
            and (version is None or p.version == str(version))
        ]
        if limit is not None:
            predictions = predictions[-limit:]
        return predictions

    async def _check_performance(self, model_id: str) -> None:
        deployment = self.get_deployment(model_id)
        if deployment is None or model_id in self._rolling_back:
            return

        recent = [p for p in self._predictions if p.deployment_id == deployment.id]
        recent = recent[-self.config.rollback_window:]
        if len(recent) < self.config.rollback_min_predictions:
            return
        rate = success_rate(recent)
        if rate >= self.config.performance_threshold:
            return

        if deployment.id not in self._degraded:
            self._degraded.add(deployment.id)
            logger.warning(
                f"{model_id} v{deployment.version} success rate {rate:.2f} "
                f"below {self.config.performance_threshold}"
            )
            self._publish(EventType.MODEL_PERFORMANCE_DEGRADED, model_id,
                          version=deployment.version, deployment_id=deployment.id,
                          data={"success_rate": rate, "predictions": len(recent)})

        if not self.config.auto_rollback:
            return
        target = self._rollback_target(deployment)
        if target is None:
            logger.error(f"No stable deployment of {model_id} to roll back to")
            return

        self._rolling_back.add(model_id)
        try:
            await self.rollback_model(model_id, target.version, reason="performance")
        finally:
            self._rolling_back.discard(model_id)

    # Experiments

    def configure_ab_test(self, model_id: str, config: ABTestConfig) -> str:
        """Start an A/B test between two registered versions.

        Returns:
            Test id

        Raises:
            NotFoundError: If the model is unknown
            ConfigurationError: If a version is missing or a test is
                already running for the model
        """
        self.registry.require(model_id, config.version_a)
        self.registry.require(model_id, config.version_b)
        if model_id in self._active_tests:
            raise ConfigurationError(
                f"Model {model_id} already has active test {self._active_tests[model_id]}"
            )

        config.model_id = model_id
        config.status = ABTestStatus.ACTIVE
        self._tests[config.id] = config
        self._active_tests[model_id] = config.id

        logger.info(
            f"A/B test {config.id} on {model_id}: v{config.version_a} vs "
            f"v{config.version_b} (split {config.traffic_split})"
        )
        self._publish(EventType.AB_TEST_STARTED, model_id, test_id=config.id,
                      data={"version_a": config.version_a, "version_b": config.version_b,
                            "traffic_split": config.traffic_split})
        return config.id

    def get_ab_test(self, test_id: str) -> ABTestConfig:
        test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError(f"A/B test not found: {test_id}", test_id=test_id)
        return test

    def list_ab_tests(self, model_id: Optional[str] = None) -> List[ABTestConfig]:
        return [t for t in self._tests.values() if model_id is None or t.model_id == model_id]

    def _active_test(self, model_id: str) -> Optional[ABTestConfig]:
        test_id = self._active_tests.get(model_id)
        return self._tests[test_id] if test_id is not None else None

    def get_ab_test_results(self, test_id: str) -> ABTestResults:
        """Per-version metrics and significance of a test."""
        return evaluate_ab_test(self.get_ab_test(test_id))

    def conclude_ab_test(self, test_id: str, winner_version: str) -> ABTestConfig:
        """Stop a test and record its winner.

        Raises:
            ConfigurationError: If the test already ended or the winner is
                not one of its versions
        """
        test = self.get_ab_test(test_id)
        winner_version = str(winner_version)
        if test.status != ABTestStatus.ACTIVE:
            raise ConfigurationError(f"A/B test {test_id} is already {test.status.value}")
        if winner_version not in (test.version_a, test.version_b):
            raise ConfigurationError(
                f"Winner {winner_version} is not part of test {test_id}"
            )

        test.status = ABTestStatus.COMPLETED
        test.winner = winner_version
        test.metrics_snapshot = {group: m.to_dict() for group, m in test.metrics.items()}
        test.concluded_at = utcnow()
        self._active_tests.pop(test.model_id, None)

        logger.info(f"A/B test {test_id} concluded, winner v{winner_version}")
        self._publish(EventType.AB_TEST_CONCLUDED, test.model_id, version=winner_version,
                      test_id=test_id, data={"winner": winner_version})
        return test

    # Metrics and health

    def get_performance_metrics(
        self,
        model_id: str,
        time_range: Optional[TimeRange] = None,
        version: Optional[str] = None,
    ) -> PerformanceMetrics:
        """Metrics over a model's recorded predictions."""
        predictions = [
            p for p in self.get_predictions(model_id, version)
            if time_range is None or time_range.contains(p.timestamp)
        ]
        return compute_performance_metrics(model_id, predictions, time_range)

    def get_health(self) -> Dict[str, Any]:
        """Store-wide health summary."""
        serving = [d for d in self.list_deployments() if d.status.is_serving]
        unhealthy = [d for d in serving if d.status == DeploymentStatus.UNHEALTHY]
        overall = compute_performance_metrics("*", self._predictions)
        return {
            "status": "degraded" if unhealthy else "healthy",
            "models": len(self.registry),
            "deployments": len(serving),
            "unhealthy_deployments": [d.id for d in unhealthy],
            "active_ab_tests": len(self._active_tests),
            "predictions": overall.total_predictions,
            "p95_latency": overall.p95_latency,
        }

    def get_model_health(self, model_id: str) -> Dict[str, Any]:
        """Deployment and performance summary for one model."""
        if not self.registry.exists(model_id):
            raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)
        deployment = self.get_deployment(model_id)
        metrics = self.get_performance_metrics(model_id)
        return {
            "model_id": model_id,
            "default_version": self.registry.default_version(model_id),
            "deployment": None if deployment is None else {
                "id": deployment.id,
                "version": deployment.version,
                "status": deployment.status.value,
                "health": deployment.health_status.value,
                "last_health_check": deployment.last_health_check,
            },
            "active_ab_test": self._active_tests.get(model_id),
            "metrics": metrics.to_dict(),
        }

    async def check_deployments(self) -> Dict[str, bool]:
        """Poll every serving deployment once.

        Returns:
            Deployment id -> healthy
        """
        results: Dict[str, bool] = {}
        for deployment in [d for d in self.list_deployments() if d.status.is_serving]:
            try:
                healthy = await self.backend.check_health(deployment)
            except Exception as e:
                logger.error(f"Health check error for {deployment.id}: {e}")
                healthy = False

            deployment.last_health_check = utcnow()
            results[deployment.id] = healthy

            if healthy:
                if deployment.status == DeploymentStatus.UNHEALTHY:
                    logger.info(f"Deployment {deployment.id} recovered")
                    deployment.status = DeploymentStatus.ACTIVE
                deployment.health_status = HealthState.HEALTHY
                continue

            previous = deployment.health_status
            if previous == HealthState.UNHEALTHY:
                continue
            deployment.health_status = HealthState.UNHEALTHY
            deployment.status = DeploymentStatus.UNHEALTHY
            if previous == HealthState.HEALTHY:
                logger.warning(f"Deployment {deployment.id} of {deployment.model_id} is unhealthy")
                self._publish(EventType.MODEL_HEALTH_DEGRADED, deployment.model_id,
                              version=deployment.version, deployment_id=deployment.id)
            else:
                logger.warning(f"Deployment {deployment.id} of {deployment.model_id} "
                               f"failed its first health check")

            if self.config.rollback_on_health_degradation and self.config.auto_rollback:
                try:
                    await self.rollback_model(deployment.model_id, reason="health")
                except ConfigurationError as e:
                    logger.error(f"Health rollback of {deployment.model_id} skipped: {e}")
        return results

    async def start(self) -> None:
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        await self.backend.close()
        if self.fallback_backend is not None:
            await self.fallback_backend.close()

    async def _health_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.health_check_interval)
                await self.check_deployments()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Model health loop error: {e}")

    def _publish(self, event_type: EventType, model_id: str, data=None, **fields) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(ModelEvent(event_type, data=data or {},
                                              model_id=model_id, **fields))


__all__ = ["ModelStore"]
