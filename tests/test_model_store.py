"""Tests for the model store.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

import asyncio
import json

import httpx
import pytest

from dataflow_core.config import ModelStoreConfig
from dataflow_core.errors import ConfigurationError, NotFoundError, PredictionError
from dataflow_core.events import EventType
from dataflow_core.model import (
    ABTestConfig,
    ABTestStatus,
    DeploymentStatus,
    HealthState,
    HttpPredictionBackend,
    LocalPredictionBackend,
    MLModel,
    ModelStatus,
    ModelStore,
    ModelType,
    PredictionBackend,
    PredictionOptions,
    route_version,
)


class UnreachableBackend(PredictionBackend):
    """Remote backend whose predictions always fail."""

    name = "remote"

    async def deploy(self, deployment):
        return f"http://serving/{deployment.model_id}"

    async def predict(self, deployment, input, version, options):
        raise ConnectionError("serving cluster unreachable")

    async def check_health(self, deployment):
        return False


class SwitchableBackend(LocalPredictionBackend):
    """Local backend with a health switch."""

    def __init__(self):
        super().__init__()
        self.healthy = True

    async def check_health(self, deployment):
        return self.healthy


def scorer(name="Lead Scorer", version="1"):
    return MLModel(name=name, version=version, type=ModelType.CLASSIFICATION,
                   features=["open_rate", "reply_rate"])


async def deployed(store, *versions):
    model_id = None
    for version in versions:
        model_id = store.register_model(scorer(version=version))
    for version in versions:
        await store.deploy_model(model_id, version)
    return model_id


class TestDeployments:
    """Test registration, deployment and rollback."""

    async def test_register_and_deploy(self, model_store, bus):
        """Test a deployment becomes active and supersedes the previous one."""
        model_id = model_store.register_model(scorer())
        assert model_id == "lead-scorer"
        first = await model_store.deploy_model(model_id, "1")
        assert first.status == DeploymentStatus.ACTIVE
        assert first.endpoint == "local://lead-scorer/1"

        model_store.register_model(scorer(version="2"))
        second = await model_store.deploy_model(model_id, "2")

        assert first.status == DeploymentStatus.SUPERSEDED
        assert first.superseded_by == second.id
        assert model_store.get_deployment(model_id) is second
        assert model_store.registry.default_version(model_id) == "2"
        assert len(bus.history(EventType.MODEL_DEPLOYED)) == 2
        assert [d.version for d in model_store.list_deployments(model_id)] == ["1", "2"]

    async def test_deploy_unknown(self, model_store):
        """Test deploying unknown models or versions."""
        with pytest.raises(NotFoundError):
            await model_store.deploy_model("ghost", "1")
        model_id = model_store.register_model(scorer())
        with pytest.raises(ConfigurationError):
            await model_store.deploy_model(model_id, "9")

    def test_duplicate_version(self, model_store):
        """Test a version can only be registered once."""
        model_store.register_model(scorer())
        with pytest.raises(ConfigurationError):
            model_store.register_model(scorer())

    async def test_manual_rollback(self, model_store, bus):
        """Test rolling back restores the previous version."""
        model_id = await deployed(model_store, "1", "2")
        current = model_store.get_deployment(model_id)

        restored = await model_store.rollback_model(model_id)

        assert restored.version == "1"
        assert current.status == DeploymentStatus.ROLLEDBACK
        assert current.rolled_back_to == "1"
        event = bus.history(EventType.MODEL_ROLLEDBACK)[0]
        assert event.data == {"from_version": "2", "to_version": "1", "reason": "manual"}

    async def test_rollback_without_target(self, model_store):
        """Test rollback needs an earlier version."""
        with pytest.raises(NotFoundError):
            await model_store.rollback_model("lead-scorer")
        model_id = await deployed(model_store, "1")
        with pytest.raises(ConfigurationError):
            await model_store.rollback_model(model_id)
        with pytest.raises(ConfigurationError):
            await model_store.rollback_model(model_id, "1")

    async def test_promote(self, model_store, bus):
        """Test promotion deploys and announces."""
        model_id = model_store.register_model(scorer())
        await model_store.promote_model(model_id, "1")
        assert bus.history(EventType.MODEL_PROMOTED)[0].version == "1"

    async def test_delete(self, model_store):
        """Test serving versions cannot be deleted."""
        model_id = await deployed(model_store, "1", "2")
        with pytest.raises(ConfigurationError):
            model_store.delete_model(model_id, "2")
        model_store.delete_model(model_id, "1")
        assert [m.version for m in model_store.list_versions(model_id)] == ["2"]
        model_store.delete_model(model_id)
        assert model_store.get_model(model_id) is None
        assert model_store.list_deployments(model_id) == []

    def test_update_and_list(self, model_store):
        """Test catalog updates and filters."""
        model_id = model_store.register_model(scorer(), metadata={"team": "growth"})
        model_store.register_model(MLModel("Churn", "1", ModelType.REGRESSION))
        model_store.update_model(model_id, status=ModelStatus.DEPRECATED)

        assert model_store.get_model(model_id).status == ModelStatus.DEPRECATED
        assert [m.id for m in model_store.list_models(team="growth")] == [model_id]
        assert [m.id for m in model_store.list_models(type=ModelType.REGRESSION)] == ["churn"]
        with pytest.raises(ConfigurationError):
            model_store.update_model(model_id, name="renamed")


class TestPredictions:
    """Test serving and prediction history."""

    async def test_requires_deployment(self, model_store):
        """Test predictions need a serving deployment."""
        with pytest.raises(NotFoundError):
            await model_store.predict("ghost", {})
        model_id = model_store.register_model(scorer())
        with pytest.raises(NotFoundError):
            await model_store.predict(model_id, {})

    async def test_deterministic_local_scores(self, model_store):
        """Test the hash scorer is stable per input."""
        model_id = await deployed(model_store, "1")
        first = await model_store.predict(model_id, {"open_rate": 0.4})
        second = await model_store.predict(model_id, {"open_rate": 0.4})

        assert first.output == second.output
        assert 0.0 <= first.confidence < 1.0
        assert first.served_by == "local"
        assert first.version == "1"
        assert first.deployment_id == model_store.get_deployment(model_id).id
        assert len(model_store.get_predictions(model_id)) == 2

    async def test_registered_predictor(self, model_store, local_backend):
        """Test predictors may return (output, confidence) pairs."""
        model_id = await deployed(model_store, "1")
        local_backend.register_predictor(model_id, lambda x: ("hot", 0.9))
        prediction = await model_store.predict(model_id, {"open_rate": 0.8})
        assert (prediction.output, prediction.confidence) == ("hot", 0.9)

    async def test_requested_version(self, model_store):
        """Test options pick a version when no test is running."""
        model_id = await deployed(model_store, "1", "2")
        prediction = await model_store.predict(model_id, {}, PredictionOptions(version="1"))
        assert prediction.version == "1"
        with pytest.raises(ConfigurationError):
            await model_store.predict(model_id, {}, PredictionOptions(version="7"))

    async def test_remote_failure_falls_back(self, bus):
        """Test local inference covers remote outages."""
        store = ModelStore(ModelStoreConfig(), backend=UnreachableBackend(), event_bus=bus)
        model_id = await deployed(store, "1")
        prediction = await store.predict(model_id, {"open_rate": 0.1})
        assert prediction.served_by == "local"

    async def test_every_backend_fails(self, model_store, local_backend):
        """Test a prediction error when nothing can serve."""
        model_id = await deployed(model_store, "1")

        def broken(x):
            raise RuntimeError("model weights missing")

        local_backend.register_predictor(model_id, broken)
        with pytest.raises(PredictionError):
            await model_store.predict(model_id, {})
        assert model_store.get_predictions(model_id) == []

    async def test_batch_keeps_order(self, model_store, local_backend):
        """Test batch results line up with inputs across chunks."""
        model_id = await deployed(model_store, "1")
        local_backend.register_predictor(model_id, lambda x: (x["n"] * 2, 0.9))
        inputs = [{"n": n} for n in range(10)]
        predictions = await model_store.batch_predict(model_id, inputs)
        assert [p.output for p in predictions] == [n * 2 for n in range(10)]

    async def test_history_is_bounded(self, local_backend):
        """Test old predictions are dropped beyond the cap."""
        store = ModelStore(ModelStoreConfig(max_prediction_history=3), backend=local_backend)
        model_id = await deployed(store, "1")
        local_backend.register_predictor(model_id, lambda x: (x, 0.9))
        for n in range(5):
            await store.predict(model_id, n)
        assert [p.input for p in store.get_predictions()] == [2, 3, 4]
        assert len(store.get_predictions(limit=2)) == 2

    async def test_performance_metrics(self, model_store, local_backend):
        """Test aggregate metrics over history."""
        model_id = await deployed(model_store, "1")
        local_backend.register_predictor(model_id, lambda x: (x, 0.9 if x else 0.2))
        for value in (1, 1, 1, 0):
            await model_store.predict(model_id, value)

        metrics = model_store.get_performance_metrics(model_id)
        assert metrics.total_predictions == 4
        assert metrics.success_rate == 0.75
        assert metrics.confidence_distribution == {"0.2": 1, "0.9": 3}


class TestHttpBackend:
    """Test remote serving over HTTP."""

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def client(self, requests):
        def handler(request):
            requests.append(request)
            if request.url.path.endswith("/health"):
                return httpx.Response(503 if "/versions/2/" in request.url.path else 200)
            return httpx.Response(
                200, json={"predictions": [{"output": {"label": "hot"}, "confidence": 0.8}]}
            )

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def test_predict(self, client, requests, bus):
        """Test predictions are posted to the version endpoint."""
        backend = HttpPredictionBackend("http://serving/", client=client)
        store = ModelStore(ModelStoreConfig(serving_transport="http"), backend=backend,
                           event_bus=bus)
        model_id = await deployed(store, "1")

        prediction = await store.predict(model_id, {"open_rate": 0.4})

        assert prediction.served_by == "remote"
        assert prediction.output == {"label": "hot"}
        assert prediction.confidence == 0.8
        sent = requests[-1]
        assert str(sent.url) == "http://serving/models/lead-scorer/versions/1/predict"
        assert json.loads(sent.content)["instances"] == [{"open_rate": 0.4}]

    async def test_health(self, client):
        """Test health follows the endpoint status code."""
        store = ModelStore(backend=HttpPredictionBackend("http://serving", client=client))
        model_id = await deployed(store, "1", "2")

        deployment = store.get_deployment(model_id)
        assert await store.check_deployments() == {deployment.id: False}
        assert deployment.status == DeploymentStatus.UNHEALTHY

    async def test_server_error_falls_back(self):
        """Test HTTP errors fall back to local inference."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500)
        ))
        store = ModelStore(backend=HttpPredictionBackend("http://serving", client=client))
        model_id = await deployed(store, "1")
        assert (await store.predict(model_id, {})).served_by == "local"


class TestABTests:
    """Test traffic splitting between versions."""

    @pytest.fixture
    async def model_id(self, model_store, local_backend):
        model_id = await deployed(model_store, "1")
        model_store.register_model(scorer(version="2"))
        local_backend.register_predictor(model_id, lambda x: ("v1", 0.9), version="1")
        local_backend.register_predictor(model_id, lambda x: ("v2", 0.9), version="2")
        return model_id

    async def test_routing_is_deterministic(self, model_store, model_id, bus):
        """Test the same input always reaches the same version."""
        test_id = model_store.configure_ab_test(model_id, ABTestConfig("1", "2", traffic_split=0.5))
        test = model_store.get_ab_test(test_id)

        inputs = [{"prospect": n} for n in range(200)]
        predictions = await model_store.batch_predict(model_id, inputs)
        again = await model_store.batch_predict(model_id, inputs[:20])

        assert [p.version for p in again] == [p.version for p in predictions[:20]]
        for prediction in predictions:
            assert (prediction.version, prediction.ab_group) == route_version(test, prediction.input)
            assert prediction.output == f"v{prediction.version}"
            assert prediction.ab_test_id == test_id
        assert {p.ab_group for p in predictions} == {"a", "b"}
        assert test.metrics["a"].predictions + test.metrics["b"].predictions == 220
        assert bus.history(EventType.AB_TEST_STARTED)[0].test_id == test_id

    async def test_even_split_over_many_inputs(self, model_store, model_id):
        """Test a half split routes about half of varied inputs to each version."""
        model_store.configure_ab_test(model_id, ABTestConfig("1", "2", traffic_split=0.5))
        inputs = [{"prospect_id": n, "company": f"acme-{n % 37}"} for n in range(1000)]

        predictions = await model_store.batch_predict(model_id, inputs)

        share_b = sum(p.version == "2" for p in predictions) / len(predictions)
        assert abs(share_b - 0.5) < 0.05
        for n in range(0, 1000, 50):
            versions = {(await model_store.predict(model_id, inputs[n])).version
                        for _ in range(10)}
            assert versions == {predictions[n].version}

    async def test_extreme_splits(self, model_store, model_id):
        """Test splits of zero and one send everything to one arm."""
        test_id = model_store.configure_ab_test(model_id, ABTestConfig("1", "2", traffic_split=0.0))
        predictions = await model_store.batch_predict(model_id, [{"n": n} for n in range(30)])
        assert {p.version for p in predictions} == {"1"}
        model_store.conclude_ab_test(test_id, "1")

        model_store.configure_ab_test(model_id, ABTestConfig("1", "2", traffic_split=1.0))
        predictions = await model_store.batch_predict(model_id, [{"n": n} for n in range(30)])
        assert {p.version for p in predictions} == {"2"}

    async def test_one_active_test_per_model(self, model_store, model_id):
        """Test a second concurrent test is refused."""
        model_store.configure_ab_test(model_id, ABTestConfig("1", "2"))
        with pytest.raises(ConfigurationError):
            model_store.configure_ab_test(model_id, ABTestConfig("2", "1"))
        with pytest.raises(ConfigurationError):
            model_store.configure_ab_test("lead-scorer", ABTestConfig("1", "3"))

    async def test_conclude(self, model_store, model_id, bus):
        """Test concluding freezes metrics and stops routing."""
        test_id = model_store.configure_ab_test(model_id, ABTestConfig("1", "2"))
        await model_store.batch_predict(model_id, [{"n": n} for n in range(10)])

        with pytest.raises(ConfigurationError):
            model_store.conclude_ab_test(test_id, "3")
        test = model_store.conclude_ab_test(test_id, "2")

        assert test.status == ABTestStatus.COMPLETED
        assert test.winner == "2"
        assert sum(m["predictions"] for m in test.metrics_snapshot.values()) == 10
        assert bus.history(EventType.AB_TEST_CONCLUDED)[0].data == {"winner": "2"}
        with pytest.raises(ConfigurationError):
            model_store.conclude_ab_test(test_id, "2")

        after = await model_store.predict(model_id, {"n": 1})
        assert after.ab_group is None
        assert model_store.get_ab_test_results(test_id).winner == "2"

    async def test_results(self, model_store, model_id):
        """Test results report both arms."""
        test_id = model_store.configure_ab_test(model_id, ABTestConfig("1", "2", min_samples=1000))
        await model_store.batch_predict(model_id, [{"n": n} for n in range(40)])
        results = model_store.get_ab_test_results(test_id)
        assert results.recommendation == "inconclusive"
        assert results.version_a["version"] == "1"
        assert results.version_b["version"] == "2"
        with pytest.raises(NotFoundError):
            model_store.get_ab_test("abtest_missing")


class TestAutoRollback:
    """Test rollback on degraded performance and health."""

    @pytest.fixture
    async def model_id(self, model_store, local_backend):
        model_id = await deployed(model_store, "1", "2")
        local_backend.register_predictor(model_id, lambda x: ("ok", 0.9), version="1")
        local_backend.register_predictor(model_id, lambda x: ("meh", 0.1), version="2")
        return model_id

    async def test_rolls_back_below_threshold(self, model_store, model_id, bus):
        """Test a degraded deployment is replaced by the previous version."""
        bad = model_store.get_deployment(model_id)
        for n in range(4):
            await model_store.predict(model_id, {"n": n})
        assert model_store.get_deployment(model_id) is bad

        await model_store.predict(model_id, {"n": 4})

        assert model_store.get_deployment(model_id).version == "1"
        assert bad.status == DeploymentStatus.ROLLEDBACK
        assert len(bus.history(EventType.MODEL_PERFORMANCE_DEGRADED)) == 1
        assert bus.history(EventType.MODEL_ROLLEDBACK)[0].data["reason"] == "performance"

        prediction = await model_store.predict(model_id, {"n": 5})
        assert prediction.output == "ok"

    async def test_disabled(self, local_backend, bus):
        """Test degradation is reported without rolling back."""
        store = ModelStore(
            ModelStoreConfig(auto_rollback=False, rollback_min_predictions=3),
            backend=local_backend, event_bus=bus,
        )
        model_id = await deployed(store, "1", "2")
        local_backend.register_predictor(model_id, lambda x: ("meh", 0.1))
        for n in range(6):
            await store.predict(model_id, n)

        assert store.get_deployment(model_id).version == "2"
        assert len(bus.history(EventType.MODEL_PERFORMANCE_DEGRADED)) == 1
        assert bus.history(EventType.MODEL_ROLLEDBACK) == []

    async def test_recent_window(self, local_backend, bus):
        """Test the rollback check only looks at the most recent predictions."""
        store = ModelStore(
            ModelStoreConfig(auto_rollback=False, rollback_min_predictions=3, rollback_window=4),
            backend=local_backend, event_bus=bus,
        )
        model_id = await deployed(store, "1")
        local_backend.register_predictor(
            model_id, lambda x: ("ok", 0.9) if x["good"] else ("meh", 0.1)
        )
        for _ in range(10):
            await store.predict(model_id, {"good": True})
        for _ in range(2):
            await store.predict(model_id, {"good": False})
        assert bus.history(EventType.MODEL_PERFORMANCE_DEGRADED) == []

        await store.predict(model_id, {"good": False})

        event = bus.history(EventType.MODEL_PERFORMANCE_DEGRADED)[0]
        assert event.data == {"success_rate": 0.25, "predictions": 4}

    async def test_degraded_marker_cleared(self, model_store, model_id, bus):
        """Test a replaced deployment no longer counts as degraded."""
        bad = model_store.get_deployment(model_id)
        for n in range(5):
            await model_store.predict(model_id, {"n": n})

        assert bad.status == DeploymentStatus.ROLLEDBACK
        assert bad.id not in model_store._degraded

    async def test_first_failed_check(self, bus):
        """Test a deployment that never passed a check is marked without a degraded event."""
        backend = SwitchableBackend()
        store = ModelStore(backend=backend, event_bus=bus)
        model_id = await deployed(store, "1")
        backend.healthy = False

        await store.check_deployments()

        deployment = store.get_deployment(model_id)
        assert deployment.status == DeploymentStatus.UNHEALTHY
        assert deployment.health_status == HealthState.UNHEALTHY
        assert bus.history(EventType.MODEL_HEALTH_DEGRADED) == []

    async def test_health_degradation(self, bus):
        """Test failing health checks mark deployments and may roll back."""
        backend = SwitchableBackend()
        store = ModelStore(
            ModelStoreConfig(rollback_on_health_degradation=True),
            backend=backend, event_bus=bus,
        )
        model_id = await deployed(store, "1", "2")
        current = store.get_deployment(model_id)
        await store.check_deployments()

        backend.healthy = False
        await store.check_deployments()

        assert current.health_status == HealthState.UNHEALTHY
        assert current.status == DeploymentStatus.ROLLEDBACK
        assert store.get_deployment(model_id).version == "1"
        assert len(bus.history(EventType.MODEL_HEALTH_DEGRADED)) == 1

    async def test_health_recovery(self, bus):
        """Test an unhealthy deployment recovers and reports once."""
        backend = SwitchableBackend()
        store = ModelStore(backend=backend, event_bus=bus)
        model_id = await deployed(store, "1")
        deployment = store.get_deployment(model_id)
        await store.check_deployments()

        backend.healthy = False
        await store.check_deployments()
        await store.check_deployments()
        assert deployment.status == DeploymentStatus.UNHEALTHY
        assert store.get_health()["status"] == "degraded"
        assert len(bus.history(EventType.MODEL_HEALTH_DEGRADED)) == 1

        backend.healthy = True
        assert await store.check_deployments() == {deployment.id: True}
        assert deployment.status == DeploymentStatus.ACTIVE
        assert deployment.health_status == HealthState.HEALTHY
        assert store.get_model_health(model_id)["deployment"]["health"] == "healthy"

    async def test_health_loop(self):
        """Test the background loop polls deployments."""
        backend = SwitchableBackend()
        store = ModelStore(ModelStoreConfig(health_check_interval=0.01), backend=backend)
        model_id = await deployed(store, "1")
        backend.healthy = False

        await store.start()
        for _ in range(100):
            if store.get_deployment(model_id).status == DeploymentStatus.UNHEALTHY:
                break
            await asyncio.sleep(0.01)
        await store.stop()

        assert store.get_deployment(model_id).status == DeploymentStatus.UNHEALTHY
