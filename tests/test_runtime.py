"""Tests for runtime wiring.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from dataflow_core.config import EngineConfig, Settings
from dataflow_core.feature import EntityType, Feature, FeatureGroup
from dataflow_core.pipeline import DataPipeline, PipelineStage, RunStatus
from dataflow_core.runtime import DataflowRuntime

PROSPECTS = [
    {"id": 1, "open_rate": 0.4, "reply_rate": 0.1},
    {"id": 2, "open_rate": 0.8, "reply_rate": 0.3},
    {"id": 3, "open_rate": 0.2},
]


def scoring_pipeline():
    return DataPipeline(
        id="score-prospects",
        name="Score prospects",
        stages=[
            PipelineStage("extract", "extract", config={"records": PROSPECTS}),
            PipelineStage("enrich", "enrich", dependencies=["extract"], config={
                "feature_group": "engagement",
            }),
            PipelineStage("train", "ml_training", dependencies=["extract"], config={
                "model_name": "Lead Scorer",
                "features": ["open_rate", "reply_rate"],
                "deploy": True,
            }),
            PipelineStage("infer", "ml_inference", dependencies=["enrich", "train"], config={
                "model_id": "lead-scorer",
                "features": ["open_rate"],
            }),
        ],
    )


class TestDataflowRuntime:
    """Test DataflowRuntime class."""

    async def test_end_to_end(self):
        """Test a run that writes features, trains, deploys and scores."""
        settings = Settings(engine=EngineConfig(monitor_interval=3600.0, drain_timeout=1.0))
        async with DataflowRuntime(settings) as runtime:
            runtime.feature_registry.register_feature_group(
                FeatureGroup("engagement", EntityType.PROSPECT),
                features=[Feature("open_rate"), Feature("reply_rate")],
            )
            runtime.engine.register_pipeline(scoring_pipeline())

            run_id = await runtime.engine.execute_pipeline("score-prospects")
            run = await runtime.engine.wait_for_run(run_id, timeout=5)

            assert run.status == RunStatus.COMPLETED
            enriched = run.stage_results["enrich"].output
            assert (enriched["features_written"], enriched["entities"]) == (5, 3)
            assert await runtime.feature_store.get_online_features(
                ["open_rate", "reply_rate"], "3"
            ) == {"open_rate": 0.2, "reply_rate": None}

            model = runtime.model_store.get_model("lead-scorer")
            assert model.metadata["records_trained"] == 3
            assert runtime.model_store.get_deployment("lead-scorer").version == "1"

            scored = run.stage_results["infer"].output["records"]
            assert [r["id"] for r in scored] == [1, 2, 3]
            assert all("prediction" in r and "confidence" in r for r in scored)

            assert runtime.lineage.nodes[f"run:{run_id}"].attributes["status"] == "completed"
            assert "model:lead-scorer@1" in runtime.lineage.nodes

    async def test_start_stop_idempotent(self):
        """Test lifecycle calls can repeat."""
        runtime = DataflowRuntime()
        await runtime.start()
        await runtime.start()
        assert runtime.engine.running
        await runtime.stop()
        await runtime.stop()
        assert not runtime.engine.running
