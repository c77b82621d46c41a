"""Dataflow Handlers - Stage Type Implementations.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

A handler receives a ``StageContext`` and returns a dict output. Outputs
carrying ``records`` feed downstream stages: a stage's input records are
the concatenated ``records`` of its dependencies, in dependency order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import numpy as np

from dataflow_core.errors import ConfigurationError, QualityGateError
from dataflow_core.feature.store import FeatureStore
from dataflow_core.feature.types import FeatureQuery
from dataflow_core.model.store import ModelStore
from dataflow_core.model.types import MLModel, ModelType, PredictionOptions
from dataflow_core.pipeline.pipeline import PipelineRun
from dataflow_core.pipeline.sources import DataSink, MessageSource, Record
from dataflow_core.pipeline.stage import PipelineStage, StageType
from dataflow_core.pipeline.transforms import TransformationEngine
from dataflow_core.quality.monitor import QualityMonitor, QualityReport
from dataflow_core.utils.ids import slugify

logger = logging.getLogger(__name__)


@dataclass
class StageServices:
    """Collaborators available to stage handlers.

    Attributes:
        feature_store: Feature store for enrich stages
        model_store: Model store for ml_training and ml_inference stages
        quality_monitor: Quality monitor for validate stages
        transformer: Transformation engine for transform stages
        sources: Named extract sources
        sinks: Named load sinks
        quality_reports: Latest quality report per pipeline id
    """

    feature_store: Optional[FeatureStore] = None
    model_store: Optional[ModelStore] = None
    quality_monitor: Optional[QualityMonitor] = None
    transformer: TransformationEngine = field(default_factory=TransformationEngine)
    sources: Dict[str, MessageSource] = field(default_factory=dict)
    sinks: Dict[str, DataSink] = field(default_factory=dict)
    quality_reports: Dict[str, QualityReport] = field(default_factory=dict)


def get_stage_inputs(run: PipelineRun, stage: PipelineStage) -> Dict[str, Any]:
    """Outputs of a stage's dependencies, keyed by stage id."""
    inputs = {}
    for dep in stage.dependencies:
        result = run.stage_results.get(dep)
        if result is not None and result.success:
            inputs[dep] = result.output
    return inputs


@dataclass
class StageContext:
    """Everything a handler sees for one attempt.

    Attributes:
        run: The run being executed
        stage: The stage definition
        inputs: Dependency outputs keyed by stage id
        config: Effective stage configuration
        services: Shared collaborators
    """

    run: PipelineRun
    stage: PipelineStage
    inputs: Dict[str, Any]
    config: Dict[str, Any]
    services: StageServices

    @property
    def records(self) -> List[Record]:
        """Copies of upstream records, in dependency order."""
        records: List[Record] = []
        for dep in self.stage.dependencies:
            output = self.inputs.get(dep)
            if isinstance(output, dict):
                records.extend(dict(r) for r in output.get("records", []))
        return records

    def require(self, key: str) -> Any:
        if key not in self.config:
            raise ConfigurationError(
                f"Stage {self.stage.id} requires config key '{key}'", stage_id=self.stage.id
            )
        return self.config[key]


def effective_config(run: PipelineRun, stage: PipelineStage) -> Dict[str, Any]:
    """Stage config with the run's per-stage overrides applied.

    Run parameters may carry ``{"stages": {stage_id: {...}}}``.
    """
    overrides = run.config.get("stages", {}).get(stage.id, {})
    return {**stage.config, **overrides}


StageHandler = Callable[[StageContext], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


async def extract_handler(ctx: StageContext) -> Dict[str, Any]:
    limit = ctx.config.get("max_records")

    if "source" in ctx.config:
        name = ctx.config["source"]
        source = ctx.services.sources.get(name)
        if source is None:
            raise ConfigurationError(f"Unknown source '{name}'", stage_id=ctx.stage.id)
        records = await source.fetch(limit)
    elif "records" in ctx.config:
        records = [dict(r) for r in ctx.config["records"]]
        if limit is not None:
            records = records[:limit]
    else:
        raise ConfigurationError(
            f"Extract stage {ctx.stage.id} needs a 'source' or inline 'records'"
        )

    ctx.run.log("info", f"Extracted {len(records)} records", stage_id=ctx.stage.id)
    return {"records": records, "records_extracted": len(records)}


async def transform_handler(ctx: StageContext) -> Dict[str, Any]:
    result = ctx.services.transformer.transform(
        ctx.records, ctx.config.get("operations", [])
    )

    ctx.run.records_processed += result.processed
    ctx.run.records_succeeded += result.succeeded
    ctx.run.records_failed += result.failed

    return {
        "records": result.records,
        "processed": result.processed,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "filtered": result.filtered,
        "errors": result.errors,
    }


async def load_handler(ctx: StageContext) -> Dict[str, Any]:
    records = ctx.records
    name = ctx.config.get("sink")
    if name is None:
        loaded = len(records)
    else:
        sink = ctx.services.sinks.get(name)
        if sink is None:
            raise ConfigurationError(f"Unknown sink '{name}'", stage_id=ctx.stage.id)
        loaded = await sink.write(records)

    ctx.run.log("info", f"Loaded {loaded} records", stage_id=ctx.stage.id)
    return {"records": records, "records_loaded": loaded}


async def validate_handler(ctx: StageContext) -> Dict[str, Any]:
    monitor = ctx.services.quality_monitor
    if monitor is None:
        raise ConfigurationError("No quality monitor configured", stage_id=ctx.stage.id)

    records = ctx.records
    report = monitor.check(records, ctx.config.get("checks", []))
    ctx.services.quality_reports[ctx.run.pipeline_id] = report

    if not report.passed:
        if ctx.config.get("fail_on_error", False):
            raise QualityGateError(
                f"Quality checks failed: {', '.join(report.failures)}",
                stage_id=ctx.stage.id,
                scores=report.scores,
            )
        ctx.run.log(
            "warning",
            f"Quality checks failed: {', '.join(report.failures)}",
            stage_id=ctx.stage.id,
            scores=report.scores,
        )

    return {
        "records": records,
        "passed": report.passed,
        "scores": report.scores,
        "failures": report.failures,
    }


async def enrich_handler(ctx: StageContext) -> Dict[str, Any]:
    store = ctx.services.feature_store
    if store is None:
        raise ConfigurationError("No feature store configured", stage_id=ctx.stage.id)

    mode = ctx.config.get("mode", "write")
    if mode == "write":
        return await _enrich_write(ctx, store)
    if mode == "read":
        return await _enrich_read(ctx, store)
    raise ConfigurationError(f"Unknown enrich mode '{mode}'", stage_id=ctx.stage.id)


async def _enrich_write(ctx: StageContext, store: FeatureStore) -> Dict[str, Any]:
    group_name = ctx.require("feature_group")
    entity_key = ctx.config.get("entity_key", "id")
    group = store.registry.require_feature_group(group_name)
    features = ctx.config.get("features") or list(group.features)

    records = ctx.records
    written = skipped = 0
    entities = set()
    for record in records:
        entity_id = record.get(entity_key)
        values = {f: record[f] for f in features if record.get(f) is not None}
        if entity_id is None or not values:
            skipped += 1
            continue

        result = await store.write_features(
            group_name, str(entity_id), values, source=f"pipeline:{ctx.run.pipeline_id}"
        )
        written += max(result.online_written, result.offline_written)
        entities.add(str(entity_id))

    if skipped:
        ctx.run.log("warning", f"Skipped {skipped} records without {entity_key} or features",
                    stage_id=ctx.stage.id)
    return {
        "records": records,
        "features_written": written,
        "entities": len(entities),
        "skipped": skipped,
    }


async def _enrich_read(ctx: StageContext, store: FeatureStore) -> Dict[str, Any]:
    features = ctx.require("features")
    entity_key = ctx.config.get("entity_key", "id")
    prefix = ctx.config.get("prefix", "")
    default = ctx.config.get("default")

    records = ctx.records
    queries = [
        FeatureQuery(name, str(record[entity_key]))
        for record in records
        if record.get(entity_key) is not None
        for name in features
    ]
    values = await store.online.get_batch(queries) if queries else {}

    hits = misses = 0
    for record in records:
        if record.get(entity_key) is None:
            continue
        entity_id = str(record[entity_key])
        for name in features:
            value = values.get(f"{name}:{entity_id}")
            if value is None:
                misses += 1
                record[prefix + name] = default
            else:
                hits += 1
                record[prefix + name] = value.value

    return {"records": records, "features_read": hits, "misses": misses}


async def ml_training_handler(ctx: StageContext) -> Dict[str, Any]:
    store = ctx.services.model_store
    if store is None:
        raise ConfigurationError("No model store configured", stage_id=ctx.stage.id)

    name = ctx.require("model_name")
    features = list(ctx.config.get("features", []))
    target = ctx.config.get("target", "")
    records = ctx.records
    if not records:
        raise ConfigurationError(f"No records to train {name} on", stage_id=ctx.stage.id)

    version = ctx.config.get("version")
    if version is None:
        version = str(len(store.list_versions(slugify(name))) + 1)

    matrix = np.array(
        [[_as_float(r.get(f)) for f in features] for r in records], dtype=float
    ).reshape(len(records), len(features))
    stats = {
        "feature_means": dict(zip(features, np.nanmean(matrix, axis=0).tolist()))
        if features else {},
        "feature_stds": dict(zip(features, np.nanstd(matrix, axis=0).tolist()))
        if features else {},
    }
    if target:
        labels = np.array([_as_float(r.get(target)) for r in records], dtype=float)
        stats["target_mean"] = float(np.nanmean(labels))

    model = MLModel(
        name=name,
        version=str(version),
        type=ModelType(ctx.config.get("model_type", "classification")),
        features=features,
        target=target,
        config=dict(ctx.config.get("hyperparameters", {})),
        metadata={
            "training_stats": stats,
            "records_trained": len(records),
            "trained_by": ctx.run.id,
        },
    )
    model_id = store.register_model(model)

    deployment_id = None
    if ctx.config.get("deploy", False):
        deployment = await store.deploy_model(model_id, model.version)
        deployment_id = deployment.id

    ctx.run.log("info", f"Trained {model_id} v{model.version} on {len(records)} records",
                stage_id=ctx.stage.id)
    return {
        "model_id": model_id,
        "version": model.version,
        "deployment_id": deployment_id,
        "records_trained": len(records),
    }


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    return float("nan")


async def ml_inference_handler(ctx: StageContext) -> Dict[str, Any]:
    store = ctx.services.model_store
    if store is None:
        raise ConfigurationError("No model store configured", stage_id=ctx.stage.id)

    model_id = ctx.require("model_id")
    features = ctx.config.get("features")
    output_field = ctx.config.get("output_field", "prediction")
    confidence_field = ctx.config.get("confidence_field", "confidence")

    records = ctx.records
    inputs = [
        {f: r.get(f) for f in features} if features else dict(r) for r in records
    ]
    options = PredictionOptions(version=ctx.config.get("version"))
    predictions = await store.batch_predict(model_id, inputs, options)

    for record, prediction in zip(records, predictions):
        record[output_field] = prediction.output
        record[confidence_field] = prediction.confidence

    return {
        "records": records,
        "predictions": len(predictions),
        "model_id": model_id,
        "versions": sorted({p.version for p in predictions}),
    }


DEFAULT_HANDLERS: Dict[StageType, StageHandler] = {
    StageType.EXTRACT: extract_handler,
    StageType.TRANSFORM: transform_handler,
    StageType.LOAD: load_handler,
    StageType.VALIDATE: validate_handler,
    StageType.ENRICH: enrich_handler,
    StageType.ML_TRAINING: ml_training_handler,
    StageType.ML_INFERENCE: ml_inference_handler,
}


__all__ = [
    "StageServices",
    "StageContext",
    "StageHandler",
    "get_stage_inputs",
    "effective_config",
    "DEFAULT_HANDLERS",
]
