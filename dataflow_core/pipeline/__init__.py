"""Pipeline module - DAG stage execution engine."""

from dataflow_core.pipeline.stage import (
    BackoffStrategy,
    PipelineStage,
    ResourceRequirements,
    RetryPolicy,
    StageResult,
    StageStatus,
    StageType,
    calculate_retry_delay,
)
from dataflow_core.pipeline.dag import DAG, DAGNode
from dataflow_core.pipeline.pipeline import (
    DataPipeline,
    LogEntry,
    PipelineRun,
    RunStatus,
    build_execution_plan,
    validate_pipeline,
)
from dataflow_core.pipeline.resources import ResourceManager
from dataflow_core.pipeline.transforms import TransformationEngine, TransformResult
from dataflow_core.pipeline.sources import (
    DataSink,
    InMemoryMessageSource,
    InMemorySink,
    MessageSource,
)
from dataflow_core.pipeline.handlers import StageContext, StageServices, get_stage_inputs
from dataflow_core.pipeline.execution import PipelineExecutor
from dataflow_core.pipeline.engine import PipelineEngine

__all__ = [
    "StageType",
    "StageStatus",
    "BackoffStrategy",
    "RetryPolicy",
    "calculate_retry_delay",
    "ResourceRequirements",
    "PipelineStage",
    "StageResult",
    "DAG",
    "DAGNode",
    "DataPipeline",
    "LogEntry",
    "PipelineRun",
    "RunStatus",
    "build_execution_plan",
    "validate_pipeline",
    "ResourceManager",
    "TransformationEngine",
    "TransformResult",
    "MessageSource",
    "InMemoryMessageSource",
    "DataSink",
    "InMemorySink",
    "StageContext",
    "StageServices",
    "get_stage_inputs",
    "PipelineExecutor",
    "PipelineEngine",
]
