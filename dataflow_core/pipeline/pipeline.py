"""Dataflow Pipeline - Pipeline Definitions and Runs.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dataflow_core.errors import ConfigurationError
from dataflow_core.pipeline.dag import DAG
from dataflow_core.pipeline.stage import PipelineStage, StageResult
from dataflow_core.utils.serialization import to_jsonable
from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    """Pipeline run status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


_ALLOWED_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
}


@dataclass
class DataPipeline:
    """A pipeline definition.

    Attributes:
        id: Pipeline identifier
        name: Pipeline name
        stages: Stages in declaration order
        description: Pipeline description
    """

    id: str
    name: str
    stages: List[PipelineStage] = field(default_factory=list)
    description: str = ""

    def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def build_dag(self) -> DAG:
        """Build the stage dependency graph."""
        dag = DAG()
        for stage in self.stages:
            dag.add_node(stage.id, stage.dependencies, data=stage)
        return dag

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataPipeline":
        """Build a pipeline from its JSON definition."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            stages=[PipelineStage.from_dict(s) for s in data.get("stages", [])],
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON definition accepted by ``from_dict``."""
        return to_jsonable(self)


def validate_pipeline(pipeline: DataPipeline) -> None:
    """Validate a pipeline definition.

    Args:
        pipeline: Pipeline to validate

    Raises:
        ConfigurationError: If id or name is missing, there are no stages,
            a dependency is unknown, or the stage graph has a cycle
    """
    if not pipeline.id or not pipeline.name:
        raise ConfigurationError("Pipeline requires an id and a name")

    if not pipeline.stages:
        raise ConfigurationError(f"Pipeline {pipeline.id} has no stages")

    pipeline.build_dag().validate()


def build_execution_plan(stages: List[PipelineStage]) -> List[List[PipelineStage]]:
    """Layer stages into groups that may run concurrently.

    Every stage lands in exactly one group, after all of its dependencies,
    and keeps its declaration order within the group.

    Args:
        stages: Stages in declaration order

    Returns:
        Successive groups of stages
    """
    dag = DAG()
    for stage in stages:
        dag.add_node(stage.id, stage.dependencies, data=stage)
    dag.validate()

    return [
        [dag.get_node(stage_id).data for stage_id in level]
        for level in dag.get_parallel_levels()
    ]


@dataclass
class LogEntry:
    """A run log line.

    Attributes:
        timestamp: When it was written
        level: Log level name
        message: Message text
        metadata: Structured context
    """

    timestamp: datetime
    level: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineRun:
    """A pipeline execution run.

    Attributes:
        id: Unique run identifier
        pipeline_id: Pipeline identifier
        status: Run status
        config: Run parameters
        start_time: When the run started executing
        end_time: When the run reached a terminal state
        records_processed: Records seen by transform stages
        records_succeeded: Records that passed
        records_failed: Records that failed
        logs: Ordered run log
        stage_results: Results keyed by stage id
        error: Terminal error message
        created_at: When the run was queued
    """

    id: str
    pipeline_id: str
    status: RunStatus = RunStatus.QUEUED
    config: Dict[str, Any] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    logs: List[LogEntry] = field(default_factory=list)
    stage_results: Dict[str, StageResult] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def duration(self) -> Optional[float]:
        """Run duration in seconds, once started."""
        if self.start_time is None:
            return None
        end = self.end_time or utcnow()
        return (end - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def transition(self, status: RunStatus) -> bool:
        """Move to a later status.

        Returns:
            False if the move would go backwards or leave a terminal state
        """
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            return False

        self.status = status
        if status == RunStatus.RUNNING:
            self.start_time = utcnow()
        elif status.is_terminal:
            self.end_time = utcnow()
        return True

    def log(self, level: str, message: str, **metadata) -> None:
        """Append to the run log and mirror to the module logger."""
        self.logs.append(
            LogEntry(timestamp=utcnow(), level=level, message=message, metadata=metadata)
        )
        logger.log(
            logging.getLevelName(level.upper()),
            f"[{self.pipeline_id}/{self.id}] {message}",
        )


__all__ = [
    "RunStatus",
    "DataPipeline",
    "validate_pipeline",
    "build_execution_plan",
    "LogEntry",
    "PipelineRun",
]
