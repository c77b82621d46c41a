"""Dataflow Engine - Pipeline Registration, Runs and Monitoring.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from dataflow_core.config import EngineConfig
from dataflow_core.errors import CapacityError, EngineStateError, NotFoundError
from dataflow_core.events import EventBus, EventType, PipelineEvent
from dataflow_core.pipeline.execution import PipelineExecutor
from dataflow_core.pipeline.handlers import DEFAULT_HANDLERS, StageHandler, StageServices
from dataflow_core.pipeline.pipeline import (
    DataPipeline,
    PipelineRun,
    RunStatus,
    validate_pipeline,
)
from dataflow_core.pipeline.resources import ResourceManager
from dataflow_core.pipeline.sources import DataSink, MessageSource
from dataflow_core.pipeline.stage import ResourceRequirements, StageType
from dataflow_core.quality.monitor import QualityReport
from dataflow_core.utils.ids import new_id
from dataflow_core.utils.timing import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Runs registered pipelines as background tasks.

    Features:
    - Validation on registration
    - Concurrent runs up to a configured ceiling
    - Layered stage execution with retries and resource gating
    - Cooperative cancellation and a periodic stuck-run sweep

    Example:
        engine = PipelineEngine(EngineConfig())
        await engine.start()
        engine.register_pipeline(pipeline)
        run_id = await engine.execute_pipeline(pipeline.id)
        run = await engine.wait_for_run(run_id)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        services: Optional[StageServices] = None,
        event_bus: Optional[EventBus] = None,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize engine.

        Args:
            config: Engine configuration
            services: Collaborators for stage handlers
            event_bus: Bus for run and stage events
            rng: Jitter source for retry delays
        """
        self.config = config or EngineConfig()
        self.services = services or StageServices()
        self.event_bus = event_bus
        self.resources = ResourceManager(ResourceRequirements(
            cpu=self.config.cpu_capacity,
            memory=self.config.memory_capacity,
            storage=self.config.storage_capacity,
            gpu=self.config.gpu_capacity,
        ))

        self._handlers: Dict[StageType, StageHandler] = dict(DEFAULT_HANDLERS)
        self.executor = PipelineExecutor(
            self._handlers, self.services, self.resources, event_bus, rng
        )

        self._pipelines: Dict[str, DataPipeline] = {}
        self._runs: Dict[str, PipelineRun] = {}
        self._history: Dict[str, List[str]] = defaultdict(list)
        self._active: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Accept runs and start the stuck-run monitor."""
        if self._running:
            return
        self._running = True
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Pipeline engine started (max {self.config.max_concurrent_runs} runs)")

    async def stop(self) -> None:
        """Stop intake, drain in-flight runs, then cancel what remains."""
        if not self._running:
            return
        self._running = False

        tasks = list(self._active.values())
        if tasks:
            logger.info(f"Draining {len(tasks)} runs")
            _, pending = await asyncio.wait(tasks, timeout=self.config.drain_timeout)
            for run_id, task in list(self._active.items()):
                if task in pending:
                    self._abort(run_id, "Engine stopped before the run finished")
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        logger.info("Pipeline engine stopped")

    # Registration

    def register_pipeline(self, pipeline: DataPipeline) -> None:
        """Validate and store a pipeline.

        Raises:
            ConfigurationError: If the definition is invalid
        """
        validate_pipeline(pipeline)
        self._pipelines[pipeline.id] = pipeline

        logger.info(f"Registered pipeline {pipeline.id} ({len(pipeline.stages)} stages)")
        if self.event_bus is not None:
            self.event_bus.publish(PipelineEvent(
                EventType.PIPELINE_REGISTERED,
                pipeline_id=pipeline.id,
                data={"name": pipeline.name, "stages": [s.id for s in pipeline.stages]},
            ))

    def get_pipeline(self, pipeline_id: str) -> Optional[DataPipeline]:
        return self._pipelines.get(pipeline_id)

    def list_pipelines(self) -> List[DataPipeline]:
        return list(self._pipelines.values())

    def register_handler(self, stage_type: Union[StageType, str], handler: StageHandler) -> None:
        """Override the handler of a stage type."""
        self._handlers[StageType(stage_type)] = handler

    def register_source(self, name: str, source: MessageSource) -> None:
        self.services.sources[name] = source

    def register_sink(self, name: str, sink: DataSink) -> None:
        self.services.sinks[name] = sink

    # Runs

    async def execute_pipeline(
        self,
        pipeline_id: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue a run and return its id without waiting for it.

        Args:
            pipeline_id: Registered pipeline
            config: Run parameters

        Returns:
            Run id

        Raises:
            EngineStateError: If the engine is not started
            NotFoundError: If the pipeline is unknown
            CapacityError: If the concurrent run ceiling is reached
        """
        if not self._running:
            raise EngineStateError("Pipeline engine is not running")

        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"Pipeline not found: {pipeline_id}", pipeline_id=pipeline_id)

        if len(self._active) >= self.config.max_concurrent_runs:
            raise CapacityError(
                f"Maximum concurrent runs ({self.config.max_concurrent_runs}) reached",
                pipeline_id=pipeline_id,
            )

        run = PipelineRun(id=new_id("run"), pipeline_id=pipeline_id, config=dict(config or {}))
        self._runs[run.id] = run
        self._history[pipeline_id].append(run.id)

        cancel_event = asyncio.Event()
        self._cancel_events[run.id] = cancel_event
        task = asyncio.create_task(self.executor.execute(pipeline, run, cancel_event))
        self._active[run.id] = task
        task.add_done_callback(lambda t, run_id=run.id: self._on_run_done(run_id, t))

        run.log("info", "Run queued")
        return run.id

    def _on_run_done(self, run_id: str, task: asyncio.Task) -> None:
        self._active.pop(run_id, None)
        self._cancel_events.pop(run_id, None)
        run = self._runs[run_id]

        if task.cancelled():
            if run.transition(RunStatus.CANCELLED):
                run.error = run.error or "Run task cancelled"
                self._publish_cancelled(run)
            return

        error = task.exception()
        if error is not None and run.transition(RunStatus.FAILED):
            run.error = str(error)
            logger.error(f"Run {run_id} crashed: {error}")

    def get_pipeline_status(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def get_all_pipeline_statuses(self) -> Dict[str, List[PipelineRun]]:
        """Runs grouped by pipeline, oldest first."""
        return {
            pipeline_id: [self._runs[run_id] for run_id in run_ids]
            for pipeline_id, run_ids in self._history.items()
        }

    def get_data_quality_report(self, pipeline_id: str) -> Optional[QualityReport]:
        """Latest report from the pipeline's validate stages, if any ran.

        Raises:
            NotFoundError: If the pipeline is not registered
        """
        if pipeline_id not in self._pipelines:
            raise NotFoundError(f"Pipeline not found: {pipeline_id}", pipeline_id=pipeline_id)
        return self.services.quality_reports.get(pipeline_id)

    def active_runs(self) -> List[str]:
        return list(self._active)

    def cancel_pipeline(self, run_id: str) -> None:
        """Request cooperative cancellation of an in-flight run.

        Raises:
            NotFoundError: If the run is not in flight
        """
        cancel_event = self._cancel_events.get(run_id)
        if cancel_event is None:
            raise NotFoundError(f"No active run {run_id}", run_id=run_id)
        cancel_event.set()
        self._runs[run_id].log("warning", "Cancellation requested")

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> PipelineRun:
        """Wait until a run reaches a terminal status.

        Raises:
            NotFoundError: If the run is unknown
            asyncio.TimeoutError: If it is still in flight after ``timeout``
        """
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Run not found: {run_id}", run_id=run_id)

        task = self._active.get(run_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        if not run.status.is_terminal:
            raise asyncio.TimeoutError(f"Run {run_id} still {run.status.value}")
        return run

    def get_pipeline_metrics(self, pipeline_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate run statistics, for one pipeline or all of them."""
        runs = [
            r for r in self._runs.values()
            if pipeline_id is None or r.pipeline_id == pipeline_id
        ]
        durations = [r.duration for r in runs if r.status.is_terminal and r.duration is not None]

        def count(status: RunStatus) -> int:
            return sum(1 for r in runs if r.status == status)

        return {
            "total_runs": len(runs),
            "successful_runs": count(RunStatus.COMPLETED),
            "failed_runs": count(RunStatus.FAILED),
            "cancelled_runs": count(RunStatus.CANCELLED),
            "active_runs": count(RunStatus.RUNNING) + count(RunStatus.QUEUED),
            "avg_duration": float(np.mean(durations)) if durations else 0.0,
            "records_processed": sum(r.records_processed for r in runs),
        }

    # Monitoring

    def sweep_stuck_runs(self, now: Optional[datetime] = None) -> List[str]:
        """Cancel runs that have been running longer than ``run_timeout``.

        Args:
            now: Reference time (defaults to the current time)

        Returns:
            Ids of the runs cancelled
        """
        now = ensure_utc(now) if now else utcnow()
        stuck = []
        for run_id in list(self._active):
            run = self._runs[run_id]
            if run.status != RunStatus.RUNNING or run.start_time is None:
                continue
            if (now - run.start_time).total_seconds() <= self.config.run_timeout:
                continue
            self._abort(run_id, f"Run exceeded timeout of {self.config.run_timeout}s")
            stuck.append(run_id)
        return stuck

    def _abort(self, run_id: str, reason: str) -> None:
        run = self._runs[run_id]
        cancel_event = self._cancel_events.get(run_id)
        if cancel_event is not None:
            cancel_event.set()
        if run.transition(RunStatus.CANCELLED):
            run.error = reason
            run.log("error", reason)
            self._publish_cancelled(run)
        task = self._active.get(run_id)
        if task is not None:
            task.cancel()

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.monitor_interval)
                stuck = self.sweep_stuck_runs()
                if stuck:
                    logger.warning(f"Cancelled stuck runs: {stuck}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Run monitor error: {e}")

    def _publish_cancelled(self, run: PipelineRun) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(PipelineEvent(
                EventType.PIPELINE_CANCELLED,
                pipeline_id=run.pipeline_id,
                run_id=run.id,
                data={"reason": run.error},
            ))


__all__ = ["PipelineEngine"]
