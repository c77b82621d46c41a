"""Dataflow Execution - Grouped Stage Execution with Retries.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from typing import Any, Callable, Dict, Optional

from dataflow_core.errors import (
    ConfigurationError,
    DataflowError,
    PipelineCancelledError,
    StageExecutionError,
)
from dataflow_core.events import EventBus, EventType, PipelineEvent
from dataflow_core.pipeline.handlers import (
    StageContext,
    StageHandler,
    StageServices,
    effective_config,
    get_stage_inputs,
)
from dataflow_core.pipeline.pipeline import (
    DataPipeline,
    PipelineRun,
    RunStatus,
    build_execution_plan,
)
from dataflow_core.pipeline.resources import ResourceManager
from dataflow_core.pipeline.stage import (
    PipelineStage,
    StageResult,
    StageStatus,
    calculate_retry_delay,
)
from dataflow_core.utils.timing import utcnow

logger = logging.getLogger(__name__)


class PipelineExecutor:
    """Drives one run through its execution plan.

    Stages of a group run concurrently and the next group starts only once
    every stage of the current one has settled. A failing stage does not
    interrupt its siblings; the run fails with the first failure of the
    group after the group finishes.

    Cancellation is cooperative: the run's cancel event is checked before
    each group and before each attempt, and retry waits end early when it
    is set.
    """

    def __init__(
        self,
        handlers: Dict[Any, StageHandler],
        services: StageServices,
        resources: ResourceManager,
        event_bus: Optional[EventBus] = None,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize executor.

        Args:
            handlers: Stage type -> handler (shared with the engine)
            services: Collaborators passed to handlers
            resources: Resource manager gating stage attempts
            event_bus: Bus for run and stage events
            rng: Jitter source for retry delays
        """
        self.handlers = handlers
        self.services = services
        self.resources = resources
        self.event_bus = event_bus
        self.rng = rng

    async def execute(
        self,
        pipeline: DataPipeline,
        run: PipelineRun,
        cancel_event: asyncio.Event,
    ) -> PipelineRun:
        """Execute a queued run to a terminal status.

        Args:
            pipeline: Pipeline definition
            run: Queued run
            cancel_event: Set to request cancellation

        Returns:
            The run
        """
        if not run.transition(RunStatus.RUNNING):
            return run

        run.log("info", f"Run started with {len(pipeline.stages)} stages")
        self._publish(EventType.PIPELINE_STARTED, run)

        try:
            plan = build_execution_plan(pipeline.stages)
            for index, group in enumerate(plan, start=1):
                self._check_cancelled(run, cancel_event)
                run.log("debug", f"Group {index}/{len(plan)}: {[s.id for s in group]}")

                outcomes = await asyncio.gather(
                    *(self.run_stage(run, stage, cancel_event) for stage in group),
                    return_exceptions=True,
                )
                errors = [o for o in outcomes if isinstance(o, BaseException)]
                cancelled = [e for e in errors if isinstance(e, PipelineCancelledError)]
                if cancelled:
                    raise cancelled[0]
                if errors:
                    raise errors[0]

        except PipelineCancelledError as e:
            if run.transition(RunStatus.CANCELLED):
                run.error = str(e)
                run.log("warning", "Run cancelled")
                self._publish(EventType.PIPELINE_CANCELLED, run)

        except Exception as e:
            if run.transition(RunStatus.FAILED):
                run.error = str(e)
                run.log("error", f"Run failed: {e}")
                self._publish(EventType.PIPELINE_FAILED, run, data={"error": str(e)})

        else:
            if run.transition(RunStatus.COMPLETED):
                run.log(
                    "info",
                    f"Run completed in {run.duration:.2f}s "
                    f"({run.records_processed} records processed)",
                )
                self._publish(
                    EventType.PIPELINE_COMPLETED,
                    run,
                    data={
                        "duration": run.duration,
                        "records_processed": run.records_processed,
                        "stages": list(run.stage_results),
                    },
                )

        return run

    async def run_stage(
        self,
        run: PipelineRun,
        stage: PipelineStage,
        cancel_event: asyncio.Event,
    ) -> StageResult:
        """Run one stage under its retry policy.

        Raises:
            StageExecutionError: When the stage gives up
            PipelineCancelledError: When cancellation is observed
        """
        result = StageResult(stage_id=stage.id, status=StageStatus.RUNNING, started_at=utcnow())
        run.stage_results[stage.id] = result
        policy = stage.retry_policy
        started = time.perf_counter()
        last_error: Optional[BaseException] = None

        handler = self.handlers.get(stage.type)
        self._publish(EventType.STAGE_STARTED, run, stage_id=stage.id)

        try:
            if handler is None:
                last_error = ConfigurationError(
                    f"No handler for stage type {stage.type.value}", stage_id=stage.id
                )
            else:
                for attempt in range(1, policy.max_attempts + 1):
                    self._check_cancelled(run, cancel_event)
                    result.attempts = attempt
                    try:
                        output = await self._attempt(run, stage, handler)
                    except Exception as e:
                        last_error = e
                        final = attempt >= policy.max_attempts or (
                            isinstance(e, DataflowError) and not e.retryable
                        )
                        run.log(
                            "error" if final else "warning",
                            f"Stage {stage.id} attempt {attempt}/{policy.max_attempts} "
                            f"failed: {e}",
                            stage_id=stage.id,
                            attempt=attempt,
                        )
                        if final:
                            break

                        delay = calculate_retry_delay(policy, attempt, self.rng)
                        self._publish(
                            EventType.STAGE_RETRYING,
                            run,
                            stage_id=stage.id,
                            data={"attempt": attempt, "delay": delay, "error": str(e)},
                        )
                        self._check_cancelled(run, cancel_event)
                        await self._sleep(delay, cancel_event)
                        continue

                    result.status = StageStatus.COMPLETED
                    result.output = output
                    self._finish(result, started)
                    run.log("info", f"Stage {stage.id} completed", stage_id=stage.id,
                            attempts=attempt)
                    self._publish(EventType.STAGE_COMPLETED, run, stage_id=stage.id,
                                  data={"attempts": attempt,
                                        "duration": result.duration_seconds})
                    return result

        except PipelineCancelledError:
            result.status = StageStatus.CANCELLED
            self._finish(result, started)
            raise

        result.status = StageStatus.FAILED
        result.error = str(last_error)
        self._finish(result, started)
        self._publish(EventType.STAGE_FAILED, run, stage_id=stage.id,
                      data={"attempts": result.attempts, "error": result.error})
        raise StageExecutionError(
            f"Stage {stage.id} failed after {result.attempts} attempt(s): {last_error}",
            stage_id=stage.id,
            attempts=result.attempts,
            cause=last_error,
        ) from last_error

    async def _attempt(
        self,
        run: PipelineRun,
        stage: PipelineStage,
        handler: StageHandler,
    ) -> Any:
        context = StageContext(
            run=run,
            stage=stage,
            inputs=get_stage_inputs(run, stage),
            config=effective_config(run, stage),
            services=self.services,
        )
        async with self.resources.allocate(stage.resources):
            if stage.timeout is None:
                return await self._invoke(handler, context)
            try:
                return await asyncio.wait_for(self._invoke(handler, context), stage.timeout)
            except asyncio.TimeoutError:
                raise asyncio.TimeoutError(
                    f"Stage {stage.id} timed out after {stage.timeout}s"
                ) from None

    @staticmethod
    async def _invoke(handler: StageHandler, context: StageContext) -> Any:
        output = handler(context)
        if inspect.isawaitable(output):
            output = await output
        return output

    @staticmethod
    async def _sleep(delay: float, cancel_event: asyncio.Event) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _check_cancelled(run: PipelineRun, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set() or run.status == RunStatus.CANCELLED:
            raise PipelineCancelledError(f"Run {run.id} cancelled", run_id=run.id)

    @staticmethod
    def _finish(result: StageResult, started: float) -> None:
        result.completed_at = utcnow()
        result.duration_seconds = time.perf_counter() - started

    def _publish(self, event_type: EventType, run: PipelineRun, data=None, **fields) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(PipelineEvent(
                event_type,
                data=data or {},
                pipeline_id=run.pipeline_id,
                run_id=run.id,
                **fields,
            ))


__all__ = ["PipelineExecutor"]
