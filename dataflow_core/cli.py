"""Dataflow CLI - Command Line Interface.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dataflow_core.config import ENV_PREFIX, Settings
from dataflow_core.errors import ConfigurationError
from dataflow_core.pipeline.pipeline import (
    DataPipeline,
    PipelineRun,
    RunStatus,
    build_execution_plan,
    validate_pipeline,
)
from dataflow_core.pipeline.sources import InMemoryMessageSource
from dataflow_core.pipeline.stage import BackoffStrategy, RetryPolicy, calculate_retry_delay
from dataflow_core.runtime import DataflowRuntime
from dataflow_core.utils.serialization import JSONSerializer

logger = logging.getLogger(__name__)


class CLI:
    """Dataflow CLI.

    Commands:
    - run: Execute a pipeline definition
    - plan: Show a pipeline's execution groups
    - retry-delays: Show a retry policy's delay schedule
    """

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="dataflow",
            description="Dataflow - outreach data pipeline core",
        )
        self.serializer = JSONSerializer(indent=2)
        self._setup_parsers()

    def _setup_parsers(self):
        """Setup command parsers."""
        subparsers = self.parser.add_subparsers(dest="command", help="Commands")

        run_parser = subparsers.add_parser("run", help="Run a pipeline")
        run_parser.add_argument("pipeline", help="Pipeline definition (JSON)")
        run_parser.add_argument("--config", type=str, help="Settings file (JSON)")
        run_parser.add_argument("--params", type=str, help="JSON run parameters")
        run_parser.add_argument("--timeout", type=float, help="Seconds to wait for the run")
        run_parser.add_argument(
            "--source", action="append", default=[], metavar="NAME=FILE",
            help="Register a JSON list of records as an extract source",
        )

        plan_parser = subparsers.add_parser("plan", help="Show execution plan")
        plan_parser.add_argument("pipeline", help="Pipeline definition (JSON)")

        delays_parser = subparsers.add_parser("retry-delays", help="Show retry delays")
        delays_parser.add_argument(
            "--strategy", choices=[s.value for s in BackoffStrategy], default="fixed"
        )
        delays_parser.add_argument("--base", type=float, default=1.0)
        delays_parser.add_argument("--max", type=float, default=30.0)
        delays_parser.add_argument("--attempts", type=int, default=3)
        delays_parser.add_argument("--jitter", action="store_true")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run CLI command."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            if parsed.command == "run":
                return self._handle_run(parsed)
            elif parsed.command == "plan":
                return self._handle_plan(parsed)
            elif parsed.command == "retry-delays":
                return self._handle_retry_delays(parsed)
            else:
                self.parser.print_help()
                return 1
        except Exception as e:
            logger.error(f"Error: {e}")
            return 1

    def _handle_run(self, args) -> int:
        """Handle run command."""
        pipeline = _load_pipeline(args.pipeline)
        settings = Settings.load(args.config) if args.config else Settings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        params = json.loads(args.params) if args.params else {}
        sources = dict(_parse_source(s) for s in args.source)

        run = asyncio.run(self._execute(settings, pipeline, params, sources, args.timeout))
        print(self.serializer.serialize(_run_summary(run)))
        return 0 if run.status == RunStatus.COMPLETED else 1

    async def _execute(
        self,
        settings: Settings,
        pipeline: DataPipeline,
        params: Dict[str, Any],
        sources: Dict[str, List[Dict[str, Any]]],
        timeout: Optional[float],
    ) -> PipelineRun:
        async with DataflowRuntime(settings) as runtime:
            for name, records in sources.items():
                runtime.engine.register_source(name, InMemoryMessageSource(records))
            runtime.engine.register_pipeline(pipeline)
            run_id = await runtime.engine.execute_pipeline(pipeline.id, params)
            return await runtime.engine.wait_for_run(run_id, timeout)

    def _handle_plan(self, args) -> int:
        """Handle plan command."""
        pipeline = _load_pipeline(args.pipeline)
        validate_pipeline(pipeline)
        plan = build_execution_plan(pipeline.stages)
        print(self.serializer.serialize([[stage.id for stage in group] for group in plan]))
        return 0

    def _handle_retry_delays(self, args) -> int:
        """Handle retry-delays command."""
        policy = RetryPolicy(
            max_attempts=args.attempts,
            backoff_strategy=args.strategy,
            base_delay=args.base,
            max_delay=args.max,
            jitter=args.jitter,
        )
        delays = [
            round(calculate_retry_delay(policy, attempt), 3)
            for attempt in range(1, policy.max_attempts)
        ]
        print(self.serializer.serialize(delays))
        return 0


def _load_pipeline(path: str) -> DataPipeline:
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read pipeline {path}: {e}") from e
    return DataPipeline.from_dict(data)


def _parse_source(arg: str):
    name, sep, path = arg.partition("=")
    if not sep or not name:
        raise ConfigurationError(f"Source must look like NAME=FILE, got '{arg}'")
    try:
        records = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read source {path}: {e}") from e
    if not isinstance(records, list):
        raise ConfigurationError(f"Source {path} must hold a JSON list of records")
    return name, records


def _run_summary(run: PipelineRun) -> Dict[str, Any]:
    return {
        "run_id": run.id,
        "pipeline_id": run.pipeline_id,
        "status": run.status,
        "duration": run.duration,
        "records_processed": run.records_processed,
        "records_succeeded": run.records_succeeded,
        "records_failed": run.records_failed,
        "error": run.error,
        "stages": {
            stage_id: {
                "status": result.status,
                "attempts": result.attempts,
                "duration": result.duration_seconds,
                "error": result.error,
            }
            for stage_id, result in run.stage_results.items()
        },
    }


def main():
    """CLI entry point."""
    logging.basicConfig(level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper())
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
