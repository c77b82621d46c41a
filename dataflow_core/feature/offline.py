"""Dataflow Offline Store - Historical Features and Backfills.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.

History is append-only and kept sorted per (feature, entity), so
point-in-time lookups are a binary search. Backfills split a time range
into fixed chunks and compute them concurrently.
"""

from __future__ import annotations

import ast
import asyncio
import bisect
import inspect
import logging
import operator
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dataflow_core.config import OfflineStoreConfig
from dataflow_core.errors import ConfigurationError, NotFoundError
from dataflow_core.events import EventBus, EventType, FeatureEvent
from dataflow_core.feature.registry import FeatureRegistry
from dataflow_core.feature.types import (
    FeatureGroup,
    FeatureRecord,
    FeatureValue,
    FeatureView,
    RetrievalOptions,
)
from dataflow_core.utils.ids import new_id
from dataflow_core.utils.timing import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ComputationFn = Callable[[FeatureGroup, datetime, datetime], Any]

_CLAUSE_RE = re.compile(
    r"^\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*(==|!=|>=|<=|>|<)\s*(.+?)\s*$"
)
_AND_RE = re.compile(r"\s+and\s+", re.IGNORECASE)
_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


class JobStatus(Enum):
    """Computation job status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ComputationStatus:
    """Progress of a computation job.

    Attributes:
        job_id: Job identifier
        group: Feature group being computed
        status: Job status
        progress: Completed chunks / total chunks
        chunks_total: Number of chunks
        chunks_completed: Chunks finished successfully
        records_written: Values appended to history
        start_time: When the job was submitted
        end_time: When the job finished
        error: Failure message
    """

    job_id: str
    group: str
    status: JobStatus = JobStatus.RUNNING
    progress: float = 0.0
    chunks_total: int = 0
    chunks_completed: int = 0
    records_written: int = 0
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FilterClause:
    feature: str
    op: str
    literal: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        value = row.get(self.feature)
        if value is None:
            return False
        try:
            return bool(_OPERATORS[self.op](value, self.literal))
        except TypeError:
            return False


def parse_filter_expression(expression: Optional[str]) -> List[FilterClause]:
    """Parse ``feature op literal [and feature op literal ...]``.

    Literals are Python literals (numbers, quoted strings, True/False/None).

    Raises:
        ConfigurationError: If a clause does not parse
    """
    if not expression or not expression.strip():
        return []

    clauses = []
    for part in _AND_RE.split(expression.strip()):
        match = _CLAUSE_RE.match(part)
        if not match:
            raise ConfigurationError(f"Invalid filter clause: {part!r}")
        name, op, literal = match.groups()
        try:
            value = ast.literal_eval(literal)
        except (ValueError, SyntaxError) as e:
            raise ConfigurationError(f"Invalid literal in filter: {literal!r}") from e
        clauses.append(FilterClause(name, op, value))
    return clauses


class OfflineFeatureStore:
    """Historical feature storage and batch computation.

    Example:
        async def compute(group, start, end):
            for row in await warehouse.opens_between(start, end):
                yield FeatureRecord("open_rate", row.prospect_id, row.rate, row.ts)

        offline.register_computation("prospect_engagement", compute)
        job_id = await offline.compute_features("prospect_engagement", start, end)
        await offline.wait_for_job(job_id)
        offline.get_historical_features(["open_rate"], ["p1"], as_of)
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        config: Optional[OfflineStoreConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.registry = registry
        self.config = config or OfflineStoreConfig()
        self.event_bus = event_bus
        self._timestamps: Dict[Tuple[str, str], List[datetime]] = {}
        self._values: Dict[Tuple[str, str], List[FeatureValue]] = {}
        self._computations: Dict[str, ComputationFn] = {}
        self._jobs: Dict[str, ComputationStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._views: Dict[str, FeatureView] = {}
        self._view_filters: Dict[str, List[FilterClause]] = {}

    # History

    def write(
        self,
        feature: str,
        entity_id: str,
        value: Union[FeatureValue, Any],
        timestamp: Optional[datetime] = None,
        source: str = "",
    ) -> FeatureValue:
        """Append a value to history.

        Args:
            feature: Feature name
            entity_id: Entity identifier
            value: Raw value or FeatureValue
            timestamp: Event time for raw values (defaults to now)
            source: Producer for raw values

        Returns:
            The stored FeatureValue
        """
        if not isinstance(value, FeatureValue):
            definition = self.registry.get_feature(feature)
            value = FeatureValue(
                value=value,
                timestamp=timestamp or utcnow(),
                version=definition.version if definition else 1,
                source=source,
            )

        key = (feature, entity_id)
        timestamps = self._timestamps.setdefault(key, [])
        values = self._values.setdefault(key, [])
        index = bisect.bisect_right(timestamps, value.timestamp)
        timestamps.insert(index, value.timestamp)
        values.insert(index, value)
        return value

    def write_batch(self, records: List[FeatureRecord], source: str = "") -> int:
        for record in records:
            self.write(record.feature, record.entity_id, record.value,
                       timestamp=ensure_utc(record.timestamp), source=source)
        return len(records)

    def get_history(self, feature: str, entity_id: str) -> List[FeatureValue]:
        return list(self._values.get((feature, entity_id), []))

    def _value_at(
        self,
        feature: str,
        entity_id: str,
        point_in_time: datetime,
        max_age: Optional[timedelta],
    ) -> Optional[FeatureValue]:
        key = (feature, entity_id)
        timestamps = self._timestamps.get(key)
        if not timestamps:
            return None
        index = bisect.bisect_right(timestamps, point_in_time)
        if index == 0:
            return None
        value = self._values[key][index - 1]
        if max_age is not None and value.timestamp < point_in_time - max_age:
            return None
        return value

    def get_historical_features(
        self,
        keys: List[str],
        entity_ids: List[str],
        point_in_time: datetime,
        options: Optional[RetrievalOptions] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Values as they existed at a point in time.

        Args:
            keys: Feature names
            entity_ids: Entity identifiers
            point_in_time: Latest admissible value timestamp
            options: Retrieval options

        Returns:
            entity_id -> feature -> value (None when nothing qualifies)
        """
        options = options or RetrievalOptions()
        point_in_time = ensure_utc(point_in_time)

        unknown = [k for k in keys if k not in self.registry]
        if unknown:
            logger.warning(f"Historical lookup for unregistered features: {unknown}")

        result: Dict[str, Dict[str, Any]] = {}
        for entity_id in entity_ids:
            row: Dict[str, Any] = {}
            for key in keys:
                value = (
                    None if key in unknown
                    else self._value_at(key, entity_id, point_in_time, options.max_age)
                )
                if value is None or options.include_metadata:
                    row[key] = value
                else:
                    row[key] = value.value
            result[entity_id] = row

        return result

    # Computation jobs

    def register_computation(self, group_name: str, fn: ComputationFn) -> None:
        """Register the function that computes a group's features.

        ``fn(group, start, end)`` may be an async generator yielding
        FeatureRecord, or a coroutine function returning a list of them.
        """
        self._computations[group_name] = fn

    def _chunks(
        self,
        start: datetime,
        end: datetime,
        chunk_size: timedelta,
    ) -> List[Tuple[datetime, datetime]]:
        chunks = []
        cursor = start
        while cursor < end:
            chunk_end = min(cursor + chunk_size, end)
            chunks.append((cursor, chunk_end))
            cursor = chunk_end
        return chunks

    async def compute_features(
        self,
        group_name: str,
        start: datetime,
        end: datetime,
        parallelism: Optional[int] = None,
        chunk_size: Optional[timedelta] = None,
    ) -> str:
        """Start a chunked, parallel backfill and return its job id.

        Args:
            group_name: Feature group to compute
            start: Range start (inclusive)
            end: Range end (exclusive)
            parallelism: Concurrent chunks
            chunk_size: Chunk width

        Returns:
            Job identifier

        Raises:
            NotFoundError: If the group is unknown
            ConfigurationError: On an empty range, bad options, or no
                registered computation
        """
        group = self.registry.require_feature_group(group_name)
        if group_name not in self._computations:
            raise ConfigurationError(f"No computation registered for {group_name}")

        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ConfigurationError("compute_features requires start < end")

        if parallelism is None:
            parallelism = self.config.default_parallelism
        if chunk_size is None:
            chunk_size = self.config.default_chunk_size
        if parallelism < 1:
            raise ConfigurationError("parallelism must be at least 1")
        if chunk_size <= timedelta(0):
            raise ConfigurationError("chunk_size must be positive")

        chunks = self._chunks(start, end, chunk_size)
        job = ComputationStatus(job_id=new_id("job"), group=group_name,
                                chunks_total=len(chunks))
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.create_task(
            self._run_job(job, group, chunks, parallelism)
        )

        logger.info(
            f"Started computation {job.job_id} for {group_name}: "
            f"{len(chunks)} chunks, parallelism {parallelism}"
        )
        return job.job_id

    async def _run_job(
        self,
        job: ComputationStatus,
        group: FeatureGroup,
        chunks: List[Tuple[datetime, datetime]],
        parallelism: int,
    ) -> None:
        semaphore = asyncio.Semaphore(parallelism)

        async def run_chunk(chunk_start: datetime, chunk_end: datetime) -> None:
            async with semaphore:
                records = await self._collect(group, chunk_start, chunk_end)
                for record in records:
                    if record.feature not in group.features:
                        raise ConfigurationError(
                            f"Computation for {group.name} emitted foreign feature "
                            f"{record.feature}"
                        )
                job.records_written += self.write_batch(records, source=f"job:{job.job_id}")
                job.chunks_completed += 1
                job.progress = job.chunks_completed / job.chunks_total
                self._publish(EventType.COMPUTATION_PROGRESS, group=group.name,
                              job_id=job.job_id, data={"progress": job.progress})

        outcomes = await asyncio.gather(
            *(run_chunk(s, e) for s, e in chunks), return_exceptions=True
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]

        job.end_time = utcnow()
        if errors:
            job.status = JobStatus.FAILED
            job.error = f"{len(errors)}/{len(chunks)} chunks failed: {errors[0]}"
            logger.error(f"Computation {job.job_id} failed: {job.error}")
            self._publish(EventType.COMPUTATION_FAILED, group=group.name,
                          job_id=job.job_id, data={"error": job.error})
        else:
            job.status = JobStatus.COMPLETED
            job.progress = 1.0
            logger.info(
                f"Computation {job.job_id} completed: {job.records_written} records"
            )
            self._publish(EventType.COMPUTATION_COMPLETED, group=group.name,
                          job_id=job.job_id,
                          data={"records_written": job.records_written})

    async def _collect(
        self,
        group: FeatureGroup,
        start: datetime,
        end: datetime,
    ) -> List[FeatureRecord]:
        output = self._computations[group.name](group, start, end)
        if inspect.isasyncgen(output):
            return [record async for record in output]
        if inspect.isawaitable(output):
            output = await output
        return list(output or [])

    def get_computation_status(self, job_id: str) -> ComputationStatus:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Computation job not found: {job_id}", job_id=job_id)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[ComputationStatus]:
        return [j for j in self._jobs.values() if status is None or j.status == status]

    async def wait_for_job(
        self,
        job_id: str,
        timeout: Optional[float] = None,
    ) -> ComputationStatus:
        """Wait until a job finishes and return its status."""
        job = self.get_computation_status(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return job

    # Feature views

    def create_feature_view(
        self,
        name: str,
        features: List[str],
        entities: List[str],
        filter_expression: Optional[str] = None,
    ) -> FeatureView:
        """Define a reusable projection over history.

        Raises:
            ConfigurationError: On a duplicate name, unknown feature, or
                unparseable filter
        """
        if name in self._views:
            raise ConfigurationError(f"Feature view already exists: {name}")

        view = FeatureView(name=name, features=list(features), entities=list(entities),
                           filter_expression=filter_expression)
        clauses = parse_filter_expression(filter_expression)

        referenced = set(view.features) | {c.feature for c in clauses}
        unknown = sorted(f for f in referenced if f not in self.registry)
        if unknown:
            raise ConfigurationError(f"Feature view {name} references unknown {unknown}")

        self._views[name] = view
        self._view_filters[name] = clauses
        logger.info(f"Created feature view {name} ({len(view.features)} features)")
        self._publish(EventType.FEATURE_VIEW_CREATED,
                      data={"view": name, "features": view.features})
        return view

    def get_feature_view(self, name: str) -> FeatureView:
        view = self._views.get(name)
        if view is None:
            raise NotFoundError(f"Feature view not found: {name}", view=name)
        return view

    def list_feature_views(self) -> List[FeatureView]:
        return list(self._views.values())

    def read_feature_view(
        self,
        name: str,
        point_in_time: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Evaluate a view at a point in time.

        Returns:
            One row per entity passing the filter, with "entity_id" plus
            the projected features
        """
        view = self.get_feature_view(name)
        clauses = self._view_filters[name]
        columns = list(dict.fromkeys([*view.features, *(c.feature for c in clauses)]))

        table = self.get_historical_features(columns, view.entities,
                                             point_in_time or utcnow())
        rows = []
        for entity_id in view.entities:
            values = table[entity_id]
            if all(clause.matches(values) for clause in clauses):
                rows.append({"entity_id": entity_id,
                             **{f: values[f] for f in view.features}})
        return rows

    def _publish(self, event_type: EventType, data=None, **fields) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(FeatureEvent(event_type, data=data or {}, **fields))


__all__ = [
    "JobStatus",
    "ComputationStatus",
    "FilterClause",
    "parse_filter_expression",
    "OfflineFeatureStore",
]
