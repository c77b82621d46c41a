"""Dataflow Resources - Stage Resource Manager.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from dataflow_core.errors import ConfigurationError
from dataflow_core.pipeline.stage import ResourceRequirements

logger = logging.getLogger(__name__)


class ResourceManager:
    """Gates concurrent stages by declared CPU, memory, storage and GPU.

    Acquisition waits until enough capacity is free. A request larger than
    total capacity can never be satisfied and fails immediately without
    retrying.

    Example:
        manager = ResourceManager(ResourceRequirements(cpu=8, memory=16384))
        async with manager.allocate(stage.resources):
            await run(stage)
    """

    def __init__(self, capacity: ResourceRequirements):
        """Initialize manager.

        Args:
            capacity: Total resources available to concurrent stages
        """
        self.capacity = capacity
        self._in_use: Dict[str, float] = {k: 0.0 for k in capacity.as_dict()}
        self._condition = asyncio.Condition()
        self.allocations = 0

    def available(self) -> ResourceRequirements:
        """Currently free resources."""
        total = self.capacity.as_dict()
        return ResourceRequirements(**{k: total[k] - self._in_use[k] for k in total})

    def in_use(self) -> ResourceRequirements:
        return ResourceRequirements(**self._in_use)

    async def acquire(self, requirements: ResourceRequirements) -> None:
        """Wait for and reserve resources.

        Args:
            requirements: Resources to reserve

        Raises:
            ConfigurationError: If the request exceeds total capacity
        """
        if requirements.is_empty:
            return

        if not requirements.fits_within(self.capacity):
            raise ConfigurationError(
                f"Resource request {requirements.as_dict()} exceeds capacity "
                f"{self.capacity.as_dict()}"
            )

        async with self._condition:
            await self._condition.wait_for(
                lambda: requirements.fits_within(self.available())
            )
            for key, amount in requirements.as_dict().items():
                self._in_use[key] += amount
            self.allocations += 1

        logger.debug(f"Allocated {requirements.as_dict()}")

    async def release(self, requirements: ResourceRequirements) -> None:
        """Return reserved resources and wake waiters."""
        if requirements.is_empty:
            return

        async with self._condition:
            for key, amount in requirements.as_dict().items():
                self._in_use[key] = max(0.0, self._in_use[key] - amount)
            self._condition.notify_all()

        logger.debug(f"Released {requirements.as_dict()}")

    @asynccontextmanager
    async def allocate(self, requirements: ResourceRequirements) -> AsyncIterator[None]:
        """Hold resources for the duration of the block."""
        await self.acquire(requirements)
        try:
            yield
        finally:
            await self.release(requirements)


__all__ = ["ResourceManager"]
