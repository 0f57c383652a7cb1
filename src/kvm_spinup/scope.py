"""
Run-scoped resource tracking.

Every host-side helper resource (loop mounts, the delivery endpoint process,
probe files) registers a release action when it is acquired. Closing the
scope releases whatever is still held in reverse acquisition order, whether
the run finished, failed, or was interrupted. Created VM domains and disk
images are never registered here; they belong to the operator.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .config import AppConfig
from .logging import logger
from .models import BatchRun, EndpointHandle

ReleaseFunc = Callable[[], Awaitable[None]]


class ResourceType(Enum):
    """Types of resources held during a run."""

    MOUNT = "mount"
    ENDPOINT = "endpoint"
    TEMP_FILE = "temp_file"


@dataclass
class ScopedResource:
    """A resource acquired during the run."""

    resource_type: ResourceType
    resource_id: str
    release_func: ReleaseFunc = field(repr=False, compare=False)
    acquired_at: str = field(default_factory=lambda: datetime.now().isoformat())


class RunScope:
    """
    Explicit context for one provisioning run.

    Usage:
        async with RunScope(config) as scope:
            token = scope.register(ResourceType.MOUNT, str(mount_point), unmount)
            ...
            await scope.release(token)   # early release
        # anything still registered is released here
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.endpoint: Optional[EndpointHandle] = None
        self.batch: Optional[BatchRun] = None
        self.resources: List[ScopedResource] = []
        self.closed = False

    async def __aenter__(self) -> RunScope:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            logger.warning(
                f"Run ended with {exc_type.__name__}, releasing held resources",
                resource_count=len(self.resources),
            )
        # Shield so an interrupt during cleanup does not leak what is left
        await asyncio.shield(self.close())

    def register(
        self, resource_type: ResourceType, resource_id: str, release_func: ReleaseFunc
    ) -> ScopedResource:
        """Record a resource together with the action that releases it."""
        resource = ScopedResource(resource_type, resource_id, release_func)
        self.resources.append(resource)
        logger.debug(
            f"Registered resource: {resource_type.value} - {resource_id}",
            resource_type=resource_type.value,
            resource_id=resource_id,
        )
        return resource

    async def release(self, resource: ScopedResource) -> None:
        """Release one resource now and stop tracking it."""
        if resource not in self.resources:
            return
        self.resources.remove(resource)
        await self._release_one(resource)

    async def close(self) -> None:
        """Release all remaining resources in reverse acquisition order."""
        if self.closed:
            return
        if self.resources:
            logger.info(
                "Releasing run resources", resource_count=len(self.resources)
            )
        while self.resources:
            await self._release_one(self.resources.pop())
        self.closed = True

    async def _release_one(self, resource: ScopedResource) -> None:
        try:
            await resource.release_func()
            logger.debug(
                f"Released resource: {resource.resource_type.value} - {resource.resource_id}",
                resource_type=resource.resource_type.value,
                resource_id=resource.resource_id,
            )
        except Exception as e:
            # Keep releasing the rest
            logger.warning(
                f"Failed to release {resource.resource_type.value} {resource.resource_id}: {e}",
                resource_id=resource.resource_id,
            )
