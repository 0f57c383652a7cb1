"""Unit tests for run-scoped resource release."""

import asyncio
import pytest
from unittest.mock import AsyncMock

from kvm_spinup.scope import ResourceType, RunScope


def tracker(order, name, fail=False):
    async def release():
        order.append(name)
        if fail:
            raise RuntimeError(f"{name} release failed")

    return release


class TestRunScope:
    """Test RunScope."""

    @pytest.mark.asyncio
    async def test_close_releases_in_reverse_order(self, app_config):
        order = []
        scope = RunScope(app_config)
        scope.register(ResourceType.MOUNT, "/mnt/a", tracker(order, "mount"))
        scope.register(ResourceType.ENDPOINT, "http", tracker(order, "endpoint"))
        scope.register(ResourceType.TEMP_FILE, "probe", tracker(order, "probe"))

        await scope.close()

        assert order == ["probe", "endpoint", "mount"]
        assert scope.resources == []
        assert scope.closed

    @pytest.mark.asyncio
    async def test_early_release_not_repeated(self, app_config):
        release = AsyncMock()
        scope = RunScope(app_config)
        resource = scope.register(ResourceType.MOUNT, "/mnt/a", release)

        await scope.release(resource)
        await scope.release(resource)
        await scope.close()

        release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_release_does_not_stop_others(self, app_config):
        order = []
        scope = RunScope(app_config)
        scope.register(ResourceType.MOUNT, "/mnt/a", tracker(order, "mount"))
        scope.register(ResourceType.ENDPOINT, "http", tracker(order, "endpoint", fail=True))

        await scope.close()

        assert order == ["endpoint", "mount"]

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_exception(self, app_config):
        order = []
        with pytest.raises(ValueError):
            async with RunScope(app_config) as scope:
                scope.register(ResourceType.MOUNT, "/mnt/a", tracker(order, "mount"))
                raise ValueError("provisioning failed")

        assert order == ["mount"]

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_cancellation(self, app_config):
        order = []
        started = asyncio.Event()

        async def run():
            async with RunScope(app_config) as scope:
                scope.register(ResourceType.ENDPOINT, "http", tracker(order, "endpoint"))
                started.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(run())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert order == ["endpoint"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, app_config):
        release = AsyncMock()
        scope = RunScope(app_config)
        scope.register(ResourceType.TEMP_FILE, "/tmp/x", release)
        await scope.close()
        await scope.close()
        release.assert_awaited_once()
