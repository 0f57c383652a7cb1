"""Unit tests for media download and boot artifact extraction."""

import shutil
import pytest
import httpx
from pathlib import Path
from unittest.mock import AsyncMock, Mock

from kvm_spinup.distributions import get_profile
from kvm_spinup.downloader import ResourceDownloader
from kvm_spinup.exceptions import CommandError, ContentShapeError, TransportError
from kvm_spinup.models import Distribution
from kvm_spinup.scope import RunScope


class FakeMountRunner:
    """Stands in for mount/umount by populating and emptying the mount point."""

    def __init__(self, files=("images/pxeboot/vmlinuz", "images/pxeboot/initrd.img")):
        self.files = files
        self.calls = []
        self.run = AsyncMock(side_effect=self._run)

    def privileged(self, argv):
        return list(argv)

    async def _run(self, argv, **kwargs):
        self.calls.append(list(argv))
        if argv[0] == "mount":
            mount_point = Path(argv[-1])
            for name in self.files:
                path = mount_point / name
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(name.encode())
        elif argv[0] == "umount":
            mount_point = Path(argv[-1])
            for child in mount_point.iterdir():
                shutil.rmtree(child) if child.is_dir() else child.unlink()
        return "", "", 0


def counting_transport(handler):
    calls = []

    def wrapped(request):
        calls.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped), calls


@pytest.fixture
def profile(app_config):
    return get_profile(Distribution.ROCKY, app_config)


class TestEnsureMedia:
    """Test ensure_media."""

    @pytest.mark.asyncio
    async def test_existing_media_skips_network(self, app_config, profile):
        profile.local_media_path.parent.mkdir(parents=True)
        profile.local_media_path.write_bytes(b"iso")
        profile.boot_dir.mkdir(parents=True)
        (profile.boot_dir / "vmlinuz").write_bytes(b"k")
        (profile.boot_dir / "initrd.img").write_bytes(b"i")
        transport, calls = counting_transport(lambda r: httpx.Response(200, content=b"x"))
        runner = FakeMountRunner()

        downloader = ResourceDownloader(runner, RunScope(app_config), transport)
        first = await downloader.ensure_media(profile)
        second = await downloader.ensure_media(profile)

        assert calls == []
        assert runner.calls == []
        assert first == second
        assert first.kernel_path == profile.boot_dir / "vmlinuz"

    @pytest.mark.asyncio
    async def test_download_then_idempotent(self, app_config, profile):
        transport, calls = counting_transport(
            lambda r: httpx.Response(200, content=b"iso-bytes" * 100)
        )
        runner = FakeMountRunner()
        downloader = ResourceDownloader(runner, RunScope(app_config), transport)

        handle = await downloader.ensure_media(profile)
        await downloader.ensure_media(profile)

        assert len(calls) == 1
        assert str(calls[0].url) == profile.media_url
        assert handle.media_path.read_bytes() == b"iso-bytes" * 100
        assert handle.kernel_path.read_bytes() == b"images/pxeboot/vmlinuz"
        assert handle.initrd_path.read_bytes() == b"images/pxeboot/initrd.img"
        assert len([c for c in runner.calls if c[0] == "mount"]) == 1


class TestDownload:
    """Test streaming download."""

    @pytest.mark.asyncio
    async def test_http_error(self, app_config, tmp_path):
        transport = httpx.MockTransport(lambda r: httpx.Response(404))
        downloader = ResourceDownloader(FakeMountRunner(), RunScope(app_config), transport)
        target = tmp_path / "media.iso"

        with pytest.raises(TransportError, match="HTTP 404"):
            await downloader.download("https://example.org/media.iso", target)

        assert not target.exists()
        assert not (tmp_path / "media.iso.part").exists()

    @pytest.mark.asyncio
    async def test_connection_error(self, app_config, tmp_path):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        downloader = ResourceDownloader(
            FakeMountRunner(), RunScope(app_config), httpx.MockTransport(refuse)
        )
        with pytest.raises(TransportError) as exc_info:
            await downloader.download("https://example.org/media.iso", tmp_path / "m.iso")
        assert exc_info.value.target == "https://example.org/media.iso"

    @pytest.mark.asyncio
    async def test_stale_partial_overwritten(self, app_config, tmp_path):
        """Test a partial file from an earlier run is never merged into the result."""
        (tmp_path / "m.iso.part").write_bytes(b"corrupt-leftover")
        transport = httpx.MockTransport(lambda r: httpx.Response(200, content=b"fresh"))
        downloader = ResourceDownloader(FakeMountRunner(), RunScope(app_config), transport)

        await downloader.download("https://example.org/m.iso", tmp_path / "m.iso")

        assert (tmp_path / "m.iso").read_bytes() == b"fresh"
        assert not (tmp_path / "m.iso.part").exists()


class TestExtractBootArtifacts:
    """Test boot artifact extraction."""

    @pytest.mark.asyncio
    async def test_first_candidate_wins(self, app_config, tmp_path):
        runner = FakeMountRunner(files=("boot/vmlinuz", "boot/initrd.img", "vmlinuz"))
        scope = RunScope(app_config)
        boot_dir = tmp_path / "mounts" / "rocky9"

        await ResourceDownloader(runner, scope).extract_boot_artifacts(tmp_path / "x.iso", boot_dir)

        assert (boot_dir / "vmlinuz").read_bytes() == b"boot/vmlinuz"
        assert scope.resources == []
        assert [c[0] for c in runner.calls] == ["mount", "umount"]
        assert not any(p.name.startswith("temp_mount_") for p in boot_dir.parent.iterdir())

    @pytest.mark.asyncio
    async def test_missing_files_still_unmounts(self, app_config, tmp_path):
        runner = FakeMountRunner(files=("EFI/BOOT/grubx64.efi",))
        scope = RunScope(app_config)

        with pytest.raises(ContentShapeError) as exc_info:
            await ResourceDownloader(runner, scope).extract_boot_artifacts(
                tmp_path / "x.iso", tmp_path / "mounts" / "rocky9"
            )

        assert "images/pxeboot/vmlinuz" in exc_info.value.expected
        assert [c[0] for c in runner.calls] == ["mount", "umount"]
        assert scope.resources == []

    @pytest.mark.asyncio
    async def test_mount_failure_cleans_mount_point(self, app_config, tmp_path):
        runner = Mock()
        runner.privileged = lambda argv: list(argv)
        runner.run = AsyncMock(side_effect=CommandError(["mount"], 32, "not a block device"))
        boot_dir = tmp_path / "mounts" / "rocky9"

        with pytest.raises(CommandError):
            await ResourceDownloader(runner, RunScope(app_config)).extract_boot_artifacts(
                tmp_path / "x.iso", boot_dir
            )

        assert list(boot_dir.parent.iterdir()) == [boot_dir]
