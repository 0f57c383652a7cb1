"""
Installation media management.

Downloads each distribution's ISO into the media cache at most once and
extracts the kernel and initrd needed for a network-driven install.
"""

import shutil
import time
from pathlib import Path
from typing import Optional, Sequence, Tuple

import httpx

from .commands import CommandBuilder, CommandRunner
from .exceptions import CommandError, ContentShapeError, TransportError
from .logging import logger
from .models import DistributionProfile, MediaHandle
from .scope import ResourceType, RunScope

KERNEL_CANDIDATES: Tuple[str, ...] = (
    "boot/vmlinuz",
    "images/pxeboot/vmlinuz",
    "isolinux/vmlinuz",
    "vmlinuz",
)
INITRD_CANDIDATES: Tuple[str, ...] = (
    "boot/initrd.img",
    "images/pxeboot/initrd.img",
    "isolinux/initrd.img",
    "initrd.img",
)

KERNEL_NAME = "vmlinuz"
INITRD_NAME = "initrd.img"
CHUNK_SIZE = 1024 * 1024


def find_first(root: Path, candidates: Sequence[str]) -> Optional[Path]:
    for candidate in candidates:
        path = root / candidate
        if path.is_file():
            return path
    return None


class ResourceDownloader:
    """Ensures installation media and boot artifacts are present locally."""

    def __init__(
        self,
        runner: CommandRunner,
        scope: RunScope,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ) -> None:
        self.runner = runner
        self.scope = scope
        self.http_transport = http_transport
        self.timeout = timeout

    async def ensure_media(self, profile: DistributionProfile) -> MediaHandle:
        """
        Make the distribution's ISO and boot artifacts available.

        Args:
            profile: Distribution whose media is needed

        Returns:
            MediaHandle: Paths of the ISO, kernel and initrd

        Raises:
            TransportError: If the download fails
            ContentShapeError: If the ISO does not contain the expected boot files
        """
        media_path = profile.local_media_path
        if media_path.is_file():
            logger.info(
                f"ISO exists: {media_path.name}",
                distribution=profile.distribution.value,
            )
        else:
            await self.download(profile.media_url, media_path)

        kernel = profile.boot_dir / KERNEL_NAME
        initrd = profile.boot_dir / INITRD_NAME
        if kernel.is_file() and initrd.is_file():
            logger.info(
                "Boot files already extracted", distribution=profile.distribution.value
            )
        else:
            await self.extract_boot_artifacts(media_path, profile.boot_dir)

        return MediaHandle(media_path=media_path, kernel_path=kernel, initrd_path=initrd)

    async def download(self, url: str, destination: Path) -> None:
        """Stream a file to destination; partial transfers never reach that path."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        logger.warning(f"Downloading ISO: {destination.name}", url=url)

        start = time.monotonic()
        downloaded = 0
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.timeout,
                transport=self.http_transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("Content-Length", 0)) or None
                    next_report = 10
                    # "wb" truncates any leftover partial file from an earlier run
                    with open(partial, "wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                            downloaded += len(chunk)
                            if total and downloaded * 100 // total >= next_report:
                                logger.info(
                                    f"Downloading {destination.name}: {downloaded * 100 // total}%",
                                    bytes_downloaded=downloaded,
                                    total_bytes=total,
                                )
                                next_report += 10
            if total is not None and downloaded != total:
                raise TransportError(
                    f"incomplete transfer ({downloaded} of {total} bytes)", url
                )
            partial.replace(destination)
        except httpx.HTTPStatusError as e:
            raise TransportError(f"HTTP {e.response.status_code}", url) from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__, url) from e
        finally:
            partial.unlink(missing_ok=True)

        elapsed = time.monotonic() - start
        logger.info(
            f"ISO downloaded: {destination.name}",
            bytes_downloaded=downloaded,
            duration=round(elapsed, 1),
        )

    async def extract_boot_artifacts(self, media_path: Path, boot_dir: Path) -> None:
        """Copy kernel and initrd out of the ISO; the ISO is always unmounted afterwards."""
        logger.info(f"Extracting boot files from {media_path.name}", boot_dir=str(boot_dir))
        boot_dir.mkdir(parents=True, exist_ok=True)
        mount_point = boot_dir.parent / f"temp_mount_{int(time.time() * 1000)}"
        mount_point.mkdir(parents=True, exist_ok=True)

        async def unmount() -> None:
            try:
                await self.runner.run(self.runner.privileged(CommandBuilder.umount(mount_point)))
            finally:
                mount_point.rmdir()

        try:
            await self.runner.run(
                self.runner.privileged(CommandBuilder.mount_iso(media_path, mount_point))
            )
        except CommandError:
            mount_point.rmdir()
            raise

        mounted = self.scope.register(ResourceType.MOUNT, str(mount_point), unmount)
        try:
            kernel = find_first(mount_point, KERNEL_CANDIDATES)
            initrd = find_first(mount_point, INITRD_CANDIDATES)
            if kernel is None or initrd is None:
                missing = []
                if kernel is None:
                    missing.extend(KERNEL_CANDIDATES)
                if initrd is None:
                    missing.extend(INITRD_CANDIDATES)
                raise ContentShapeError(
                    "boot files not found in ISO", str(media_path), missing
                )
            shutil.copyfile(kernel, boot_dir / KERNEL_NAME)
            shutil.copyfile(initrd, boot_dir / INITRD_NAME)
        finally:
            await self.scope.release(mounted)

        logger.info("Boot files extracted", boot_dir=str(boot_dir))
