"""
Batch orchestration.

Owns one provisioning run end to end: media for every distinct distribution
is fetched before any VM work starts, then each VM goes through
prepare, render, endpoint, provision and monitor strictly in the order it
was accepted. A failure inside one VM's pipeline is recorded as that VM's
result and the batch moves on to the next one.
"""

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .config import AppConfig
from .distributions import get_profile
from .downloader import ResourceDownloader
from .endpoint import DeliveryEndpoint
from .exceptions import (
    DependencyError,
    HypervisorAccessError,
    InstallTimeoutError,
    MonitorFailure,
    SpinUpError,
    StuckInstallError,
)
from .host import HostPreparer
from .logging import logger
from .models import (
    BatchRun,
    Distribution,
    DistributionProfile,
    Outcome,
    Phase,
    VmResult,
    VmSpec,
)
from .monitor import InstallationMonitor, ProgressCallback
from .provisioner import VmProvisioner
from .renderer import ConfigRenderer
from .scope import RunScope
from .security import validate_batch

# Errors that mean the host itself is unusable; these end the whole run
FATAL_ERRORS = (DependencyError, HypervisorAccessError)


class BatchOrchestrator:
    """Runs a batch of VM specs through the provisioning pipeline."""

    def __init__(
        self,
        config: AppConfig,
        scope: RunScope,
        downloader: ResourceDownloader,
        renderer: ConfigRenderer,
        endpoint: DeliveryEndpoint,
        provisioner: VmProvisioner,
        monitor: InstallationMonitor,
        host: Optional[HostPreparer] = None,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.config = config
        self.scope = scope
        self.downloader = downloader
        self.renderer = renderer
        self.endpoint = endpoint
        self.provisioner = provisioner
        self.monitor = monitor
        self.host = host
        self.progress_callback = progress_callback
        self._sleep = sleep or asyncio.sleep

    async def prepare_host(self) -> None:
        """Host checks, libvirt network and firewall; any failure here is fatal."""
        if self.host is None:
            return
        await self.host.prepare()
        await self.host.setup_network()
        await self.host.configure_firewall(self.config.http_port)

    async def prefetch(self, batch: BatchRun) -> Dict[Distribution, DistributionProfile]:
        """Fetch media once per distinct distribution before any VM is touched."""
        profiles: Dict[Distribution, DistributionProfile] = {}
        for distribution in batch.required_distributions:
            profile = get_profile(distribution, self.config)
            logger.info(
                f"Preparing {profile.display_name}", distribution=distribution.value
            )
            await self.downloader.ensure_media(profile)
            profiles[distribution] = profile
        return profiles

    async def run(self, specs: Iterable[VmSpec]) -> BatchRun:
        """
        Provision every spec in order and record one result per VM.

        Args:
            specs: Accepted VM specifications in installation order

        Returns:
            BatchRun: The finished run with a result for every spec

        Raises:
            ValidationError: If the batch size or hostnames are invalid
            TransportError: If media for a required distribution cannot be fetched
            ContentShapeError: If boot files cannot be found in the media
            DependencyError: If a required tool goes missing
            HypervisorAccessError: If the hypervisor becomes unreachable
        """
        batch = BatchRun(specs=validate_batch(specs, self.config))
        self.scope.batch = batch

        await self.prepare_host()
        profiles = await self.prefetch(batch)

        total = len(batch.specs)
        for index, spec in enumerate(batch.specs, start=1):
            # the run record never holds cleartext passwords
            batch.specs[index - 1] = spec.redacted()
            if index > 1 and self.config.inter_vm_delay:
                await self._sleep(self.config.inter_vm_delay)
            logger.info(
                f"Installing VM {index}/{total}: {spec.hostname}",
                vm_name=spec.hostname,
                distribution=spec.distribution.value,
            )
            result = await self.run_one(spec, profiles[spec.distribution])
            batch.record(result)

        batch.completed = datetime.now()
        logger.info(
            "Batch installation complete",
            total=total,
            succeeded=len(batch.succeeded),
            failed=len(batch.failed),
        )
        return batch

    async def run_one(self, spec: VmSpec, profile: DistributionProfile) -> VmResult:
        """Run one VM's pipeline and convert any failure into its result."""
        started = time.monotonic()
        phase = Phase.VALIDATE
        config_path: Optional[Path] = None
        try:
            variables = await self.provisioner.prepare(spec)
            spec = spec.redacted()

            phase = Phase.RENDER
            config_path = self.renderer.render(profile, variables, self.config.kickstart_dir)

            phase = Phase.ENDPOINT
            endpoint = await self.endpoint.ensure(self.config.kickstart_dir, self.config.http_port)

            phase = Phase.PROVISION
            await self.provisioner.provision(spec, profile, endpoint, variables)

            phase = Phase.MONITOR
            await self.monitor.wait(spec.hostname, self.progress_callback)
        except FATAL_ERRORS:
            raise
        except (SpinUpError, OSError) as e:
            return self._failed(spec, phase, e, config_path, time.monotonic() - started)

        config_path.unlink(missing_ok=True)
        logger.info(
            f"VM {spec.hostname} installed successfully",
            vm_name=spec.hostname,
            distribution=spec.distribution.value,
        )
        return VmResult(
            hostname=spec.hostname,
            distribution=spec.distribution,
            outcome=Outcome.SUCCESS,
            phase=Phase.COMPLETE,
            duration=time.monotonic() - started,
        )

    def _failed(
        self,
        spec: VmSpec,
        phase: Phase,
        error: Exception,
        config_path: Optional[Path],
        duration: float,
    ) -> VmResult:
        reason = error.message if isinstance(error, SpinUpError) else str(error)
        logger.error(
            f"Failed to install VM {spec.hostname}: {reason}",
            vm_name=spec.hostname,
            phase=phase.value,
            error_type=type(error).__name__,
        )
        if isinstance(error, StuckInstallError):
            logger.warning(
                "Check network reachability of the HTTP server and the kickstart contents",
                vm_name=spec.hostname,
            )
        elif isinstance(error, InstallTimeoutError):
            logger.warning(
                f"Check progress with: virsh console {spec.hostname}", vm_name=spec.hostname
            )
        elif isinstance(error, MonitorFailure):
            logger.warning("Check VM status: virsh list --all", vm_name=spec.hostname)

        retained = None
        if config_path is not None and config_path.exists():
            retained = str(config_path)
            logger.warning(
                f"Kickstart file kept for debugging: {retained}", vm_name=spec.hostname
            )

        return VmResult(
            hostname=spec.hostname,
            distribution=spec.distribution,
            outcome=Outcome.FAILED,
            phase=phase,
            reason=reason,
            config_path=retained,
            duration=duration,
        )
