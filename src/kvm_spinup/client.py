"""
Main client for KVM provisioning runs.

This module wires the provisioning components together around one RunScope
and exposes the operations the CLI needs.
"""

from typing import Iterable, List, Optional, Tuple

import httpx

from .commands import CommandRunner
from .config import AppConfig
from .credentials import PasswordHasher
from .downloader import ResourceDownloader
from .endpoint import DeliveryEndpoint
from .host import HostPreparer
from .libvirt_wrapper import LibvirtWrapper
from .models import BatchRun, VmSpec
from .monitor import InstallationMonitor, ProgressCallback
from .orchestrator import BatchOrchestrator
from .provisioner import VmProvisioner
from .renderer import ConfigRenderer
from .scope import RunScope


class SpinUpClient:
    """
    Main client for batch VM provisioning.

    Args:
        config (AppConfig): Loaded configuration
        runner (Optional[CommandRunner]): Command runner (default: local runner)
        libvirt (Optional[LibvirtWrapper]): Libvirt wrapper (default: config URI)
        http_transport (Optional[httpx.AsyncBaseTransport]): Transport for downloads and probes

    Usage:
        async with SpinUpClient(config) as client:
            batch = await client.run_batch(specs)
    """

    def __init__(
        self,
        config: AppConfig,
        runner: Optional[CommandRunner] = None,
        libvirt: Optional[LibvirtWrapper] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner()
        self.libvirt = libvirt or LibvirtWrapper(config.libvirt_uri)
        self.scope = RunScope(config)

        self.host = HostPreparer(config, self.runner, self.libvirt)
        self.downloader = ResourceDownloader(self.runner, self.scope, http_transport)
        self.renderer = ConfigRenderer()
        self.endpoint = DeliveryEndpoint(config, self.runner, self.scope, http_transport)
        self.provisioner = VmProvisioner(
            config, self.runner, self.libvirt, PasswordHasher(self.runner), self.host
        )
        self.monitor = InstallationMonitor.from_config(self.libvirt, config)

    async def __aenter__(self) -> "SpinUpClient":
        await self.scope.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            await self.scope.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.libvirt.close()

    def orchestrator(
        self, progress_callback: Optional[ProgressCallback] = None
    ) -> BatchOrchestrator:
        return BatchOrchestrator(
            config=self.config,
            scope=self.scope,
            downloader=self.downloader,
            renderer=self.renderer,
            endpoint=self.endpoint,
            provisioner=self.provisioner,
            monitor=self.monitor,
            host=self.host,
            progress_callback=progress_callback,
        )

    async def run_batch(
        self,
        specs: Iterable[VmSpec],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchRun:
        """Prepare the host and provision every spec in order."""
        return await self.orchestrator(progress_callback).run(specs)

    async def check_host(self) -> Tuple[List[str], str]:
        """Run the host checks without provisioning anything.

        Returns:
            Tuple of (warnings, address guests use to reach this host)
        """
        warnings = await self.host.prepare()
        await self.host.setup_network()
        host_ip = await self.host.detect_host_ip()
        return warnings, host_ip
