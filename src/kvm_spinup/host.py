"""
Host preparation and checks.

Runs before any VM work: directory layout, required tools, hypervisor
access, basic capacity checks, the libvirt network, the firewall opening
for the delivery endpoint, and the address guests use to reach the host.
"""

import re
import shutil
from pathlib import Path
from typing import List, Optional

from .commands import CommandBuilder, CommandRunner, missing_tools, which
from .config import AppConfig
from .exceptions import (
    CommandError,
    DependencyError,
    DiskSpaceError,
    HypervisorAccessError,
    TransportError,
)
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger

REQUIRED_TOOLS = ("virsh", "virt-install", "qemu-img", "openssl", "mount", "umount")
SOURCE_PATTERN = re.compile(r"\bsrc\s+(\S+)")
INET_PATTERN = re.compile(r"\binet\s+([0-9.]+)/")


class HostPreparer:
    """Host-level setup shared by every VM in a run."""

    def __init__(
        self,
        config: AppConfig,
        runner: CommandRunner,
        libvirt: LibvirtWrapper,
        proc_root: Path = Path("/proc"),
        sys_root: Path = Path("/sys"),
    ) -> None:
        self.config = config
        self.runner = runner
        self.libvirt = libvirt
        self.proc_root = proc_root
        self.sys_root = sys_root

    def ensure_directories(self) -> None:
        for directory in (
            self.config.work_path,
            self.config.iso_dir,
            self.config.image_dir,
            self.config.kickstart_dir,
            self.config.boot_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
            directory.chmod(0o755)
        logger.info("Directory structure ready", work_dir=str(self.config.work_path))

    def check_dependencies(self, tools=REQUIRED_TOOLS) -> None:
        missing = missing_tools(tools)
        if missing:
            raise DependencyError(missing)
        logger.info("All dependencies satisfied")

    async def check_permissions(self) -> None:
        try:
            await self.libvirt.list_domain_names()
        except HypervisorAccessError:
            logger.warning(
                "Run: sudo usermod -a -G libvirt,kvm $USER, then log out and back in"
            )
            raise

    def check_system_requirements(self) -> List[str]:
        """
        Warn about missing virtualization support and low memory; fail on low disk space.

        Returns:
            List[str]: Warnings that did not stop the run
        """
        warnings: List[str] = []

        try:
            cpuinfo = (self.proc_root / "cpuinfo").read_text()
            if not re.search(r"\b(vmx|svm)\b", cpuinfo):
                warnings.append("CPU virtualization extensions not found")
        except OSError:
            warnings.append("Could not read CPU information")

        if not (self.sys_root / "module" / "kvm").exists():
            warnings.append("KVM kernel module not loaded (sudo modprobe kvm)")

        available_mib = self._available_memory_mib()
        if available_mib is not None and available_mib < self.config.min_ram_mib * 2:
            warnings.append(f"Low available memory: {available_mib}MB")

        usage = shutil.disk_usage(self.config.work_path)
        available_gib = usage.free // (1024 ** 3)
        if available_gib < self.config.min_free_disk_gib:
            raise DiskSpaceError(
                self.config.min_free_disk_gib, available_gib, str(self.config.work_path)
            )

        for warning in warnings:
            logger.warning(warning)
        logger.info("System requirements satisfied", free_disk_gib=available_gib)
        return warnings

    def _available_memory_mib(self) -> Optional[int]:
        try:
            for line in (self.proc_root / "meminfo").read_text().splitlines():
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) // 1024
        except (OSError, ValueError, IndexError):
            pass
        return None

    async def setup_network(self) -> None:
        changed = await self.libvirt.ensure_network(self.config.network_name)
        if changed:
            logger.info(f"Libvirt network {self.config.network_name} is active")
        bridge = await self.libvirt.network_bridge(self.config.network_name)
        if bridge and not (self.sys_root / "class" / "net" / bridge).exists():
            raise TransportError("network bridge not found", bridge)

    async def configure_firewall(self, port: int) -> None:
        if which("firewall-cmd"):
            commands = CommandBuilder.firewall_cmd_open(port)
        elif which("ufw"):
            commands = CommandBuilder.ufw_open(port)
        else:
            logger.warning("No supported firewall detected", port=port)
            return

        for argv in commands:
            try:
                await self.runner.run(self.runner.privileged(argv))
            except CommandError as e:
                logger.warning(f"Firewall update failed: {e.message}", port=port)
                return
        logger.info(f"Firewall opened for port {port}", port=port)

    async def detect_host_ip(self) -> str:
        """Address the guests' network can use to reach this host."""
        bridge = await self.libvirt.network_bridge(self.config.network_name)
        if bridge and (self.sys_root / "class" / "net" / bridge).exists():
            gateway = await self.libvirt.network_gateway(self.config.network_name)
            if gateway:
                return gateway
            stdout, _, code = await self.runner.run(
                CommandBuilder.ip_addr_show(bridge), check=False
            )
            match = INET_PATTERN.search(stdout)
            if code == 0 and match:
                return match.group(1)

        stdout, _, code = await self.runner.run(
            CommandBuilder.ip_route_get("1.1.1.1"), check=False
        )
        match = SOURCE_PATTERN.search(stdout)
        if code == 0 and match:
            return match.group(1)

        raise TransportError("failed to detect host IP", self.config.network_name)

    async def prepare(self) -> List[str]:
        """Run every setup step; returns the non-fatal warnings."""
        self.ensure_directories()
        self.check_dependencies()
        await self.check_permissions()
        return self.check_system_requirements()
