"""
VM provisioning.

Creates one domain from an accepted VmSpec: conflict checks, credential
hashing, disk allocation and the virt-install launch that points the
installer at its kickstart on the delivery endpoint. Domains and disks
created here are never removed automatically.
"""

from pathlib import Path

from .commands import CommandBuilder, CommandRunner
from .config import AppConfig
from .credentials import PasswordHasher
from .exceptions import ResourceConflictError
from .host import HostPreparer
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger
from .models import DistributionProfile, EndpointHandle, VmHandle, VmSpec
from .renderer import RenderVariables, kickstart_filename
from .security import SecurityValidator


class VmProvisioner:
    """Drives qemu-img and virt-install for a single VM."""

    def __init__(
        self,
        config: AppConfig,
        runner: CommandRunner,
        libvirt: LibvirtWrapper,
        hasher: PasswordHasher,
        host: HostPreparer,
    ) -> None:
        self.config = config
        self.runner = runner
        self.libvirt = libvirt
        self.hasher = hasher
        self.host = host

    def disk_path(self, spec: VmSpec) -> Path:
        return self.config.image_dir / f"{spec.hostname}.qcow2"

    async def check_conflicts(self, spec: VmSpec) -> None:
        """
        Refuse names and disk images that already exist.

        Raises:
            ResourceConflictError: If the domain or the disk image exists
        """
        if await self.libvirt.vm_exists(spec.hostname):
            raise ResourceConflictError("VM", spec.hostname)
        disk_path = self.disk_path(spec)
        if disk_path.exists():
            raise ResourceConflictError("Disk image", str(disk_path))

    async def prepare(self, spec: VmSpec) -> RenderVariables:
        """
        Validate the spec, check for conflicts and hash both passwords.

        Returns:
            RenderVariables: Values for the VM's kickstart template
        """
        SecurityValidator.validate_spec(spec, self.config)
        await self.check_conflicts(spec)

        logger.info("Generating password hashes", vm_name=spec.hostname)
        user_hash = await self.hasher.hash(spec.user_password, "User password")
        root_hash = await self.hasher.hash(spec.root_password, "Root password")

        return RenderVariables(
            hostname=spec.hostname,
            username=self.config.vm_username,
            user_password_hash=user_hash,
            root_password_hash=root_hash,
            timezone=spec.timezone,
        )

    async def provision(
        self,
        spec: VmSpec,
        profile: DistributionProfile,
        endpoint: EndpointHandle,
        variables: RenderVariables,
    ) -> VmHandle:
        """
        Allocate the disk and launch the unattended install.

        Args:
            spec: Accepted VM specification, passwords already dropped
            profile: Distribution the VM installs
            endpoint: Running delivery endpoint serving the VM's kickstart
            variables: Values returned by prepare(); only the hashes are checked

        Returns:
            VmHandle: The created domain, ready to be monitored

        Raises:
            ValidationError: If the spec or the password hashes no longer pass validation
            ResourceConflictError: If the domain or disk image already exists
            CommandError: If qemu-img or virt-install fails
        """
        SecurityValidator.validate_spec(spec, self.config, passwords=False)
        SecurityValidator.validate_password_hash(variables.user_password_hash, "User password")
        SecurityValidator.validate_password_hash(variables.root_password_hash, "Root password")
        await self.check_conflicts(spec)

        config_path = endpoint.directory / kickstart_filename(spec.hostname)
        disk_path = self.disk_path(spec)

        logger.info(
            f"Creating disk image: {disk_path.name}",
            vm_name=spec.hostname,
            size_gib=spec.disk_gib,
        )
        disk_path.parent.mkdir(parents=True, exist_ok=True)
        await self.runner.run(CommandBuilder.qemu_img_create(disk_path, spec.disk_gib))

        host_ip = await self.host.detect_host_ip()
        kickstart_url = endpoint.url_for(host_ip, config_path.name)
        logger.info(f"Kickstart URL: {kickstart_url}", vm_name=spec.hostname)

        argv = CommandBuilder.virt_install(
            vm_name=spec.hostname,
            ram_mib=spec.ram_mib,
            vcpus=spec.vcpus,
            disk_path=disk_path,
            network=self.config.network_name,
            platform_variant=profile.platform_variant,
            media_path=profile.local_media_path,
            kickstart_url=kickstart_url,
            uri=self.config.libvirt_uri,
        )
        logger.info(
            f"Starting installation for {spec.hostname}",
            vm_name=spec.hostname,
            distribution=profile.distribution.value,
            ram_mib=spec.ram_mib,
            vcpus=spec.vcpus,
        )
        await self.runner.run(argv)

        return VmHandle(
            name=spec.hostname,
            disk_path=disk_path,
            config_path=config_path,
            kickstart_url=kickstart_url,
        )
