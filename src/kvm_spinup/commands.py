"""
Local command execution for hypervisor and host tooling.

Commands are always built as argument vectors and executed without a shell.
"""

import asyncio
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .exceptions import CommandError, DependencyError
from .logging import logger


class CommandRunner:
    """Runs external commands asynchronously."""

    def __init__(self, use_sudo: Optional[bool] = None) -> None:
        if use_sudo is None:
            use_sudo = hasattr(os, "geteuid") and os.geteuid() != 0
        self.use_sudo = use_sudo

    def privileged(self, argv: Sequence[str]) -> List[str]:
        """Prefix a command with sudo when not running as root."""
        return ["sudo", *argv] if self.use_sudo else list(argv)

    async def run(
        self,
        argv: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> Tuple[str, str, int]:
        """
        Execute a command and collect its output.

        Args:
            argv: Program and arguments
            input: Text written to the command's stdin
            check: Raise CommandError on non-zero exit
            timeout: Seconds to wait before killing the command

        Returns:
            Tuple of (stdout, stderr, exit_code)
        """
        logger.debug(f"Executing: {' '.join(argv)}", argv=list(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise DependencyError([argv[0]])

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(argv, -1, f"timed out after {timeout}s")

        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        exit_code = proc.returncode if proc.returncode is not None else -1

        if check and exit_code != 0:
            raise CommandError(argv, exit_code, err)
        return out, err, exit_code


def which(tool: str) -> Optional[str]:
    return shutil.which(tool)


def missing_tools(tools: Sequence[str]) -> List[str]:
    return [tool for tool in tools if which(tool) is None]


class CommandBuilder:
    """Argument vector builders for the external toolchain."""

    @staticmethod
    def qemu_img_create(disk_path: Path, size_gib: int) -> List[str]:
        return ["qemu-img", "create", "-f", "qcow2", str(disk_path), f"{size_gib}G"]

    @staticmethod
    def mount_iso(iso_path: Path, mount_point: Path) -> List[str]:
        return ["mount", "-o", "loop,ro", str(iso_path), str(mount_point)]

    @staticmethod
    def umount(mount_point: Path) -> List[str]:
        return ["umount", str(mount_point)]

    @staticmethod
    def openssl_passwd() -> List[str]:
        return ["openssl", "passwd", "-6", "-stdin"]

    @staticmethod
    def virt_install(
        vm_name: str,
        ram_mib: int,
        vcpus: int,
        disk_path: Path,
        network: str,
        platform_variant: str,
        media_path: Path,
        kickstart_url: str,
        uri: Optional[str] = None,
    ) -> List[str]:
        """
        Build the virt-install invocation for an unattended kickstart install.

        The command returns once the installer has been launched; completion
        is observed separately through the domain state.
        """
        extra_args = (
            f"inst.ks={kickstart_url} console=ttyS0,115200n8 inst.text inst.repo=cdrom"
        )
        argv = ["virt-install"]
        if uri:
            argv += ["--connect", uri]
        argv += [
            "--name", vm_name,
            "--memory", str(ram_mib),
            "--vcpus", str(vcpus),
            "--disk", f"path={disk_path},format=qcow2",
            "--network", f"network={network}",
            "--os-variant", platform_variant,
            "--location", str(media_path),
            "--extra-args", extra_args,
            "--graphics", "none",
            "--console", "pty,target_type=serial",
            "--noautoconsole",
            "--wait", "0",
        ]
        return argv

    @staticmethod
    def lsof_listener(port: int) -> List[str]:
        return ["lsof", "-t", "-i", f":{port}", "-sTCP:LISTEN"]

    @staticmethod
    def ip_route_get(address: str) -> List[str]:
        return ["ip", "-o", "route", "get", address]

    @staticmethod
    def ip_addr_show(device: str) -> List[str]:
        return ["ip", "-o", "-4", "addr", "show", device]

    @staticmethod
    def firewall_cmd_open(port: int) -> List[List[str]]:
        return [
            ["firewall-cmd", "--permanent", f"--add-port={port}/tcp"],
            ["firewall-cmd", "--reload"],
        ]

    @staticmethod
    def ufw_open(port: int) -> List[List[str]]:
        return [["ufw", "allow", f"{port}/tcp"], ["ufw", "reload"]]
