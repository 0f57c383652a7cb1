"""
Custom exceptions for KVM provisioning operations.

This module defines all custom exceptions used throughout the provisioning system.
Errors raised while a single VM is being provisioned are converted into a
per-VM result by the batch orchestrator; setup-phase errors end the run.
"""

from typing import List, Optional, Sequence


class SpinUpError(Exception):
    """Base exception for provisioning operations."""

    def __init__(self, message: str, error_code: int = 2000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(SpinUpError):
    """Configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=2001)


class ValidationError(SpinUpError):
    """A VM specification field is out of bounds or malformed."""

    def __init__(self, message: str, field: str = "general") -> None:
        super().__init__(f"Validation error ({field}): {message}", error_code=2002)
        self.field = field


class ResourceConflictError(SpinUpError):
    """A VM name or disk path that must not exist already does."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' already exists", error_code=2003
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class TransportError(SpinUpError):
    """Media download or endpoint reachability failures."""

    def __init__(self, message: str, target: str) -> None:
        super().__init__(f"Transport error for {target}: {message}", error_code=2004)
        self.target = target


class ContentShapeError(SpinUpError):
    """An expected artifact was not found where it should be."""

    def __init__(
        self, message: str, artifact: str, expected: Optional[Sequence[str]] = None
    ) -> None:
        expected_list: List[str] = list(expected or [])
        detail = f" (expected: {', '.join(expected_list)})" if expected_list else ""
        super().__init__(
            f"Content error in {artifact}: {message}{detail}", error_code=2005
        )
        self.artifact = artifact
        self.expected = expected_list


class CommandError(SpinUpError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], exit_code: int, stderr: str = "") -> None:
        command = " ".join(argv)
        detail = stderr.strip()[:500]
        super().__init__(
            f"Command '{command}' failed with exit code {exit_code}"
            + (f": {detail}" if detail else ""),
            error_code=2006,
        )
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr


class LibvirtError(SpinUpError):
    """Libvirt API errors."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(
            f"Libvirt error during {operation}: {message}", error_code=2007
        )
        self.operation = operation


class DependencyError(SpinUpError):
    """Required external tools are missing from the host."""

    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(
            f"Missing required tools: {', '.join(missing)}", error_code=2008
        )
        self.missing = list(missing)


class HypervisorAccessError(SpinUpError):
    """The hypervisor cannot be reached or the user lacks permission."""

    def __init__(self, message: str, uri: str) -> None:
        super().__init__(f"Cannot access hypervisor at {uri}: {message}", error_code=2009)
        self.uri = uri


class MonitorFailure(SpinUpError):
    """Base class for terminal failures observed by the installation monitor."""

    def __init__(self, message: str, vm_name: str, error_code: int) -> None:
        super().__init__(message, error_code=error_code)
        self.vm_name = vm_name


class DomainNotFoundError(MonitorFailure):
    """The monitored domain disappeared from the hypervisor."""

    def __init__(self, vm_name: str) -> None:
        super().__init__(f"VM '{vm_name}' not found", vm_name, error_code=2010)


class StuckInstallError(MonitorFailure):
    """The VM kept running without disk activity for too long."""

    def __init__(self, vm_name: str, idle_seconds: float) -> None:
        super().__init__(
            f"Installation of '{vm_name}' appears stuck: no disk activity for "
            f"{idle_seconds:.0f}s while running; check network and kickstart delivery",
            vm_name,
            error_code=2011,
        )
        self.idle_seconds = idle_seconds


class InstallTimeoutError(MonitorFailure):
    """The VM did not reach a terminal state within the overall timeout."""

    def __init__(self, vm_name: str, timeout: float) -> None:
        super().__init__(
            f"Installation of '{vm_name}' timed out after {timeout:.0f}s; "
            f"check install duration expectations (virsh console {vm_name})",
            vm_name,
            error_code=2012,
        )
        self.timeout = timeout


class CrashError(MonitorFailure):
    """The hypervisor reported the domain as crashed."""

    def __init__(self, vm_name: str, state: str) -> None:
        super().__init__(
            f"VM '{vm_name}' is in unexpected state: {state}",
            vm_name,
            error_code=2013,
        )
        self.state = state


class DiskSpaceError(SpinUpError):
    """Not enough free space in the working directory."""

    def __init__(self, required_gib: int, available_gib: int, path: str) -> None:
        super().__init__(
            f"Insufficient disk space at {path}. Required: {required_gib}GB, "
            f"Available: {available_gib}GB",
            error_code=2014,
        )
        self.required_gib = required_gib
        self.available_gib = available_gib
        self.path = path
