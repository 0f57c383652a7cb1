"""
Data models for KVM provisioning runs.

This module defines the data structures used throughout the provisioning system.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class Distribution(Enum):
    """Supported distributions."""

    ROCKY = "rocky"
    ALMA = "alma"


class InstallationState(Enum):
    """Domain state as observed by the installation monitor."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    PAUSED = "paused"
    SHUT_OFF = "shut off"
    CRASHED = "crashed"
    NOT_FOUND = "not found"
    OTHER = "other"


class Outcome(Enum):
    """Final outcome of one VM's pipeline."""

    SUCCESS = "success"
    FAILED = "failed"


class Phase(Enum):
    """Pipeline phase a VM result refers to."""

    VALIDATE = "validate"
    RENDER = "render"
    ENDPOINT = "endpoint"
    PROVISION = "provision"
    MONITOR = "monitor"
    COMPLETE = "complete"


@dataclass(frozen=True)
class DistributionProfile:
    """Static description of one supported distribution."""

    distribution: Distribution
    display_name: str
    media_url: str
    local_media_path: Path
    platform_variant: str
    template_path: Path
    boot_dir: Path


@dataclass(frozen=True)
class VmSpec:
    """One VM's declarative intent; only built through validation."""

    distribution: Distribution
    hostname: str
    ram_mib: int
    vcpus: int
    disk_gib: int
    timezone: str
    user_password: str = field(repr=False)
    root_password: str = field(repr=False)

    def redacted(self) -> "VmSpec":
        """Copy without the cleartext passwords, for use once they are hashed."""
        return replace(self, user_password="", root_password="")


@dataclass(frozen=True)
class MediaHandle:
    """Local installation media and its extracted boot artifacts."""

    media_path: Path
    kernel_path: Path
    initrd_path: Path


@dataclass
class EndpointHandle:
    """A running delivery endpoint."""

    directory: Path
    port: int
    pid: int
    pid_file: Path
    process: Optional[object] = field(default=None, repr=False, compare=False)

    def url_for(self, host: str, filename: str) -> str:
        return f"http://{host}:{self.port}/{filename}"


@dataclass
class VmHandle:
    """A domain created by the provisioner and awaiting monitoring."""

    name: str
    disk_path: Path
    config_path: Path
    kickstart_url: str


@dataclass
class VmResult:
    """Recorded result of one VM's pipeline."""

    hostname: str
    distribution: Distribution
    outcome: Outcome
    phase: Phase
    reason: Optional[str] = None
    config_path: Optional[str] = None
    duration: float = 0.0  # seconds

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS


@dataclass
class BatchRun:
    """State of one orchestrator invocation."""

    specs: List[VmSpec]
    results: Dict[str, VmResult] = field(default_factory=dict)
    started: datetime = field(default_factory=datetime.now)
    completed: Optional[datetime] = None

    @property
    def required_distributions(self) -> List[Distribution]:
        """Distinct distributions in first-use order."""
        seen: List[Distribution] = []
        for spec in self.specs:
            if spec.distribution not in seen:
                seen.append(spec.distribution)
        return seen

    def record(self, result: VmResult) -> None:
        """Append a result; results are never replaced."""
        if result.hostname in self.results:
            raise ValueError(f"Result for '{result.hostname}' already recorded")
        self.results[result.hostname] = result

    @property
    def finished(self) -> bool:
        return len(self.results) == len(self.specs)

    @property
    def succeeded(self) -> List[VmResult]:
        return [r for r in self.results.values() if r.success]

    @property
    def failed(self) -> List[VmResult]:
        return [r for r in self.results.values() if not r.success]
