"""KVM Spin-Ups - Batch provisioning of KVM virtual machines with unattended installs."""

__version__ = "0.1.0"
__description__ = "Batch KVM VM provisioning utility"

# Import main classes for easy access
from .client import SpinUpClient
from .config import AppConfig, ConfigLoader
from .models import (
    BatchRun,
    Distribution,
    DistributionProfile,
    InstallationState,
    Outcome,
    Phase,
    VmResult,
    VmSpec,
)
from .exceptions import (
    SpinUpError,
    ConfigurationError,
    ValidationError,
    ResourceConflictError,
    TransportError,
    ContentShapeError,
    StuckInstallError,
    InstallTimeoutError,
    CrashError,
    DomainNotFoundError,
)
from .orchestrator import BatchOrchestrator
from .report import BatchReport
from .security import SecurityValidator, build_spec

__all__ = [
    "__version__",
    "__description__",
    "SpinUpClient",
    "AppConfig",
    "ConfigLoader",
    "BatchRun",
    "Distribution",
    "DistributionProfile",
    "InstallationState",
    "Outcome",
    "Phase",
    "VmResult",
    "VmSpec",
    "SpinUpError",
    "ConfigurationError",
    "ValidationError",
    "ResourceConflictError",
    "TransportError",
    "ContentShapeError",
    "StuckInstallError",
    "InstallTimeoutError",
    "CrashError",
    "DomainNotFoundError",
    "BatchOrchestrator",
    "BatchReport",
    "SecurityValidator",
    "build_spec",
]
