"""
Configuration management for KVM provisioning runs.

This module handles loading and validating configuration from files and environment variables.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger

PACKAGE_TEMPLATE_DIR = str(Path(__file__).parent / "templates")

DEFAULT_CONFIG_PATHS = [
    "~/.config/kvm-spinup/config.yaml",
    "/etc/kvm-spinup/config.yaml",
    "config.yaml",
]


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - KVM_SPINUP_WORK_DIR: Root directory for media, boot files and disk images
    - KVM_SPINUP_TEMPLATE_DIR: Directory holding kickstart templates
    - KVM_SPINUP_HTTP_PORT: Port of the kickstart delivery endpoint
    - KVM_SPINUP_LIBVIRT_URI: Libvirt connection URI
    - KVM_SPINUP_NETWORK: Libvirt network the VMs attach to
    - KVM_SPINUP_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - KVM_SPINUP_INSTALL_TIMEOUT: Overall install timeout in seconds
    - KVM_SPINUP_POLL_INTERVAL: Seconds between domain state polls
    - KVM_SPINUP_STUCK_THRESHOLD: Seconds without disk activity before an install is stuck
    """

    model_config = ConfigDict(extra="forbid")  # Reject unknown fields

    work_dir: str = Field(default="~/KVM_Spin_Ups", description="Working directory")
    template_dir: str = Field(default=PACKAGE_TEMPLATE_DIR)
    http_port: int = Field(default=8080, gt=0, le=65535, description="Endpoint port")
    libvirt_uri: str = "qemu:///system"
    network_name: str = "default"
    vm_username: str = Field(default="ops", pattern=r"^[a-z_][a-z0-9_-]{0,31}$")
    log_level: str = Field(default="INFO", description="Logging level")

    # VM specification bounds
    min_ram_mib: int = Field(default=1024, gt=0)
    max_ram_mib: int = Field(default=16384, gt=0)
    min_vcpus: int = Field(default=1, gt=0)
    max_vcpus: int = Field(default=16, gt=0)
    min_disk_gib: int = Field(default=10, gt=0)
    max_disk_gib: int = Field(default=500, gt=0)
    min_password_length: int = Field(default=8, gt=0)
    max_batch_size: int = Field(default=10, gt=0)

    # Installation monitoring
    install_timeout: float = Field(default=1800, gt=0)
    poll_interval: float = Field(default=10, gt=0)
    stuck_threshold: float = Field(default=300, gt=0)

    # Delivery endpoint
    probe_attempts: int = Field(default=10, gt=0)
    probe_interval: float = Field(default=1.0, ge=0)

    inter_vm_delay: float = Field(default=5, ge=0)
    min_free_disk_gib: int = Field(default=10, ge=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "AppConfig":
        """Ensure every min/max pair is ordered and monitor intervals fit the timeout."""
        for low, high in (
            ("min_ram_mib", "max_ram_mib"),
            ("min_vcpus", "max_vcpus"),
            ("min_disk_gib", "max_disk_gib"),
        ):
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")
        if self.poll_interval > self.install_timeout:
            raise ValueError("poll_interval must not exceed install_timeout")
        if self.stuck_threshold > self.install_timeout:
            raise ValueError("stuck_threshold must not exceed install_timeout")
        return self

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir).expanduser()

    @property
    def iso_dir(self) -> Path:
        return self.work_path / "iso"

    @property
    def image_dir(self) -> Path:
        return self.work_path / "vms"

    @property
    def kickstart_dir(self) -> Path:
        """Only directory the delivery endpoint serves; disk images stay outside it."""
        return self.image_dir / "kickstart"

    @property
    def boot_dir(self) -> Path:
        return self.work_path / "mounts"

    @property
    def pid_file(self) -> Path:
        return self.work_path / "http_server.pid"


class ConfigLoader:
    """Loads and validates configuration."""

    ENV_MAPPINGS = {
        "KVM_SPINUP_WORK_DIR": "work_dir",
        "KVM_SPINUP_TEMPLATE_DIR": "template_dir",
        "KVM_SPINUP_HTTP_PORT": ("http_port", int),
        "KVM_SPINUP_LIBVIRT_URI": "libvirt_uri",
        "KVM_SPINUP_NETWORK": "network_name",
        "KVM_SPINUP_LOG_LEVEL": "log_level",
        "KVM_SPINUP_INSTALL_TIMEOUT": ("install_timeout", float),
        "KVM_SPINUP_POLL_INTERVAL": ("poll_interval", float),
        "KVM_SPINUP_STUCK_THRESHOLD": ("stuck_threshold", float),
    }

    def __init__(self) -> None:
        self.logger = logger

    def find_config_file(self) -> Optional[str]:
        """Return the first default config location that exists."""
        for path in DEFAULT_CONFIG_PATHS:
            expanded = os.path.expanduser(path)
            if os.path.exists(expanded):
                return expanded
        return None

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            found = self.find_config_file()
            if found:
                self.logger.info(f"Loading configuration from {found}", path=found)
                config_data = self._load_data_from_file(found)
            else:
                config_data = {}
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        for env_var, mapping in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                    self.logger.debug(f"Applied environment override: {env_var}={env_value}")
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
            else:
                config_data[mapping] = env_value
                self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(os.path.expanduser(path), "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse configuration file {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(f"Failed to load configuration from {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


# Global config loader
config_loader = ConfigLoader()
