"""
Input validation for VM provisioning.

This module validates operator input before it becomes a VmSpec and checks
credentials produced by the hashing service.
"""

import re
from functools import lru_cache
from typing import FrozenSet, Iterable, Optional, Union
from zoneinfo import available_timezones

from .config import AppConfig
from .distributions import parse_distribution
from .exceptions import ValidationError
from .logging import logger
from .models import Distribution, VmSpec


@lru_cache(maxsize=1)
def known_timezones() -> FrozenSet[str]:
    return frozenset(available_timezones())


class SecurityValidator:
    """Validation utilities for VM specification fields."""

    HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9.-]+$")
    SHA512_CRYPT_PATTERN = re.compile(r"^\$6\$[a-zA-Z0-9./]{1,16}\$[a-zA-Z0-9./]{86}$")
    MODULAR_CRYPT_PATTERN = re.compile(r"^\$[0-9a-zA-Z]+\$[a-zA-Z0-9./]+\$[a-zA-Z0-9./]+")

    @staticmethod
    def validate_hostname(hostname: str) -> str:
        """
        Validate a VM hostname.

        Args:
            hostname: Hostname to validate

        Returns:
            str: Validated hostname

        Raises:
            ValidationError: If hostname is invalid
        """
        if not hostname or not isinstance(hostname, str):
            raise ValidationError("Hostname cannot be empty", "hostname")

        if len(hostname) > 253:
            raise ValidationError("Hostname must be 253 characters or less", "hostname")

        if not SecurityValidator.HOSTNAME_PATTERN.match(hostname):
            raise ValidationError(
                "Hostname must contain only letters, digits, hyphens (-), or dots (.)",
                "hostname",
            )

        if hostname[0] in "-." or hostname[-1] in "-.":
            raise ValidationError(
                "Hostname cannot start or end with hyphen (-) or dot (.)", "hostname"
            )

        if "--" in hostname or ".." in hostname:
            raise ValidationError(
                "Hostname cannot contain consecutive hyphens (--) or dots (..)",
                "hostname",
            )

        return hostname

    @staticmethod
    def validate_range(
        value: Union[int, str], minimum: int, maximum: int, field: str
    ) -> int:
        """Parse an integer and check it lies within [minimum, maximum]."""
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be a number", field)
        if isinstance(value, str):
            text = value.strip()
            # str.isdigit also accepts superscripts and other non-ASCII digits
            if not (text.isascii() and text.isdigit()):
                raise ValidationError(f"{field} must be a number", field)
            value = int(text)
        if not isinstance(value, int):
            raise ValidationError(f"{field} must be a number", field)
        if value < minimum or value > maximum:
            raise ValidationError(
                f"{field} must be between {minimum} and {maximum}", field
            )
        return value

    @staticmethod
    def validate_timezone(timezone: str) -> str:
        if not timezone or timezone not in known_timezones():
            raise ValidationError(f"Invalid timezone: {timezone}", "timezone")
        return timezone

    @staticmethod
    def validate_password(password: str, field: str, min_length: int = 8) -> str:
        """
        Enforce the minimum length and warn about weak composition.

        Raises:
            ValidationError: If the password is too short or spans lines
        """
        if not isinstance(password, str) or len(password) < min_length:
            raise ValidationError(
                f"Password must be at least {min_length} characters long", field
            )
        if "\n" in password or "\r" in password:
            raise ValidationError("Password cannot contain line breaks", field)

        if not re.search(r"[0-9]", password):
            logger.warning(f"{field} should contain at least one number", field=field)
        if not re.search(r"[A-Z]", password):
            logger.warning(f"{field} should contain at least one uppercase letter", field=field)
        if not re.search(r"[a-z]", password):
            logger.warning(f"{field} should contain at least one lowercase letter", field=field)

        return password

    @staticmethod
    def validate_password_hash(credential: str, field: str = "password_hash") -> str:
        """Accept SHA-512 crypt; tolerate other modular crypt formats with a warning."""
        if not credential:
            raise ValidationError("Password hash cannot be empty", field)

        if SecurityValidator.SHA512_CRYPT_PATTERN.match(credential):
            return credential

        if SecurityValidator.MODULAR_CRYPT_PATTERN.match(credential) and "\n" not in credential:
            logger.warning(
                f"{field} uses non-SHA512 crypt format; this may cause compatibility issues",
                field=field,
            )
            return credential

        raise ValidationError("Expected SHA-512 crypt format: $6$salt$hash", field)

    @staticmethod
    def validate_spec(spec: VmSpec, config: AppConfig, passwords: bool = True) -> VmSpec:
        """
        Re-check an already-built spec against the configured bounds.

        With ``passwords=False`` only the machine fields are checked, for specs
        whose passwords were dropped after hashing.
        """
        SecurityValidator.validate_hostname(spec.hostname)
        SecurityValidator.validate_range(
            spec.ram_mib, config.min_ram_mib, config.max_ram_mib, "RAM"
        )
        SecurityValidator.validate_range(
            spec.vcpus, config.min_vcpus, config.max_vcpus, "vCPUs"
        )
        SecurityValidator.validate_range(
            spec.disk_gib, config.min_disk_gib, config.max_disk_gib, "Disk size"
        )
        SecurityValidator.validate_timezone(spec.timezone)
        if passwords:
            SecurityValidator.validate_password(
                spec.user_password, "User password", config.min_password_length
            )
            SecurityValidator.validate_password(
                spec.root_password, "Root password", config.min_password_length
            )
        return spec


def build_spec(
    config: AppConfig,
    distribution: Union[str, Distribution],
    hostname: str,
    ram_mib: Union[int, str],
    vcpus: Union[int, str],
    disk_gib: Union[int, str],
    timezone: str,
    user_password: str,
    root_password: str,
) -> VmSpec:
    """Validate raw operator input and return an accepted VmSpec."""
    spec = VmSpec(
        distribution=parse_distribution(distribution),
        hostname=SecurityValidator.validate_hostname(hostname),
        ram_mib=SecurityValidator.validate_range(
            ram_mib, config.min_ram_mib, config.max_ram_mib, "RAM"
        ),
        vcpus=SecurityValidator.validate_range(
            vcpus, config.min_vcpus, config.max_vcpus, "vCPUs"
        ),
        disk_gib=SecurityValidator.validate_range(
            disk_gib, config.min_disk_gib, config.max_disk_gib, "Disk size"
        ),
        timezone=SecurityValidator.validate_timezone(timezone),
        user_password=SecurityValidator.validate_password(
            user_password, "User password", config.min_password_length
        ),
        root_password=SecurityValidator.validate_password(
            root_password, "Root password", config.min_password_length
        ),
    )
    return spec


def validate_batch(specs: Iterable[VmSpec], config: AppConfig, limit: Optional[int] = None) -> list:
    """Check batch size and hostname uniqueness; returns the specs as a list."""
    spec_list = list(specs)
    maximum = limit or config.max_batch_size
    if not 1 <= len(spec_list) <= maximum:
        raise ValidationError(
            f"Batch must contain between 1 and {maximum} VMs", "vm_count"
        )
    seen = set()
    for spec in spec_list:
        if spec.hostname in seen:
            raise ValidationError(
                f"Hostname '{spec.hostname}' appears more than once in the batch",
                "hostname",
            )
        seen.add(spec.hostname)
    return spec_list
