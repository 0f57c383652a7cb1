"""Catalogue of supported distributions."""

from pathlib import Path
from typing import Dict, Union

from .config import AppConfig
from .exceptions import ValidationError
from .models import Distribution, DistributionProfile

_CATALOGUE: Dict[Distribution, Dict[str, str]] = {
    Distribution.ROCKY: {
        "display_name": "Rocky Linux 9.7",
        "media_url": "https://download.rockylinux.org/pub/rocky/9/isos/x86_64/Rocky-9.7-x86_64-minimal.iso",
        "media_file": "Rocky-9.7-x86_64-minimal.iso",
        "platform_variant": "rocky9",
        "template": "rocky-ks.cfg.template",
    },
    Distribution.ALMA: {
        "display_name": "AlmaLinux 10.1",
        "media_url": "https://repo.almalinux.org/almalinux/10/isos/x86_64/AlmaLinux-10.1-x86_64-minimal.iso",
        "media_file": "AlmaLinux-10.1-x86_64-minimal.iso",
        "platform_variant": "almalinux10",
        "template": "alma-ks.cfg.template",
    },
}


def parse_distribution(value: Union[str, Distribution]) -> Distribution:
    """Resolve a distribution identifier, rejecting unknown ones."""
    if isinstance(value, Distribution):
        return value
    try:
        return Distribution(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(d.value for d in Distribution)
        raise ValidationError(
            f"Unsupported distribution: {value}. Supported: {supported}", "distribution"
        )


def get_profile(distribution: Distribution, config: AppConfig) -> DistributionProfile:
    entry = _CATALOGUE[distribution]
    return DistributionProfile(
        distribution=distribution,
        display_name=entry["display_name"],
        media_url=entry["media_url"],
        local_media_path=config.iso_dir / entry["media_file"],
        platform_variant=entry["platform_variant"],
        template_path=Path(config.template_dir).expanduser() / entry["template"],
        boot_dir=config.boot_dir / entry["platform_variant"],
    )
