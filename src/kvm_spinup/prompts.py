"""
Interactive collection of VM specifications.

Every field is re-prompted until it validates, so a spec only leaves this
module once it has been accepted.
"""

from typing import Any, Callable, List, Optional

import click

from .config import AppConfig
from .distributions import get_profile
from .exceptions import ValidationError
from .models import Distribution, VmSpec
from .security import SecurityValidator, build_spec

DEFAULT_RAM_MIB = 2048
DEFAULT_VCPUS = 2
DEFAULT_DISK_GIB = 30
DEFAULT_TIMEZONE = "Africa/Cairo"


def ask(
    text: str,
    validate: Callable[[str], Any],
    default: Optional[Any] = None,
    hide_input: bool = False,
    confirmation_prompt: bool = False,
) -> Any:
    """Prompt until validate accepts the answer."""
    while True:
        value = click.prompt(
            text,
            default=default,
            hide_input=hide_input,
            confirmation_prompt=confirmation_prompt,
            show_default=default is not None,
        )
        try:
            return validate(str(value))
        except ValidationError as e:
            click.echo(f"✗ {e.message}", err=True)


def prompt_vm_count(config: AppConfig) -> int:
    return ask(
        f"How many VMs do you want to create? (1-{config.max_batch_size})",
        lambda v: SecurityValidator.validate_range(v, 1, config.max_batch_size, "VM count"),
    )


def prompt_distribution(config: AppConfig) -> Distribution:
    choices = list(Distribution)
    click.echo("Select distribution:")
    for number, distribution in enumerate(choices, start=1):
        click.echo(f"  {number}) {get_profile(distribution, config).display_name}")

    index = ask(
        f"Choice (1-{len(choices)})",
        lambda v: SecurityValidator.validate_range(v, 1, len(choices), "Distribution choice"),
    )
    return choices[index - 1]


def prompt_spec(config: AppConfig, number: int, total: int) -> VmSpec:
    """Collect and validate one VM's specification."""
    click.echo(f"\nVM {number} of {total}")
    click.echo("-" * 20)
    distribution = prompt_distribution(config)
    hostname = ask("Hostname", SecurityValidator.validate_hostname)
    ram_mib = ask(
        f"RAM in MB ({config.min_ram_mib}-{config.max_ram_mib})",
        lambda v: SecurityValidator.validate_range(v, config.min_ram_mib, config.max_ram_mib, "RAM"),
        default=DEFAULT_RAM_MIB,
    )
    vcpus = ask(
        f"vCPUs ({config.min_vcpus}-{config.max_vcpus})",
        lambda v: SecurityValidator.validate_range(v, config.min_vcpus, config.max_vcpus, "vCPUs"),
        default=DEFAULT_VCPUS,
    )
    disk_gib = ask(
        f"Disk size in GB ({config.min_disk_gib}-{config.max_disk_gib})",
        lambda v: SecurityValidator.validate_range(
            v, config.min_disk_gib, config.max_disk_gib, "Disk size"
        ),
        default=DEFAULT_DISK_GIB,
    )
    timezone = ask("Timezone", SecurityValidator.validate_timezone, default=DEFAULT_TIMEZONE)
    user_password = ask(
        f"Password for user '{config.vm_username}'",
        lambda v: SecurityValidator.validate_password(
            v, "User password", config.min_password_length
        ),
        hide_input=True,
        confirmation_prompt=True,
    )
    root_password = ask(
        "Root password",
        lambda v: SecurityValidator.validate_password(
            v, "Root password", config.min_password_length
        ),
        hide_input=True,
        confirmation_prompt=True,
    )

    return build_spec(
        config,
        distribution,
        hostname,
        ram_mib,
        vcpus,
        disk_gib,
        timezone,
        user_password,
        root_password,
    )


def describe_spec(spec: VmSpec, config: AppConfig) -> str:
    profile = get_profile(spec.distribution, config)
    return (
        f"{spec.hostname}: {profile.display_name}, {spec.ram_mib}MB RAM, "
        f"{spec.vcpus} vCPUs, {spec.disk_gib}GB disk, {spec.timezone}"
    )


def collect_batch(config: AppConfig) -> List[VmSpec]:
    """Prompt for the VM count and each VM; hostnames must be unique within the batch."""
    total = prompt_vm_count(config)
    specs: List[VmSpec] = []
    while len(specs) < total:
        spec = prompt_spec(config, len(specs) + 1, total)
        if any(existing.hostname == spec.hostname for existing in specs):
            click.echo(f"✗ Hostname '{spec.hostname}' is already used in this batch", err=True)
            continue
        click.echo(f"✓ {describe_spec(spec, config)}")
        specs.append(spec)
    return specs


def confirm_batch(specs: List[VmSpec], config: AppConfig) -> bool:
    click.echo("\nBatch Summary")
    click.echo("=" * 40)
    for number, spec in enumerate(specs, start=1):
        click.echo(f"  {number}. {describe_spec(spec, config)}")
    click.echo(f"\nDefault user: {config.vm_username}")
    return click.confirm(f"Proceed with creating {len(specs)} VM(s)?", default=False)
