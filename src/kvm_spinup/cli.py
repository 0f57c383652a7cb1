#!/usr/bin/env python3
"""
Command-line interface for batch KVM provisioning.

Interactive batches, scripted single-VM installs per distribution, host
checks and configuration management.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, List, Optional, TypeVar

import click
import yaml

from .client import SpinUpClient
from .config import DEFAULT_CONFIG_PATHS, AppConfig, config_loader
from .exceptions import ConfigurationError, SpinUpError
from .logging import logger
from .models import BatchRun, Distribution, InstallationState, VmSpec
from .prompts import collect_batch, confirm_batch
from .report import BatchReport
from .security import build_spec

EXIT_INTERRUPTED = 130

T = TypeVar("T")


def setup_logging(verbose: bool = False, quiet: bool = False, log_level: str = "INFO") -> None:
    """Setup logging configuration."""
    if quiet:
        logger.set_level("ERROR")
    elif verbose:
        logger.set_level("DEBUG")
    else:
        logger.set_level(log_level)


def make_progress_callback(quiet: bool) -> Optional[Any]:
    if quiet:
        return None

    def progress_callback(state: InstallationState, elapsed: float) -> None:
        minutes, seconds = divmod(int(elapsed), 60)
        click.echo(f"\r  {state.value:<10} ({minutes}m {seconds:02d}s)", nl=False, err=True)

    return progress_callback


def run_interruptible(main: Awaitable[T]) -> T:
    """
    Run a coroutine to completion on a fresh event loop.

    SIGTERM cancels the running task the same way Ctrl+C does, so both unwind
    through the client context and release mounts and the HTTP server before
    the process exits with 130.
    """

    async def guarded() -> T:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, asyncio.current_task().cancel)
        try:
            return await main
        finally:
            loop.remove_signal_handler(signal.SIGTERM)

    try:
        return asyncio.run(guarded())
    except (KeyboardInterrupt, asyncio.CancelledError):
        click.echo("\n✗ Interrupted; helper processes and mounts were released", err=True)
        sys.exit(EXIT_INTERRUPTED)


def run_specs(ctx: Any, specs: List[VmSpec]) -> BatchRun:
    """Run a batch and print its report; exits on setup failure or interrupt."""
    app_config: AppConfig = ctx.obj["config"]
    quiet = ctx.obj["quiet"]

    async def run_batch() -> BatchRun:
        async with SpinUpClient(app_config) as client:
            return await client.run_batch(specs, make_progress_callback(quiet))

    try:
        batch = run_interruptible(run_batch())
    except SpinUpError as e:
        click.echo(f"\n✗ Error: {e}", err=True)
        sys.exit(e.error_code)

    if not quiet:
        click.echo(err=True)  # New line after progress
    click.echo(BatchReport.from_batch(batch).render(ctx.obj["output_format"]))
    return batch


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Report format",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="Log level (default: from configuration)",
)
@click.version_option(package_name="kvm-spinup")
@click.pass_context
def cli(
    ctx: Any,
    config: Optional[str],
    verbose: bool,
    quiet: bool,
    output: str,
    log_level: Optional[str],
) -> None:
    """Batch KVM VM provisioning with unattended kickstart installs."""
    try:
        app_config = config_loader.load_config(config)
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["config_path"] = config
    ctx.obj["output_format"] = output
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


@cli.command()
@click.pass_context
def batch(ctx: Any) -> None:
    """Interactively define one or more VMs and install them in order."""
    app_config: AppConfig = ctx.obj["config"]
    try:
        specs = collect_batch(app_config)
        if not confirm_batch(specs, app_config):
            click.echo("Installation cancelled")
            return
    except click.Abort:
        click.echo("\n✗ Cancelled", err=True)
        sys.exit(EXIT_INTERRUPTED)

    run_specs(ctx, specs)


@cli.group()
def install() -> None:
    """Install a single VM non-interactively."""
    pass


def _install_command(distribution: Distribution) -> click.Command:
    @click.command(
        name=distribution.value,
        help=f"Install one {distribution.value} VM from seven positional arguments.",
    )
    @click.argument("hostname")
    @click.argument("ram_mib")
    @click.argument("vcpus")
    @click.argument("disk_gib")
    @click.argument("timezone")
    @click.argument("user_password")
    @click.argument("root_password")
    @click.pass_context
    def command(
        ctx: Any,
        hostname: str,
        ram_mib: str,
        vcpus: str,
        disk_gib: str,
        timezone: str,
        user_password: str,
        root_password: str,
    ) -> None:
        try:
            spec = build_spec(
                ctx.obj["config"],
                distribution,
                hostname,
                ram_mib,
                vcpus,
                disk_gib,
                timezone,
                user_password,
                root_password,
            )
        except SpinUpError as e:
            click.echo(f"✗ {e}", err=True)
            sys.exit(1)

        result = run_specs(ctx, [spec])
        if result.failed:
            sys.exit(1)

    return command


for _distribution in Distribution:
    install.add_command(_install_command(_distribution))


@cli.command()
@click.pass_context
def check(ctx: Any) -> None:
    """Check the host is ready to provision VMs."""
    app_config: AppConfig = ctx.obj["config"]

    async def run_check() -> Any:
        async with SpinUpClient(app_config) as client:
            return await client.check_host()

    try:
        warnings, host_ip = run_interruptible(run_check())
    except SpinUpError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(e.error_code)

    for warning in warnings:
        click.echo(f"  Warning: {warning}", err=True)
    click.echo("✓ Host is ready")
    click.echo(f"  Work directory: {app_config.work_path}")
    click.echo(f"  Kickstart URL base: http://{host_ip}:{app_config.http_port}/")


@cli.group()
def config() -> None:
    """Manage configuration settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display the effective configuration."""
    click.echo(yaml.safe_dump(ctx.obj["config"].model_dump(), default_flow_style=False))


@config.command("path")
@click.pass_context
def config_path(ctx: Any) -> None:
    """Show which configuration file is in use."""
    path = ctx.obj["config_path"] or config_loader.find_config_file()
    if path:
        click.echo(path)
    else:
        click.echo("No configuration file found; using defaults", err=True)
        click.echo("Searched: " + ", ".join(DEFAULT_CONFIG_PATHS), err=True)


@config.command("init")
@click.option("--config-dir", default="~/.config/kvm-spinup", help="Configuration directory")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_dir: str, force: bool) -> None:
    """Write a configuration file holding the defaults."""
    config_file = Path(config_dir).expanduser() / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"Configuration already exists at {config_file}", err=True)
        sys.exit(1)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    default_config = AppConfig().model_dump(exclude={"template_dir"})
    with open(config_file, "w") as f:
        yaml.safe_dump(default_config, f, default_flow_style=False)

    click.echo(f"Configuration initialized at {config_file}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
