import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import click
from rich.console import Console
from rich.panel import Panel

from . import __version__, semver
from .cli_config import (
    SUPPORTED_MODES,
    UpdaterConfig,
    config_from_mapping,
    create_sample_config,
    get_config,
    load_config_file,
    validate_config_values,
)
from .error_handling import ConfigError, UpdaterError, setup_error_handling
from .policy import ResolutionOptions, to_matcher
from .reporting import EXIT_ERROR, UpdateReporter, get_exit_code
from .structured_logging import configure_logging
from .updater import CheckOptions, DependencyUpdater

console = Console()


def split_list(values: Union[str, Tuple[str, ...], None]) -> List[str]:
    """Split comma separated option values into a flat list."""
    if not values:
        return []
    if isinstance(values, str):
        values = (values,)
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


def parse_pattern_option(value: Optional[str]) -> Union[bool, List[str]]:
    """A bare flag applies to every name, a value to the listed patterns."""
    if value is None:
        return False
    items = split_list(value)
    if not items or items == ["*"]:
        return True
    return items


def parse_pin_args(values: Tuple[str, ...]) -> Dict[str, str]:
    """
    Parse ``--pin name=range`` values.

    Raises:
        ConfigError: If an entry is malformed or its range is invalid
    """
    pins: Dict[str, str] = {}
    for value in split_list(values):
        name, sep, version_range = value.partition("=")
        if not sep or not name or not version_range:
            raise ConfigError(f"Invalid pin '{value}', expected name=range")
        if semver.valid_range(version_range) is None:
            raise ConfigError(f"Invalid pinned range for {name}: {version_range}")
        pins[name] = version_range
    return pins


def setup_logging(config: UpdaterConfig, verbose: bool) -> None:
    log_level = "DEBUG" if verbose else config.logging.log_level
    setup_error_handling(getattr(logging, log_level.upper(), logging.WARNING))
    log_file = config.logging.log_file_path if config.logging.enable_file_logging else None
    configure_logging(log_level, log_file)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    Dep-Updater: find and apply dependency updates.

    Checks package.json, pyproject.toml, go.mod, Dockerfiles, compose files
    and GitHub Actions workflows for newer versions.
    """
    if version:
        console.print(f"dep-updater {__version__}", highlight=False)
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@cli.command()
@click.argument("files", nargs=-1, type=click.Path())
@click.option("--update", "-u", is_flag=True, help="Update versions and write the manifests")
@click.option("--file", "-f", "file_args", multiple=True, help="File or directory to check (comma separated)")
@click.option("--include", "-i", multiple=True, help="Only check dependencies matching these patterns")
@click.option("--exclude", "-e", multiple=True, help="Skip dependencies matching these patterns")
@click.option(
    "--prerelease", "-p", is_flag=False, flag_value="*", default=None,
    help="Consider prerelease versions, optionally only for the given patterns",
)
@click.option(
    "--release", "-R", is_flag=False, flag_value="*", default=None,
    help="Only use release versions, may downgrade prereleases",
)
@click.option(
    "--greatest", "-g", is_flag=False, flag_value="*", default=None,
    help="Prefer the greatest over the latest version",
)
@click.option("--types", "-t", help="Dependency types to check (comma separated)")
@click.option(
    "--patch", "-P", is_flag=False, flag_value="*", default=None,
    help="Consider only patch updates",
)
@click.option(
    "--minor", "-m", is_flag=False, flag_value="*", default=None,
    help="Consider only patch and minor updates",
)
@click.option(
    "--allow-downgrade", "-d", is_flag=False, flag_value="*", default=None,
    help="Allow version downgrades when the latest version is older",
)
@click.option("--cooldown", "-C", help="Minimum age of new versions, e.g. 7, 3d or 2w")
@click.option("--pin", multiple=True, help="Pin a dependency to a range, e.g. react=^18")
@click.option("--error-on-outdated", "-E", is_flag=True, help="Exit with code 2 when updates are available")
@click.option("--error-on-unchanged", "-U", is_flag=True, help="Exit with code 2 when nothing is updated")
@click.option("--registry", "-r", help="Override the npm registry URL")
@click.option("--sockets", "-S", type=int, help="Maximum concurrent connections")
@click.option("--timeout", "-T", type=float, help="Network request timeout in seconds")
@click.option("--json", "-j", "json_output", is_flag=True, help="Output a JSON object")
@click.option("--verbose", "-V", is_flag=True, help="Log network requests and decisions to stderr")
@click.option("--modes", help=f"Modes to enable (comma separated, default: {','.join(SUPPORTED_MODES)})")
def check(
    files: Tuple[str, ...],
    update: bool,
    file_args: Tuple[str, ...],
    include: Tuple[str, ...],
    exclude: Tuple[str, ...],
    prerelease: Optional[str],
    release: Optional[str],
    greatest: Optional[str],
    types: Optional[str],
    patch: Optional[str],
    minor: Optional[str],
    allow_downgrade: Optional[str],
    cooldown: Optional[str],
    pin: Tuple[str, ...],
    error_on_outdated: bool,
    error_on_unchanged: bool,
    registry: Optional[str],
    sockets: Optional[int],
    timeout: Optional[float],
    json_output: bool,
    verbose: bool,
    modes: Optional[str],
) -> None:
    """
    Check dependencies for updates.

    Without FILES the manifests are searched from the current directory
    upward, together with the nearest .github/workflows directory.

    Examples:

      dep-updater check

      dep-updater check -u package.json

      dep-updater check --minor --exclude 'react*' --json
    """
    reporter = UpdateReporter(console, json_output=json_output)

    try:
        app_config = get_config()
        setup_logging(app_config, verbose)

        if sockets is not None and sockets <= 0:
            raise click.BadParameter("must be positive", param_hint="--sockets")
        if timeout is not None and timeout <= 0:
            raise click.BadParameter("must be positive", param_hint="--timeout")

        network = app_config.network
        if sockets is not None:
            network = replace(network, max_sockets=sockets)
        if timeout is not None:
            network = replace(network, fetch_timeout=timeout, go_lookup_timeout=None)

        enabled_modes = split_list(modes) or list(app_config.resolution.modes)
        unknown = [mode for mode in enabled_modes if mode not in SUPPORTED_MODES]
        if unknown:
            raise click.BadParameter(f"unknown modes: {', '.join(unknown)}", param_hint="--modes")

        resolution = ResolutionOptions(
            greatest=to_matcher(parse_pattern_option(greatest), insensitive=True),
            prerelease=to_matcher(parse_pattern_option(prerelease), insensitive=True),
            release=to_matcher(parse_pattern_option(release), insensitive=True),
            patch=to_matcher(parse_pattern_option(patch), insensitive=True),
            minor=to_matcher(parse_pattern_option(minor), insensitive=True),
            allow_downgrade=to_matcher(parse_pattern_option(allow_downgrade), insensitive=True),
            pin=parse_pin_args(pin),
        )

        options = CheckOptions(
            files=[*files, *split_list(file_args)] or None,
            modes=enabled_modes,
            include=split_list(include),
            exclude=split_list(exclude),
            types=split_list(types) or None,
            registry=registry,
            cooldown=cooldown or app_config.resolution.cooldown,
            resolution=resolution,
            update=update,
            include_engines=app_config.resolution.include_engines,
        )

        result = asyncio.run(DependencyUpdater(options, network).check())

    except KeyboardInterrupt:
        Console(stderr=True).print("\n⚠️  Check interrupted by user", style="yellow")
        sys.exit(130)
    except (UpdaterError, click.BadParameter) as e:
        message = e.format_message() if isinstance(e, click.BadParameter) else str(e)
        reporter.print_error(message)
        sys.exit(EXIT_ERROR)

    reporter.print_results(result)
    reporter.print_written(result)

    if result.errors:
        sys.exit(EXIT_ERROR)
    sys.exit(get_exit_code(result.has_updates, error_on_outdated, error_on_unchanged))


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".dep-updater.json",
    help="Where to write the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Replace an existing file")
def config_init(path: str, force: bool):
    """Write a config file holding the default settings."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(f"⚠️  Config file already exists at {config_path}", style="yellow")
        console.print("Pass --force to replace it", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())

        console.print(f"✅ Wrote default settings to {config_path}", style="green")
        console.print("Add a 'project' section to set include, exclude and pin rules", style="dim")

    except OSError as e:
        console.print(f"❌ Could not write {config_path}: {e}", style="red")
        sys.exit(EXIT_ERROR)


@config.command("show")
def config_show():
    """Show the effective configuration settings."""
    current_config = get_config()

    console.print(Panel("[bold blue]🔧 Configuration[/bold blue]", border_style="blue"))

    network = current_config.network
    console.print("\n[bold cyan]🌐 Network Settings:[/bold cyan]")
    console.print(f"  npm Registry: {network.npm_registry}")
    console.print(f"  PyPI API: {network.pypi_api_url}")
    console.print(f"  JSR API: {network.jsr_api_url}")
    console.print(f"  Forge API: {network.forge_api_url}")
    console.print(f"  Docker Hub API: {network.docker_api_url}")
    console.print(f"  Go Proxy: {network.go_proxy_url or '(from GOPROXY)'}")
    console.print(f"  Timeout: {network.fetch_timeout}s")
    console.print(f"  Go Lookup Timeout: {network.effective_go_lookup_timeout}s")
    console.print(f"  Max Sockets: {network.max_sockets}")
    console.print(f"  User Agent: {network.user_agent}")

    resolution = current_config.resolution
    console.print("\n[bold cyan]🎯 Resolution Settings:[/bold cyan]")
    console.print(f"  Modes: {', '.join(resolution.modes)}")
    console.print(f"  Cooldown: {resolution.cooldown or 'none'}")
    console.print(f"  Include Engines: {resolution.include_engines}")

    logging_config = current_config.logging
    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {logging_config.log_level}")
    console.print(f"  File Logging: {logging_config.enable_file_logging}")
    if logging_config.log_file_path:
        console.print(f"  Log File: {logging_config.log_file_path}")


@config.command("validate")
@click.argument("config_file", type=click.Path(exists=True))
def config_validate(config_file: str):
    """Check a config file for unknown keys and out-of-range values."""
    config_path = Path(config_file)

    try:
        config_data = load_config_file(config_path)
    except ConfigError as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(EXIT_ERROR)

    if config_data is None:
        console.print(f"❌ {config_file} is empty or unreadable", style="red")
        sys.exit(EXIT_ERROR)

    errors = validate_config_values(config_from_mapping(config_data))
    if errors:
        console.print("❌ Configuration validation failed:", style="red")
        for error in errors:
            console.print(f"  • {error}", style="red")
        sys.exit(EXIT_ERROR)

    console.print(f"✅ Configuration file {config_file} is valid", style="green")


if __name__ == "__main__":
    cli()
