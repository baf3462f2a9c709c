"""Command-line interface for Localnet."""

import functools
import logging
import shutil
import sys
from collections.abc import Callable
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import LocalnetConfig, LogFormat, create_sample_config, load_config
from .core.orchestrator import (
    KillSummary,
    LocalNetworkOptions,
    NetworkOrchestrator,
    RunSummary,
)
from .core.status import (
    NodeStatusEntry,
    StatusReport,
    StatusReporter,
    build_status_table,
)
from .error_handling import (
    AlreadyRunningError,
    ConfigurationError,
    LocalnetError,
    NodeNotRunningError,
    PartialFailureError,
    handle_error,
)
from .registry import NodeRegistry, RegistryLock
from .services.binaries import get_binary_version, resolve_binary
from .services.controller import create_controller
from .services.rpc import NodeRpcClient

console = Console()
# Log records go to stderr so stdout stays parseable under --json
log_console = Console(stderr=True)
logger = logging.getLogger(__name__)

VERBOSITY_LEVELS = ["minimal", "normal", "full"]


def setup_logging(
    *,
    verbose: bool = False,
    config: LocalnetConfig | None = None,
) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    show_path = level == logging.DEBUG
    handlers: list[logging.Handler] = [
        RichHandler(console=log_console, rich_tracebacks=True, show_path=show_path),
    ]

    if config and config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = config.log_dir / "localnet.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


def exit_on_error(func: Callable) -> Callable:
    """Show errors to the user and exit non-zero."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LocalnetError as e:
            e.display_to_user()
            sys.exit(1)
        except Exception as e:
            handle_error(e)
            sys.exit(1)

    return wrapper


def print_banner(text: str, verbosity: str = "normal") -> None:
    if verbosity != "minimal":
        console.rule(f"[bold]{text}[/bold]")


def build_orchestrator(config: LocalnetConfig) -> NetworkOrchestrator:
    probe = NodeRpcClient(retry_interval=config.probe_retry_interval)
    return NetworkOrchestrator(config, create_controller(config), probe)


def network_options(func: Callable) -> Callable:
    """Options shared by the run and join commands."""
    options = [
        click.option(
            "--count",
            type=click.IntRange(min=1),
            default=25,
            show_default=True,
            help="Number of nodes to start",
        ),
        click.option(
            "--interval",
            type=click.IntRange(min=0),
            default=None,
            help="Milliseconds to wait between starting nodes",
        ),
        click.option(
            "--node-path",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="Path to the node binary",
        ),
        click.option("--node-version", help="Version of the node binary"),
        click.option("--owner", help="Owner tag passed to every node"),
        click.option(
            "--owner-prefix",
            help="Prefix for service names; each node gets the owner <prefix>_<n>",
        ),
        click.option(
            "--skip-validation",
            is_flag=True,
            help="Do not wait for nodes to answer their health probe",
        ),
        click.option(
            "--log-format",
            type=click.Choice([fmt.value for fmt in LogFormat]),
            default=None,
            help="Log format for the nodes",
        ),
        click.option(
            "--verbosity",
            type=click.Choice(VERBOSITY_LEVELS),
            default="normal",
            show_default=True,
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _optional_faucet(explicit: Path | None, config: LocalnetConfig) -> Path | None:
    if explicit is not None or config.faucet_bin_path is not None:
        return resolve_binary(explicit, config.faucet_bin_path, "faucet")
    found = shutil.which("faucet")
    if not found:
        logger.info("No faucet binary found; starting without a faucet")
        return None
    return Path(found)


def _build_options(
    config: LocalnetConfig,
    *,
    join: bool,
    count: int,
    interval: int | None,
    node_path: Path | None,
    node_version: str | None,
    owner: str | None,
    owner_prefix: str | None,
    skip_validation: bool,
    log_format: str | None,
    peers: tuple[str, ...] = (),
    faucet_path: Path | None = None,
    faucet_version: str | None = None,
) -> LocalNetworkOptions:
    node_bin_path = resolve_binary(node_path, config.node_bin_path, "safenode")
    if node_version is None:
        node_version = get_binary_version(node_bin_path, config.command_timeout)

    if faucet_path is not None and faucet_version is None:
        faucet_version = get_binary_version(faucet_path, config.command_timeout)

    return LocalNetworkOptions(
        node_bin_path=node_bin_path,
        node_count=count,
        join=join,
        peers=peers,
        interval=config.interval if interval is None else interval,
        node_version=node_version,
        faucet_bin_path=faucet_path,
        faucet_version=faucet_version,
        owner=owner,
        owner_prefix=owner_prefix,
        skip_validation=skip_validation,
        log_format=LogFormat(log_format) if log_format else config.log_format,
    )


def _launch(
    orchestrator: NetworkOrchestrator,
    options: LocalNetworkOptions,
    registry: NodeRegistry,
    verbosity: str,
) -> None:
    try:
        summary = orchestrator.run(options, registry)
    except PartialFailureError as e:
        if isinstance(e.summary, RunSummary):
            _print_run_summary(e.summary, registry, verbosity)
        raise
    _print_run_summary(summary, registry, verbosity)


def _print_run_summary(summary: RunSummary, registry: NodeRegistry, verbosity: str) -> None:
    if verbosity == "minimal":
        return
    color = "green" if not summary.failures else "yellow"
    console.print(
        f"[{color}]{summary.running_count} of {summary.requested} nodes running[/{color}]",
    )
    if summary.faucet_status is not None:
        console.print(f"Faucet: {summary.faucet_status.value}")
    if verbosity == "full":
        report = StatusReport(
            entries=[NodeStatusEntry.from_record(record) for record in registry.all()],
        )
        console.print(build_status_table(report, details=True))


def _kill_network(
    orchestrator: NetworkOrchestrator,
    registry: NodeRegistry,
    *,
    keep_directories: bool,
) -> KillSummary:
    """Tear down every service and delete the registry once all are gone."""
    summary = orchestrator.kill(registry, keep_directories=keep_directories)
    registry.delete()
    return summary


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """Localnet - run a local network of storage nodes."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["verbose"] = verbose

        setup_logging(verbose=verbose, config=loaded_config)
    except (OSError, ValueError) as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
        )
        console.print(f"[red]Configuration Error:[/red] {config_error}")
        sys.exit(1)


@cli.command()
@click.option("--clean", is_flag=True, help="Kill any existing local network first")
@network_options
@click.option(
    "--faucet-path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the faucet binary",
)
@click.option("--faucet-version", help="Version of the faucet binary")
@click.pass_context
@exit_on_error
def run(
    ctx: click.Context,
    clean: bool,
    count: int,
    interval: int | None,
    node_path: Path | None,
    node_version: str | None,
    owner: str | None,
    owner_prefix: str | None,
    skip_validation: bool,
    log_format: str | None,
    verbosity: str,
    faucet_path: Path | None,
    faucet_version: str | None,
) -> None:
    """Launch a fresh local network."""
    config: LocalnetConfig = ctx.obj["config"]
    config.ensure_directories()

    with RegistryLock(config.lock_path):
        orchestrator = build_orchestrator(config)
        registry = NodeRegistry.load(config.registry_path)

        if clean and not registry.is_empty():
            print_banner("Killing Local Network", verbosity)
            _kill_network(orchestrator, registry, keep_directories=False)
            registry = NodeRegistry.load(config.registry_path)
        elif not registry.is_empty():
            raise AlreadyRunningError(len(registry.active()))

        print_banner("Launching Local Network", verbosity)
        options = _build_options(
            config,
            join=False,
            count=count,
            interval=interval,
            node_path=node_path,
            node_version=node_version,
            owner=owner,
            owner_prefix=owner_prefix,
            skip_validation=skip_validation,
            log_format=log_format,
            faucet_path=_optional_faucet(faucet_path, config),
            faucet_version=faucet_version,
        )
        _launch(orchestrator, options, registry, verbosity)


@cli.command()
@network_options
@click.option(
    "--peer",
    "peers",
    multiple=True,
    help="Peer multiaddr to bootstrap from (repeatable)",
)
@click.pass_context
@exit_on_error
def join(
    ctx: click.Context,
    count: int,
    interval: int | None,
    node_path: Path | None,
    node_version: str | None,
    owner: str | None,
    owner_prefix: str | None,
    skip_validation: bool,
    log_format: str | None,
    verbosity: str,
    peers: tuple[str, ...],
) -> None:
    """Add nodes to an existing network."""
    config: LocalnetConfig = ctx.obj["config"]
    config.ensure_directories()

    with RegistryLock(config.lock_path):
        registry = NodeRegistry.load(config.registry_path)
        print_banner("Joining Local Network", verbosity)
        options = _build_options(
            config,
            join=True,
            count=count,
            interval=interval,
            node_path=node_path,
            node_version=node_version,
            owner=owner,
            owner_prefix=owner_prefix,
            skip_validation=skip_validation,
            log_format=log_format,
            peers=peers,
        )
        _launch(build_orchestrator(config), options, registry, verbosity)


@cli.command()
@click.option(
    "--keep-directories",
    is_flag=True,
    help="Keep the nodes' data and log directories",
)
@click.option(
    "--verbosity",
    type=click.Choice(VERBOSITY_LEVELS),
    default="normal",
    show_default=True,
)
@click.pass_context
@exit_on_error
def kill(ctx: click.Context, keep_directories: bool, verbosity: str) -> None:
    """Stop every local node and delete the registry."""
    config: LocalnetConfig = ctx.obj["config"]

    with RegistryLock(config.lock_path):
        registry = NodeRegistry.load(config.registry_path)
        if registry.is_empty():
            console.print("No local network is currently running")
            registry.delete()
            return

        print_banner("Killing Local Network", verbosity)
        summary = _kill_network(
            build_orchestrator(config),
            registry,
            keep_directories=keep_directories,
        )
        if verbosity != "minimal":
            console.print(f"[green]Removed {len(summary.removed)} services[/green]")


@cli.command()
@click.option("--details", is_flag=True, help="Show directories, peer ids and versions")
@click.option("--json", "as_json", is_flag=True, help="Output the report as JSON")
@click.option("--fail", is_flag=True, help="Exit non-zero if any service is not running")
@click.pass_context
@exit_on_error
def status(ctx: click.Context, details: bool, as_json: bool, fail: bool) -> None:
    """Show the status of the local network."""
    config: LocalnetConfig = ctx.obj["config"]

    with RegistryLock(config.lock_path):
        registry = NodeRegistry.load(config.registry_path)
        if not as_json:
            print_banner("Local Network")

        probe = NodeRpcClient(retry_interval=config.probe_retry_interval)
        reporter = StatusReporter(create_controller(config), probe)
        try:
            report = reporter.report(registry, fail=fail)
        except NodeNotRunningError as e:
            if isinstance(e.report, StatusReport):
                _print_report(e.report, details=details, as_json=as_json)
            raise
        finally:
            probe.close()
        _print_report(report, details=details, as_json=as_json)


def _print_report(report: StatusReport, *, details: bool, as_json: bool) -> None:
    if as_json:
        click.echo(report.to_json())
        return
    if not report.entries:
        console.print("No local network is currently running")
        return
    console.print(build_status_table(report, details=details))
    for name in report.corrected:
        console.print(f"[yellow]Updated stale status for {name}[/yellow]")


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: LocalnetConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Data Directory", str(config.data_dir))
    table.add_row("Log Directory", str(config.log_dir))
    table.add_row("Registry", str(config.registry_path))
    table.add_row("Service Manager", config.service_manager)
    table.add_row("Node Binary", str(config.node_bin_path or "PATH lookup"))
    table.add_row("Faucet Binary", str(config.faucet_bin_path or "PATH lookup"))
    table.add_row("Start Interval", f"{config.interval} ms")
    table.add_row("Validation Timeout", f"{config.validation_timeout:g} s")
    table.add_row("Node Log Format", config.log_format.value)

    console.print(table)


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "localnet" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
