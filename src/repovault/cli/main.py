# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.05.10
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/cli/main.py

"""
repovault command line.

Commands:
- host-check: verify the primary is a reachable, recognized appliance
- nodes: list the storage nodes a backup would visit
- backup: take a consistent, incremental snapshot of all storage nodes
"""

# Standard library imports
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

# Third-party imports
import typer
from rich.console import Console

# Local imports
from repovault import __version__
from repovault.cli.utils import (
    handle_error, install_signal_handlers, load_config_with_console
)
from repovault.config.manager import BackupConfig
from repovault.core.orchestrator import BackupOrchestrator
from repovault.storage.negotiation import HostNegotiator, NegotiationResult
from repovault.storage.snapshots import SnapshotManager
from repovault.storage.topology import ClusterTopology
from repovault.storage.transport import Endpoint, SSHTransport
from repovault.system.exceptions import BackupInterrupted, ConfigError, RepoVaultError
from repovault.system.logging_setup import setup_logging

app = typer.Typer(
    help="""repovault - consistent incremental backups of clustered repository storage

[bold blue]Checks:[/bold blue] host-check, nodes
[bold green]Backup:[/bold green] backup
""",
    rich_markup_mode="rich"
)

console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        try:
            pkg_version = version("repovault")
        except PackageNotFoundError:
            pkg_version = __version__
        console.print(f"repovault version {pkg_version}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """repovault - cluster repository backup orchestrator."""
    pass


def _config_for_host(config_path: Optional[Path], host: Optional[str]) -> BackupConfig:
    """Config for commands that only need to reach a host."""
    try:
        return BackupConfig.load(config_path, hostname=host)
    except ConfigError:
        if host is None or config_path is not None:
            raise
    # No config file at all: defaults are enough to talk to the host
    return BackupConfig.from_dict({"hostname": host, "data_dir": Path(".")})


@app.command(name="host-check")
def host_check(
    host: Optional[str] = typer.Argument(None, help="Host to check, as [user@]host[:port]"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to repovault.yml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress messages"),
) -> None:
    """[bold blue]Checks[/bold blue]: Verify a host is a reachable, recognized appliance."""
    try:
        config = _config_for_host(config_path, host)
    except ConfigError as e:
        handle_error(err_console, e)
    setup_logging(verbose=verbose, verbose_ssh=config.verbose_ssh)

    try:
        with SSHTransport(config) as transport:
            result = HostNegotiator(transport, config).negotiate(Endpoint.parse(config.hostname))
            result.raise_for_failure()
    except RepoVaultError as e:
        handle_error(err_console, e)
    console.print(result.summary, highlight=False)


@app.command()
def nodes(
    host: Optional[str] = typer.Argument(None, help="Primary host, as [user@]host[:port]"),
    role: Optional[str] = typer.Option(None, "--role", "-r", help="Cluster role to list"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to repovault.yml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress messages"),
) -> None:
    """[bold blue]Checks[/bold blue]: List the storage nodes behind the primary."""
    try:
        config = _config_for_host(config_path, host)
    except ConfigError as e:
        handle_error(err_console, e)
    setup_logging(verbose=verbose, verbose_ssh=config.verbose_ssh)

    try:
        with SSHTransport(config) as transport:
            negotiation = HostNegotiator(transport, config).negotiate(Endpoint.parse(config.hostname))
            negotiation.raise_for_failure()
            members = ClusterTopology(transport, config).list_nodes(negotiation.endpoint, role)
    except RepoVaultError as e:
        handle_error(err_console, e)

    for node in members:
        console.print(node.hostname, highlight=False)


def _print_negotiated(negotiation: NegotiationResult) -> None:
    console.print(negotiation.summary, highlight=False)


@app.command()
def backup(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to repovault.yml"),
    host: Optional[str] = typer.Option(None, "--host", help="Override the configured primary host"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override the backup root"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress messages"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    no_prune: bool = typer.Option(False, "--no-prune", help="Keep old and failed snapshots"),
) -> None:
    """[bold green]Backup[/bold green]: Snapshot repository data from every storage node."""
    config = load_config_with_console(err_console, config_path, hostname=host, data_dir=data_dir)
    primary_name = Endpoint.parse(config.hostname).hostname
    setup_logging(verbose=verbose, debug=debug, log_dir=config.log_dir,
                  log_name=primary_name, verbose_ssh=config.verbose_ssh)
    install_signal_handlers()

    try:
        with BackupOrchestrator(config, on_negotiated=_print_negotiated) as orchestrator:
            report = orchestrator.run()
    except KeyboardInterrupt:
        handle_error(err_console, BackupInterrupted("Backup interrupted; maintenance re-enabled on all nodes"))
    except RepoVaultError as e:
        handle_error(err_console, e)
    except OSError as e:
        handle_error(err_console, RepoVaultError(f"Local error: {e}"))

    if report.snapshot_id is None:
        console.print("No storage nodes found; nothing to back up")
        return

    snapshots = SnapshotManager(config.data_dir)
    snapshots.promote(report.snapshot_id)
    if not no_prune:
        snapshots.prune(config.num_snapshots, in_progress=report.snapshot_id)
    console.print(
        f"[green]✓[/green] Snapshot {report.snapshot_id} complete "
        f"({len(report.nodes)} node(s), {'incremental' if report.incremental else 'full'})",
        highlight=False,
    )


if __name__ == "__main__":
    app()
