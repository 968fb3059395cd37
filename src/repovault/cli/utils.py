# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/cli/utils.py

"""
CLI utility functions shared by repovault commands.

This module provides standardized functions for:
- Loading configuration with console error reporting
- Mapping errors to process exit codes
- Printing one-line diagnoses and exiting with typer
"""

import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from repovault.config.manager import BackupConfig
from repovault.system.exceptions import (
    BackupInterrupted, ConfigError, ConnectivityError, QuiescenceTimeoutError,
    RepoVaultError, TransferError, TransportError,
    EXIT_FAILURE, EXIT_CONNECTION_FAILURE,
)


def exit_code_for(error: RepoVaultError) -> int:
    """Most specific process exit code for a fatal error."""
    if isinstance(error, ConnectivityError):
        return EXIT_CONNECTION_FAILURE
    if isinstance(error, TransportError):
        return EXIT_CONNECTION_FAILURE if error.connection_failed else EXIT_FAILURE
    if isinstance(error, (QuiescenceTimeoutError, TransferError, BackupInterrupted, ConfigError)):
        return EXIT_FAILURE
    return error.exit_code or EXIT_FAILURE


def describe_error(error: RepoVaultError) -> str:
    """One-line diagnosis naming the host and, where known, budget or phase."""
    message = str(error)
    if isinstance(error, QuiescenceTimeoutError):
        return f"{error.host}: maintenance did not quiesce within the {error.budget}s cooldown budget"
    if isinstance(error, TransferError) and error.phase and error.phase not in message:
        return f"{message} (phase: {error.phase})"
    if error.host and error.host not in message:
        return f"{error.host}: {message}"
    return message


def handle_error(console: Console, error: RepoVaultError) -> None:
    """
    Print a red one-line diagnosis and exit with the matching code.

    Raises:
        typer.Exit: Always
    """
    console.print(f"[red]✗[/red] {describe_error(error)}", highlight=False)
    if isinstance(error, ConnectivityError) and error.remediation:
        console.print(f"  {error.remediation}", highlight=False)
    raise typer.Exit(exit_code_for(error))


def load_config_with_console(console: Console, config_path: Optional[Path] = None, **overrides) -> BackupConfig:
    """
    Load configuration with proper error handling and console output.

    Raises:
        typer.Exit: If configuration loading fails
    """
    try:
        return BackupConfig.load(config_path, **overrides)
    except ConfigError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}", highlight=False)
        raise typer.Exit(EXIT_FAILURE)


def _raise_interrupted(signum, frame) -> None:
    raise BackupInterrupted(f"Interrupted by signal {signal.Signals(signum).name}")


def install_signal_handlers() -> None:
    """Turn SIGTERM into an exception so cleanup blocks run."""
    signal.signal(signal.SIGTERM, _raise_interrupted)
