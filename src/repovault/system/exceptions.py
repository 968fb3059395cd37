# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/system/exceptions.py

"""
repovault-specific exception classes.

Every error carries the process exit code the CLI should use when it is the
fatal condition of a run, and the host it is attributed to where there is one.
"""

# Exit codes at the process boundary
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VERSION_UNPARSABLE = 2
EXIT_QUIESCENCE_TIMEOUT = 7
EXIT_NOT_RECOGNIZED = 101
EXIT_COMMAND_NOT_FOUND = 127
EXIT_CONNECTION_FAILURE = 255


class RepoVaultError(Exception):
    """Base exception for all repovault errors."""

    def __init__(self, message: str, host: str = None, exit_code: int = EXIT_FAILURE):
        self.host = host
        self.exit_code = exit_code
        super().__init__(message)


class ConfigError(RepoVaultError):
    """Raised when configuration is missing or fails validation."""
    pass


class MisuseError(RepoVaultError):
    """Raised when a pipeline is passed through the simple command form."""
    pass


class BackupInterrupted(RepoVaultError):
    """Raised when the operator cancels a run (SIGINT/SIGTERM)."""
    pass


# === TRANSPORT AND NETWORK ERRORS ===

class TransportError(RepoVaultError):
    """Remote command channel failure.

    An exit code of 255 means the connection layer failed; anything else is
    the remote command's own exit status.
    """

    def __init__(self, message: str, host: str = None,
                 exit_code: int = EXIT_CONNECTION_FAILURE, stderr: str = ""):
        self.stderr = stderr
        super().__init__(message, host=host, exit_code=exit_code)

    @property
    def connection_failed(self) -> bool:
        return self.exit_code == EXIT_CONNECTION_FAILURE


class ConnectivityError(TransportError):
    """Network or authentication failure reaching a host."""

    def __init__(self, message: str, host: str = None, stderr: str = "",
                 retry_possible: bool = False, remediation: str = None):
        self.retry_possible = retry_possible
        self.remediation = remediation
        super().__init__(message, host=host, exit_code=EXIT_CONNECTION_FAILURE, stderr=stderr)


class ProtocolError(RepoVaultError):
    """Remote answered, but not as a recognized instance or dialect."""

    def __init__(self, message: str, host: str = None, exit_code: int = EXIT_NOT_RECOGNIZED):
        super().__init__(message, host=host, exit_code=exit_code)


# === NODE-LOCAL ERRORS ===

class QuiescenceTimeoutError(RepoVaultError):
    """Maintenance processes were still running after the cooldown budget."""

    def __init__(self, host: str, budget: int):
        self.budget = budget
        super().__init__(
            f"Maintenance processes remain on {host} after {budget} seconds. Aborting...",
            host=host,
            exit_code=EXIT_FAILURE,
        )

    # Internal status the drain step reports; never used as the process exit code
    status_code = EXIT_QUIESCENCE_TIMEOUT


class TransferError(RepoVaultError):
    """A transfer phase's sync tool returned non-zero for a node."""

    def __init__(self, message: str, host: str = None, phase: str = None, sync_exit_code: int = None):
        self.phase = phase
        self.sync_exit_code = sync_exit_code
        super().__init__(message, host=host, exit_code=EXIT_FAILURE)
