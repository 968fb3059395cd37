# Author: PB & Claude
# Maintainer: PB
# Original date: 2025-06-13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/transport.py

"""
Remote command channel to appliance hosts.

Commands run over paramiko. rsync cannot share a paramiko session, so the
transport also renders the equivalent OpenSSH remote-shell command, plus a
process-local ssh_config holding the ProxyCommand routes for nodes that are
only reachable through the primary.
"""

import errno
import os
import re
import shlex
import socket
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from repovault.config.manager import BackupConfig
from repovault.system.exceptions import (
    MisuseError, TransportError, EXIT_CONNECTION_FAILURE
)

DEFAULT_PORT = 22
DEFAULT_USER = "admin"

# Characters that mean the caller wanted a pipeline, not a single command
_PIPELINE_CHARS = re.compile(r"[|;]")


class Endpoint(BaseModel):
    """A resolved host:port/user triple. Immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    alias: str
    hostname: str
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    user: str = DEFAULT_USER

    @classmethod
    def parse(cls, token: str, default_port: int = DEFAULT_PORT,
              default_user: str = DEFAULT_USER) -> "Endpoint":
        """Split a "user@host:port" token; user and port are optional."""
        rest = token.strip()
        user = default_user
        if "@" in rest:
            user, rest = rest.split("@", 1)
            if not user:
                raise ValueError(f"Empty user in host token {token!r}")

        port = default_port
        host = rest
        if ":" in rest:
            host, port_text = rest.rsplit(":", 1)
            if not port_text.isdigit():
                raise ValueError(f"Invalid port {port_text!r} in host token {token!r}")
            port = int(port_text)

        if not host:
            raise ValueError(f"Empty hostname in host token {token!r}")
        return cls(alias=host, hostname=host, port=port, user=user)

    def with_port(self, port: int) -> "Endpoint":
        return self.model_copy(update={"port": port})

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"

    def __str__(self) -> str:
        return self.address


class RemoteResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class Tunnel:
    """Proxy hop description: reach `target` by tunnelling through `via`."""
    target: Endpoint
    via: Endpoint
    proxy_command: str  # OpenSSH form, with %h and %p placeholders

    def command_for(self, endpoint: Endpoint) -> str:
        return self.proxy_command.replace("%h", endpoint.hostname).replace("%p", str(endpoint.port))


def describe_connect_failure(endpoint: Endpoint, exc: BaseException) -> str:
    """Render a connection failure the way an ssh client would report it."""
    prefix = f"ssh: connect to host {endpoint.hostname} port {endpoint.port}"
    if isinstance(exc, paramiko.AuthenticationException):
        return f"{endpoint.user}@{endpoint.hostname}: Permission denied (publickey)."
    if isinstance(exc, NoValidConnectionsError):
        codes = {getattr(err, "errno", None) for err in exc.errors.values()}
        if errno.ECONNREFUSED in codes:
            return f"{prefix}: Connection refused"
        if errno.EHOSTUNREACH in codes or errno.ENETUNREACH in codes:
            return f"{prefix}: No route to host"
        return f"{prefix}: {exc}"
    if isinstance(exc, ConnectionRefusedError):
        return f"{prefix}: Connection refused"
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return f"{prefix}: Connection timed out"
    if isinstance(exc, OSError) and exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
        return f"{prefix}: No route to host"
    if isinstance(exc, socket.gaierror):
        return f"ssh: Could not resolve hostname {endpoint.hostname}: {exc}"
    if isinstance(exc, paramiko.SSHException) and "banner" in str(exc).lower():
        return f"Connection timed out during banner exchange with {endpoint.address}"
    return f"{prefix}: {exc}"


class SSHTransport:
    """Authenticated remote command execution with optional bastion hops."""

    def __init__(self, config: BackupConfig) -> None:
        self.config = config
        self._clients: dict[Endpoint, paramiko.SSHClient] = {}
        self._tunnels: dict[Endpoint, Tunnel] = {}
        self._lock = threading.RLock()
        self._ssh_config_path: Optional[Path] = None
        self._ssh_config_stale = True

    def __enter__(self) -> "SSHTransport":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ---- command execution ----

    def run(self, endpoint: Endpoint, command: str) -> RemoteResult:
        """Run a single command. Pipelines must go through run_script()."""
        if _PIPELINE_CHARS.search(command) or len(command.strip().splitlines()) > 1:
            raise MisuseError(
                "Attempt to invoke complex command with simple command form; "
                f"use run_script() instead: {command!r}",
                host=endpoint.address,
            )
        return self._exec(endpoint, command)

    def run_script(self, endpoint: Endpoint, script: str) -> RemoteResult:
        """Run a pre-composed multi-statement script body with /bin/bash."""
        return self._exec(endpoint, "/bin/bash", stdin_text=script)

    def _exec(self, endpoint: Endpoint, command: str, stdin_text: str = None) -> RemoteResult:
        client = self._client(endpoint)
        logger.debug(f"[{endpoint.address}] exec: {command}")
        try:
            stdin, stdout, stderr = client.exec_command(command)
            if stdin_text is not None:
                stdin.write(stdin_text)
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            self._drop_client(endpoint)
            raise TransportError(
                f"Lost connection to {endpoint.address}: {e}",
                host=endpoint.address,
                stderr=str(e),
            )

        if exit_code < 0:
            # Channel closed without an exit status
            exit_code = EXIT_CONNECTION_FAILURE
        logger.debug(f"[{endpoint.address}] exit {exit_code}")
        return RemoteResult(out, err, exit_code)

    # ---- connections ----

    def _client(self, endpoint: Endpoint) -> paramiko.SSHClient:
        with self._lock:
            client = self._clients.get(endpoint)
        if client is not None:
            transport = client.get_transport()
            if transport is not None and transport.is_active():
                return client
            self._drop_client(endpoint)

        # Connect outside the lock so nodes don't queue behind each other
        client = self._connect(endpoint)
        with self._lock:
            existing = self._clients.get(endpoint)
            if existing is None:
                self._clients[endpoint] = client
                return client
        client.close()
        return existing

    def _drop_client(self, endpoint: Endpoint) -> None:
        with self._lock:
            client = self._clients.pop(endpoint, None)
        if client is not None:
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing connection to {endpoint.address}: {e}")

    def _connect(self, endpoint: Endpoint) -> paramiko.SSHClient:
        """Connect without ever prompting; keys and agent only."""
        connect_kwargs = {
            "hostname": endpoint.hostname,
            "port": endpoint.port,
            "username": endpoint.user,
            "timeout": self.config.connect_timeout,
            "banner_timeout": self.config.connect_timeout,
            "auth_timeout": self.config.connect_timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.config.identity_file:
            connect_kwargs["key_filename"] = str(self.config.identity_file)

        tunnel = self._tunnels.get(endpoint)
        last_error: BaseException | None = None
        for attempt in range(1, self.config.connection_attempts + 1):
            client = paramiko.SSHClient()
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            if tunnel is not None:
                connect_kwargs["sock"] = paramiko.ProxyCommand(tunnel.command_for(endpoint))
            try:
                client.connect(**connect_kwargs)
                logger.debug(f"Established SSH connection to {endpoint.user}@{endpoint.address}"
                             + (f" via {tunnel.via.address}" if tunnel else ""))
                return client
            except paramiko.AuthenticationException as e:
                client.close()
                last_error = e
                break  # retrying won't fix credentials
            except (OSError, paramiko.SSHException) as e:
                client.close()
                last_error = e
                logger.debug(f"Connection attempt {attempt} to {endpoint.address} failed: {e}")

        diagnosis = describe_connect_failure(endpoint, last_error)
        raise TransportError(
            f"SSH connection to {endpoint.address} failed: {diagnosis}",
            host=endpoint.address,
            exit_code=EXIT_CONNECTION_FAILURE,
            stderr=diagnosis,
        )

    # ---- routing for rsync and proxied nodes ----

    def _ssh_base_args(self) -> list[str]:
        args = [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(self.config.connect_timeout)}",
            "-o", f"ConnectionAttempts={self.config.connection_attempts}",
        ]
        if self.config.identity_file:
            args += ["-i", str(self.config.identity_file)]
        for option in self.config.ssh_options:
            args += ["-o", option]
        return args

    def forward(self, endpoint: Endpoint, via: Endpoint) -> Tunnel:
        """Route later connections to `endpoint` through `via`."""
        with self._lock:
            existing = self._tunnels.get(endpoint)
            if existing is not None and existing.via == via:
                return existing

            proxy = ["ssh", "-q", "-W", "%h:%p", "-p", str(via.port), "-l", via.user]
            proxy += self._ssh_base_args()
            proxy.append(via.hostname)
            tunnel = Tunnel(target=endpoint, via=via, proxy_command=shlex.join(proxy))
            self._tunnels[endpoint] = tunnel
            self._ssh_config_stale = True
            logger.debug(f"Routing {endpoint.address} through {via.address}")
            return tunnel

    def tunnel_for(self, endpoint: Endpoint) -> Optional[Tunnel]:
        return self._tunnels.get(endpoint)

    def ssh_config_file(self) -> Path:
        """Write (or refresh) the generated ssh_config for proxied hosts."""
        with self._lock:
            if self._ssh_config_path is None:
                fd, name = tempfile.mkstemp(prefix="repovault-ssh-", suffix=".config")
                os.close(fd)
                self._ssh_config_path = Path(name)
            if self._ssh_config_stale:
                blocks = []
                for endpoint, tunnel in self._tunnels.items():
                    blocks.append(
                        f"Host {endpoint.alias}\n"
                        f"  HostName {endpoint.hostname}\n"
                        f"  ProxyCommand {tunnel.proxy_command}\n"
                        "  StrictHostKeyChecking no\n"
                    )
                self._ssh_config_path.write_text("\n".join(blocks), encoding="utf-8")
                self._ssh_config_stale = False
            return self._ssh_config_path

    def ssh_command(self, endpoint: Endpoint) -> list[str]:
        """OpenSSH argv equivalent to this transport, for rsync's -e."""
        cmd = ["ssh", "-p", str(endpoint.port), "-l", endpoint.user]
        cmd += self._ssh_base_args()
        if self.config.verbose_ssh:
            cmd.append("-v")
        if endpoint in self._tunnels:
            cmd += ["-F", str(self.ssh_config_file())]
        return cmd

    def close(self) -> None:
        """Close cached connections and remove the generated ssh_config."""
        with self._lock:
            endpoints = list(self._clients)
        for endpoint in endpoints:
            self._drop_client(endpoint)
        if self._ssh_config_path is not None:
            try:
                self._ssh_config_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove {self._ssh_config_path}: {e}")
            self._ssh_config_path = None
            self._ssh_config_stale = True
