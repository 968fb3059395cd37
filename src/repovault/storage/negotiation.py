# Author: PB & Claude
# Maintainer: PB
# Original date: 2025-06-13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/negotiation.py

"""
Host check and protocol version negotiation with the primary appliance.

Two dialects are supported. Current appliances answer a negotiation command
with a "<Product> version <semver>" line; older ones lack the command (exit
127) and are identified by reading their metadata file instead. Both parsers
return the same NegotiationResult.
"""

import re
import shlex
from enum import Enum
from typing import Optional

import orjson
from loguru import logger
from pydantic import BaseModel

from repovault import __version__
from repovault.config.manager import BackupConfig
from repovault.system.exceptions import (
    ConnectivityError, ProtocolError, TransportError,
    EXIT_OK, EXIT_FAILURE, EXIT_VERSION_UNPARSABLE, EXIT_NOT_RECOGNIZED,
    EXIT_COMMAND_NOT_FOUND, EXIT_CONNECTION_FAILURE,
)
from .transport import Endpoint, RemoteResult, SSHTransport

ALTERNATE_PORT = 122

# ssh errors that mean "nothing is listening here", worth one try on the admin port
REFUSAL_SIGNATURES = (
    "connection refused",
    "no route to host",
    "connection timed out during banner exchange",
    "connection closed by remote host",
)
_USE_ALTERNATE_PORT = re.compile(rf"use port {ALTERNATE_PORT}", re.IGNORECASE)

_CURRENT_VERSION_LINE = re.compile(
    r"^\s*(?P<product>\S.*?)\s+version\s+v?(?P<version>\d+(?:\.\d+)+\S*)\s*$"
)
_LEGACY_VERSION_FIELD = re.compile(r'"version"\s*:\s*"(?P<version>[^"]*)"')


class Dialect(str, Enum):
    CURRENT = "current"
    LEGACY = "legacy"


class FailureKind(str, Enum):
    CONNECTIVITY = "connectivity"
    NOT_RECOGNIZED = "not_recognized"
    REJECTED = "rejected"


class NegotiationResult(BaseModel):
    endpoint: Endpoint
    reachable: bool
    dialect: Optional[Dialect] = None
    version: Optional[str] = None
    product: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    exit_code: int = EXIT_OK
    remediation: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure_kind is None

    @property
    def summary(self) -> str:
        """The one-line confirmation other tooling greps for."""
        return f"Connect {self.endpoint.address} OK (v{self.version})"

    def raise_for_failure(self) -> "NegotiationResult":
        if self.ok:
            return self
        if self.failure_kind is FailureKind.CONNECTIVITY:
            raise ConnectivityError(self.message, host=self.endpoint.address,
                                    remediation=self.remediation)
        raise ProtocolError(self.message, host=self.endpoint.address, exit_code=self.exit_code)


def parse_current(stdout: str) -> tuple[Optional[str], Optional[str]]:
    """Return (product, version) from a negotiation reply, or (None, None)."""
    for line in stdout.splitlines():
        match = _CURRENT_VERSION_LINE.match(line)
        if match:
            return match.group("product"), match.group("version")
    return None, None


def parse_legacy(stdout: str) -> tuple[Optional[str], Optional[str]]:
    """Return (product, version) from a legacy metadata blob, or (None, None)."""
    version = None
    try:
        data = orjson.loads(stdout)
        if isinstance(data, dict) and isinstance(data.get("version"), str):
            version = data["version"]
    except orjson.JSONDecodeError:
        match = _LEGACY_VERSION_FIELD.search(stdout)
        if match:
            version = match.group("version")
    if version:
        version = version.strip().lstrip("v")
    return (None, version) if version else (None, None)


PARSERS = {
    Dialect.CURRENT: parse_current,
    Dialect.LEGACY: parse_legacy,
}


class HostNegotiator:
    """Validate that an endpoint is a reachable appliance and learn its dialect."""

    def __init__(self, transport: SSHTransport, config: BackupConfig) -> None:
        self.transport = transport
        self.config = config

    def _negotiate_command(self) -> str:
        return self.config.negotiate_command.format(version=__version__)

    def _legacy_script(self) -> str:
        path = shlex.quote(self.config.legacy_metadata_path)
        return (
            f"if [ -r {path} ]; then\n"
            f"  cat {path}\n"
            "else\n"
            f"  exit {EXIT_NOT_RECOGNIZED}\n"
            "fi\n"
        )

    def _exchange(self, endpoint: Endpoint) -> tuple[Dialect, RemoteResult]:
        try:
            result = self.transport.run(endpoint, self._negotiate_command())
            if result.exit_code != EXIT_COMMAND_NOT_FOUND:
                return Dialect.CURRENT, result
            logger.debug(f"{endpoint.address} has no negotiation command; using legacy dialect")
            return Dialect.LEGACY, self.transport.run_script(endpoint, self._legacy_script())
        except TransportError as e:
            if not e.connection_failed:
                raise
            return Dialect.CURRENT, RemoteResult("", e.stderr, e.exit_code)

    def negotiate(self, endpoint: Endpoint, allow_port_fallback: bool = True) -> NegotiationResult:
        """Negotiate with `endpoint`, retrying once on the admin port if told to."""
        dialect, result = self._exchange(endpoint)
        output = f"{result.stdout}\n{result.stderr}"

        def failed(kind: FailureKind, message: str, exit_code: int, **extra) -> NegotiationResult:
            logger.debug(f"Negotiation with {endpoint.address} failed ({kind.value}): {message}")
            return NegotiationResult(endpoint=endpoint, reachable=kind is not FailureKind.CONNECTIVITY,
                                     dialect=dialect, failure_kind=kind, message=message,
                                     exit_code=exit_code, **extra)

        def retry_on_alternate_port() -> NegotiationResult:
            alternate = endpoint.with_port(ALTERNATE_PORT)
            logger.info(f"Retrying {endpoint.hostname} on port {ALTERNATE_PORT}")
            return self.negotiate(alternate, allow_port_fallback=False)

        can_retry = allow_port_fallback and endpoint.port != ALTERNATE_PORT

        if result.exit_code == EXIT_CONNECTION_FAILURE:
            if can_retry and any(sig in result.stderr.lower() for sig in REFUSAL_SIGNATURES):
                return retry_on_alternate_port()
            return failed(
                FailureKind.CONNECTIVITY,
                f"Error: ssh connection with '{endpoint.address}' failed: {result.stderr.strip()}",
                EXIT_CONNECTION_FAILURE,
                remediation=(
                    f"Check that this machine's SSH public key is authorized for "
                    f"'{endpoint.user}' on {endpoint.hostname} and that port {endpoint.port} is reachable."
                ),
            )

        if result.exit_code == EXIT_NOT_RECOGNIZED:
            return failed(
                FailureKind.NOT_RECOGNIZED,
                f"Error: {endpoint.address} not a recognized instance (fingerprint unreadable).",
                EXIT_NOT_RECOGNIZED,
            )

        if result.exit_code == EXIT_FAILURE and can_retry and _USE_ALTERNATE_PORT.search(output):
            return retry_on_alternate_port()

        if result.exit_code != EXIT_OK:
            relayed = (result.stderr.strip() or result.stdout.strip() or "no output")
            return failed(
                FailureKind.REJECTED,
                f"Error: {endpoint.address} rejected version negotiation (exit {result.exit_code}): {relayed}",
                result.exit_code,
            )

        product, version = PARSERS[dialect](result.stdout)
        if not version:
            return failed(
                FailureKind.NOT_RECOGNIZED,
                f"Error: failed to parse version on '{endpoint.address}' or this isn't a recognized instance.",
                EXIT_VERSION_UNPARSABLE,
            )

        negotiated = NegotiationResult(endpoint=endpoint, reachable=True, dialect=dialect,
                                       version=version, product=product)
        logger.info(negotiated.summary)
        return negotiated
