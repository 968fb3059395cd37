# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.16
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/fixtures/fakes.py

"""
In-memory stand-ins for the remote side of a backup.

FakeCluster answers the commands and scripts repovault sends to appliance
hosts, keeping track of which nodes hold a maintenance marker. FakeSyncTool
records every sync request and writes a small file per phase so tests can
check what landed in a snapshot.
"""

import threading
import time
from collections import Counter
from pathlib import Path
from typing import Optional

from repovault.core.phases import PHASE_ORDER, TransferPhase
from repovault.storage.rsync import SyncOutcome, SyncRequest
from repovault.storage.transport import Endpoint, RemoteResult
from repovault.system.exceptions import BackupInterrupted, MisuseError

OK = RemoteResult("", "", 0)


class ScriptedTransport:
    """Returns queued replies in order; a queued exception is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[Endpoint, str, str]] = []

    def _next(self, endpoint: Endpoint, kind: str, text: str) -> RemoteResult:
        self.calls.append((endpoint, kind, text))
        if not self.replies:
            raise AssertionError(f"Unexpected {kind} to {endpoint.address}: {text!r}")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def run(self, endpoint: Endpoint, command: str) -> RemoteResult:
        return self._next(endpoint, "run", command)

    def run_script(self, endpoint: Endpoint, script: str) -> RemoteResult:
        return self._next(endpoint, "script", script)

    @property
    def ports(self) -> list[int]:
        return [endpoint.port for endpoint, _, _ in self.calls]


class FakeCluster:
    """A primary appliance plus storage nodes, answering over a fake transport.

    busy_polls maps a node hostname to how many maintenance checks report a
    gc/repack still running before the node goes quiet. chown_failures names
    nodes whose acquire script creates the marker and then fails;
    release_interrupts names nodes where removing the marker is cut short by
    an interruption.
    """

    def __init__(self, nodes=("git-server-1", "git-server-2"), version: str = "3.9.0",
                 busy_polls: dict = None, acquire_failures=(), release_failures=(),
                 chown_failures=(), release_interrupts=()):
        self.nodes = list(nodes)
        self.version = version
        self.busy_polls = dict(busy_polls or {})
        self.acquire_failures = set(acquire_failures)
        self.release_failures = set(release_failures)
        self.chown_failures = set(chown_failures)
        self.release_interrupts = set(release_interrupts)
        self.markers: set[str] = set()
        self.acquired = Counter()
        self.released = Counter()
        self.checks = Counter()
        self.released_at: dict[str, float] = {}
        self.tunnels: dict[Endpoint, Endpoint] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.closed = False
        self._lock = threading.Lock()

    # ---- transport interface ----

    def run(self, endpoint: Endpoint, command: str) -> RemoteResult:
        if "|" in command or ";" in command:
            raise MisuseError(f"pipeline through run(): {command!r}", host=endpoint.address)
        host = endpoint.hostname
        with self._lock:
            self.calls.append((host, "run", command))
            if command.startswith("ghe-negotiate-version"):
                return RemoteResult(f"GitHub Enterprise Server version {self.version}\n", "", 0)
            if command.startswith("ghe-cluster-nodes"):
                return RemoteResult("".join(f"{node}\n" for node in self.nodes), "", 0)
            if command.startswith("sudo rm -f"):
                self.released[host] += 1
                self.released_at[host] = time.monotonic()
                if host in self.release_interrupts:
                    self.release_interrupts.discard(host)
                    raise BackupInterrupted("Received SIGTERM", host=endpoint.address)
                if host in self.release_failures:
                    return RemoteResult("", "rm: cannot remove: Read-only file system\n", 1)
                self.markers.discard(host)
                return OK
        return RemoteResult("", f"bash: {command.split()[0]}: command not found\n", 127)

    def run_script(self, endpoint: Endpoint, script: str) -> RemoteResult:
        host = endpoint.hostname
        with self._lock:
            self.calls.append((host, "script", script))
            if "sudo touch" in script:
                self.acquired[host] += 1
                if host in self.acquire_failures:
                    return RemoteResult("", "sudo: a terminal is required\n", 1)
                self.markers.add(host)
                if host in self.chown_failures:
                    return RemoteResult("", "chown: invalid user: 'git:git'\n", 1)
                return OK
            if "ps axo args" in script:
                self.checks[host] += 1
                remaining = self.busy_polls.get(host, 0)
                if remaining > 0:
                    self.busy_polls[host] = remaining - 1
                    return RemoteResult("", "", 3)
                return OK
        return RemoteResult("", "unexpected script\n", 1)

    def forward(self, endpoint: Endpoint, via: Endpoint) -> None:
        self.tunnels[endpoint] = via

    def ssh_command(self, endpoint: Endpoint) -> list[str]:
        return ["ssh", "-p", str(endpoint.port), "-l", endpoint.user]

    def close(self) -> None:
        self.closed = True


def phase_for(request: SyncRequest) -> TransferPhase:
    for phase in PHASE_ORDER:
        if tuple(request.rules) == phase.rules:
            return phase
    raise AssertionError(f"Sync request matches no phase: {request.label}")


class FakeSyncTool:
    """Records sync requests.

    failures maps (hostname, phase) to an exit code and errors maps it to an
    exception raised instead of running. delay is slept before every phase.
    """

    def __init__(self, failures: dict = None, interrupt_on: Optional[tuple] = None,
                 errors: dict = None, delay: float = 0.0):
        self.failures = dict(failures or {})
        self.interrupt_on = interrupt_on
        self.errors = dict(errors or {})
        self.delay = delay
        self.requests: list[SyncRequest] = []
        self.finished_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def sync(self, request: SyncRequest) -> SyncOutcome:
        host = request.source.split(":", 1)[0]
        phase = phase_for(request)
        with self._lock:
            self.requests.append(request)
        if self.interrupt_on == (host, phase):
            raise KeyboardInterrupt()
        if (host, phase) in self.errors:
            raise self.errors[(host, phase)]
        if self.delay:
            time.sleep(self.delay)

        exit_code = self.failures.get((host, phase), 0)
        if exit_code:
            return SyncOutcome(exit_code=exit_code, stderr=f"rsync error: code {exit_code}\n")

        landed = Path(request.destination) / host
        landed.mkdir(parents=True, exist_ok=True)
        (landed / phase.name.lower()).write_text(request.source)
        with self._lock:
            self.finished_at[host] = time.monotonic()
        return SyncOutcome(exit_code=0, files_transferred=1)

    def phases_for(self, host: str) -> list[TransferPhase]:
        return [phase_for(r) for r in self.requests if r.source.startswith(f"{host}:")]
