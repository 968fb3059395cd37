# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.07
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/core/quiescence.py

"""
Suspension of destructive repository maintenance during a backup.

On each node a marker file tells the appliance's gc/repack jobs not to start.
Jobs already running are waited out, up to a cooldown budget. Markers are
removed when the coordinator's block exits, however it exits: a node must
never be left with maintenance permanently disabled.

Usage as context manager:
    with QuiescenceCoordinator(transport, config) as coordinator:
        coordinator.quiesce_all(endpoints)
        # transfer while maintenance is suspended
"""

import shlex
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from repovault.config.manager import BackupConfig
from repovault.storage.rsync import MARKER_NAME
from repovault.storage.transport import Endpoint, SSHTransport
from repovault.system.exceptions import (
    BackupInterrupted, QuiescenceTimeoutError, TransportError
)

# Exit status of the check script while a maintenance process is running
MAINTENANCE_ACTIVE = 3


class LeaseState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    GRANTED = "granted"
    DRAINING = "draining"
    DRAINED = "drained"
    TIMED_OUT = "timed_out"
    RELEASED = "released"


@dataclass
class Lease:
    """Local record of maintenance suspension on one node."""
    endpoint: Endpoint
    state: LeaseState = LeaseState.IDLE
    acquired: bool = False
    released: bool = False
    polls: int = 0

    @property
    def host(self) -> str:
        return self.endpoint.address


class QuiescenceCoordinator:
    """Suspends maintenance on every node and guarantees it is re-enabled."""

    def __init__(self, transport: SSHTransport, config: BackupConfig,
                 sleep: Optional[Callable[[float], None]] = None) -> None:
        self.transport = transport
        self.config = config
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._leases: dict[Endpoint, Lease] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "QuiescenceCoordinator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._stop.set()
        self.release_all()

    @property
    def marker_path(self) -> str:
        return f"{self.config.remote_repositories_dir}/{MARKER_NAME}"

    @property
    def leases(self) -> list[Lease]:
        with self._lock:
            return list(self._leases.values())

    def lease_for(self, endpoint: Endpoint) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(endpoint)

    def stop(self) -> None:
        """Ask in-flight drains to give up at their next poll."""
        self._stop.set()

    # ---- remote scripts ----

    def _acquire_script(self) -> str:
        marker = shlex.quote(self.marker_path)
        directory = shlex.quote(self.config.remote_repositories_dir)
        owner = shlex.quote(f"{self.config.remote_user}:{self.config.remote_user}")
        return (
            "set -e\n"
            f"sudo mkdir -p {directory}\n"
            f"sudo touch {marker}\n"
            f"sudo chown {owner} {marker}\n"
        )

    def _check_script(self) -> str:
        patterns = " ".join(f"-e {shlex.quote(p)}" for p in self.config.maintenance_patterns)
        return (
            f"if ps axo args | grep -E {patterns} >/dev/null; then\n"
            f"  exit {MAINTENANCE_ACTIVE}\n"
            "fi\n"
            "exit 0\n"
        )

    # ---- per-node state machine ----

    def acquire(self, endpoint: Endpoint) -> Lease:
        """Create the remote marker. Failure is fatal for this node."""
        with self._lock:
            if endpoint in self._leases:
                raise RuntimeError(f"Lease for {endpoint.address} already requested")
            lease = Lease(endpoint=endpoint, state=LeaseState.REQUESTED)
            self._leases[endpoint] = lease

        result = self.transport.run_script(endpoint, self._acquire_script())
        if result.exit_code != 0:
            raise TransportError(
                f"Failed to suspend maintenance on {endpoint.address}: {result.stderr.strip()}",
                host=endpoint.address,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        lease.acquired = True
        lease.state = LeaseState.GRANTED
        logger.debug(f"Maintenance suspended on {endpoint.address}")
        return lease

    def drain(self, lease: Lease) -> Lease:
        """Poll until no maintenance process runs, at most cooldown_seconds times."""
        budget = self.config.cooldown_seconds
        lease.state = LeaseState.DRAINING
        check = self._check_script()

        for poll in range(1, budget + 1):
            if self._stop.is_set():
                raise BackupInterrupted(f"Drain on {lease.host} cancelled", host=lease.host)
            lease.polls = poll
            result = self.transport.run_script(lease.endpoint, check)
            if result.exit_code == 0:
                lease.state = LeaseState.DRAINED
                logger.info(f"{lease.host} quiesced after {poll} poll(s)")
                return lease
            if result.exit_code != MAINTENANCE_ACTIVE:
                raise TransportError(
                    f"Maintenance check failed on {lease.host}: {result.stderr.strip()}",
                    host=lease.host,
                    exit_code=result.exit_code,
                    stderr=result.stderr,
                )
            logger.debug(f"{lease.host}: maintenance still running (poll {poll}/{budget})")
            if poll < budget:
                self._sleep(self.config.poll_interval)

        lease.state = LeaseState.TIMED_OUT
        raise QuiescenceTimeoutError(lease.host, budget)

    def _quiesce_one(self, endpoint: Endpoint) -> Lease:
        if self._stop.is_set():
            raise BackupInterrupted(f"Quiescence of {endpoint.address} cancelled", host=endpoint.address)
        return self.drain(self.acquire(endpoint))

    def quiesce_all(self, endpoints: list[Endpoint]) -> list[Lease]:
        """Acquire and drain all nodes concurrently; raise the first failure."""
        if not endpoints:
            return []

        workers = min(len(endpoints), self.config.max_parallel or len(endpoints))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quiesce") as pool:
            futures = {pool.submit(self._quiesce_one, endpoint): endpoint for endpoint in endpoints}
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                # Leaving the pool waits for running drains, so no lease is
                # granted after the caller starts releasing.
                self._stop.set()
                for future in futures:
                    future.cancel()
                raise

        return [self._leases[endpoint] for endpoint in endpoints]

    # ---- cleanup ----

    def release(self, lease: Lease) -> bool:
        """Remove the marker once. Returns False if it may still be present.

        A lease is released as soon as its acquire script was sent, even if
        the script failed: the marker may exist from before the failure.
        """
        with self._lock:
            if lease.state is LeaseState.IDLE or lease.released:
                return False
            lease.released = True

        ok = False
        try:
            result = self.transport.run(lease.endpoint, f"sudo rm -f {shlex.quote(self.marker_path)}")
            ok = result.exit_code == 0
            if not ok:
                logger.error(f"Removing {self.marker_path} on {lease.host} exited {result.exit_code}: "
                             f"{result.stderr.strip()}")
        except TransportError as e:
            logger.error(f"Could not re-enable maintenance on {lease.host}: {e}")
        finally:
            lease.state = LeaseState.RELEASED
            if not ok:
                logger.error(f"Maintenance may still be suspended on {lease.host}; "
                             f"remove {self.marker_path} there by hand")

        if ok:
            logger.debug(f"Maintenance re-enabled on {lease.host}")
        return ok

    def release_all(self) -> list[Lease]:
        """Release every lease whose acquire was attempted.

        An interruption while releasing one node does not skip the others;
        it is re-raised after every node has been tried.
        """
        released = []
        interrupted = None
        for lease in self.leases:
            if lease.state is LeaseState.IDLE or lease.released:
                continue
            try:
                self.release(lease)
            except (BackupInterrupted, KeyboardInterrupt) as e:
                interrupted = interrupted or e
            released.append(lease)
        if interrupted is not None:
            raise interrupted
        return released
