# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.15
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/core/orchestrator.py

"""
Cluster repository backup.

Control flow of one run:

1. Negotiate with the primary; connectivity or protocol failures stop the run
   before any node is touched.
2. Ask the primary for the live storage nodes and route each through it.
3. Create the snapshot directory.
4. Suspend maintenance on every node and wait for it to drain.
5. Transfer each node's phases (nodes in parallel, phases in order).
6. Mark the snapshot complete only if every phase on every node succeeded.

Maintenance is re-enabled on every node that was suspended, whichever way
the run ends.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from repovault.config.manager import BackupConfig
from repovault.storage.negotiation import HostNegotiator, NegotiationResult
from repovault.storage.rsync import RsyncTool
from repovault.storage.snapshots import SnapshotManager
from repovault.storage.topology import ClusterTopology
from repovault.storage.transport import Endpoint, SSHTransport
from repovault.system.exceptions import BackupInterrupted, RepoVaultError, TransferError
from .pipeline import NodeTransferResult, TransferPipeline
from .quiescence import QuiescenceCoordinator


@dataclass
class BackupReport:
    primary: Optional[str] = None
    negotiation: Optional[NegotiationResult] = None
    snapshot_id: Optional[str] = None
    snapshot_dir: Optional[Path] = None
    incremental: bool = False
    nodes: list[str] = field(default_factory=list)
    transfers: dict[str, NodeTransferResult] = field(default_factory=dict)
    complete: bool = False

    @property
    def failed_nodes(self) -> list[NodeTransferResult]:
        return [self.transfers[host] for host in self.nodes
                if host in self.transfers and not self.transfers[host].ok]


class BackupOrchestrator:
    """Backs up every storage node of one cluster into a new snapshot."""

    def __init__(self, config: BackupConfig,
                 transport: SSHTransport = None,
                 negotiator: HostNegotiator = None,
                 topology: ClusterTopology = None,
                 pipeline: TransferPipeline = None,
                 snapshots: SnapshotManager = None,
                 coordinator_factory: Callable[[], QuiescenceCoordinator] = None,
                 on_negotiated: Callable[[NegotiationResult], None] = None) -> None:
        self.config = config
        self._owns_transport = transport is None
        self.transport = transport or SSHTransport(config)
        self.negotiator = negotiator or HostNegotiator(self.transport, config)
        self.topology = topology or ClusterTopology(self.transport, config)
        self.pipeline = pipeline or TransferPipeline(self.transport, RsyncTool(config), config)
        self.snapshots = snapshots or SnapshotManager(config.data_dir)
        self.coordinator_factory = coordinator_factory or (
            lambda: QuiescenceCoordinator(self.transport, config)
        )
        self.on_negotiated = on_negotiated
        self.report = BackupReport()

    def __enter__(self) -> "BackupOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_transport:
            self.transport.close()

    def run(self, snapshot_id: str = None) -> BackupReport:
        """Run one backup.

        Returns:
            The report of a run in which every node transferred every phase

        Raises:
            ConnectivityError, ProtocolError: primary unusable; nothing was touched
            QuiescenceTimeoutError, TransportError: a node could not be quiesced
            TransferError: a node's phase failed; the snapshot stays incomplete
        """
        self.report = report = BackupReport()

        primary = Endpoint.parse(self.config.hostname)
        negotiation = self.negotiator.negotiate(primary).raise_for_failure()
        # Negotiation may have moved us to the admin port
        primary = negotiation.endpoint
        report.primary = primary.address
        report.negotiation = negotiation
        if self.on_negotiated is not None:
            self.on_negotiated(negotiation)

        nodes = self.topology.list_nodes(primary)
        if not nodes:
            logger.warning(f"No {self.config.storage_role} nodes on {primary.hostname}; nothing to back up")
            report.complete = True
            return report

        endpoints = [self.topology.node_endpoint(primary, node) for node in nodes]
        report.nodes = [endpoint.address for endpoint in endpoints]

        report.snapshot_id = snapshot_id or self.snapshots.new_snapshot_id()
        report.snapshot_dir = self.snapshots.create(report.snapshot_id)
        link_dest = self.snapshots.link_dest()
        report.incremental = link_dest is not None
        if link_dest is None:
            logger.info("No previous snapshot; transferring everything")
        else:
            logger.info(f"Hard-linking unchanged files from {link_dest}")

        with self.coordinator_factory() as coordinator:
            coordinator.quiesce_all(endpoints)
            self._transfer_all(endpoints, report.snapshot_dir, link_dest, report)

        failures = report.failed_nodes
        if failures:
            for failed in failures:
                logger.error(f"{failed.host}: {self._describe_failure(failed)}")
            first = failures[0]
            raise TransferError(
                f"Backup of {first.host} failed: {self._describe_failure(first)}",
                host=first.host,
                phase=first.failed_phase.label if first.failed_phase else None,
                sync_exit_code=first.exit_code,
            )

        self.snapshots.mark_complete(report.snapshot_id, self._metadata(report))
        report.complete = True
        return report

    @staticmethod
    def _describe_failure(result: NodeTransferResult) -> str:
        if result.failed_phase is not None:
            message = f"{result.failed_phase.label} transfer failed with exit code {result.exit_code}"
            detail = result.error.strip().splitlines()[-1] if result.error.strip() else ""
            return f"{message}: {detail}" if detail else message
        return result.error or f"transfer failed with exit code {result.exit_code}"

    def _transfer_all(self, endpoints: list[Endpoint], snapshot_dir: Path,
                      link_dest: Optional[Path], report: BackupReport) -> None:
        """One transfer per node; every node's result is collected."""
        workers = min(len(endpoints), self.config.max_parallel or len(endpoints))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transfer")
        try:
            futures = {
                endpoint: pool.submit(self.pipeline.transfer_node, endpoint, snapshot_dir, link_dest)
                for endpoint in endpoints
            }
            for endpoint, future in futures.items():
                try:
                    report.transfers[endpoint.address] = future.result()
                except BackupInterrupted:
                    raise
                except RepoVaultError as e:
                    report.transfers[endpoint.address] = NodeTransferResult(
                        host=endpoint.address, exit_code=e.exit_code or 1, error=str(e)
                    )
                except Exception as e:
                    report.transfers[endpoint.address] = NodeTransferResult(
                        host=endpoint.address, exit_code=1, error=f"{type(e).__name__}: {e}"
                    )
        except BaseException:
            # Interrupted: don't start queued nodes or wait on running rsyncs
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    def _metadata(self, report: BackupReport) -> dict:
        negotiation = report.negotiation
        return {
            "primary": report.primary,
            "version": negotiation.version if negotiation else None,
            "dialect": negotiation.dialect.value if negotiation and negotiation.dialect else None,
            "incremental": report.incremental,
            "nodes": {
                host: {
                    "phases": [result.phase.name.lower() for result in report.transfers[host].phases],
                    "files_transferred": sum(result.files_transferred or 0
                                             for result in report.transfers[host].phases),
                }
                for host in report.nodes
            },
        }
