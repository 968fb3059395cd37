# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.15
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/core/pipeline.py

"""Per-node transfer of repository data, one phase at a time."""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from repovault.config.manager import BackupConfig
from repovault.storage.rsync import RsyncTool, SyncRequest
from repovault.storage.transport import Endpoint, SSHTransport
from repovault.system.exceptions import BackupInterrupted
from .phases import PHASE_ORDER, TransferPhase


@dataclass
class PhaseResult:
    phase: TransferPhase
    exit_code: int
    files_transferred: Optional[int] = None
    seconds: float = 0.0


@dataclass
class NodeTransferResult:
    """Outcome of all phases for one node."""
    host: str
    phases: list[PhaseResult] = field(default_factory=list)
    failed_phase: Optional[TransferPhase] = None
    exit_code: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.failed_phase is None and self.exit_code == 0

    @property
    def completed_phases(self) -> list[TransferPhase]:
        return [result.phase for result in self.phases if result.exit_code == 0]


class TransferPipeline:
    """Runs the ordered phases for a node against one snapshot."""

    def __init__(self, transport: SSHTransport, sync_tool: RsyncTool, config: BackupConfig) -> None:
        self.transport = transport
        self.sync_tool = sync_tool
        self.config = config

    def source_for(self, endpoint: Endpoint) -> str:
        return f"{endpoint.hostname}:{self.config.remote_repositories_dir}/"

    def transfer_node(self, endpoint: Endpoint, snapshot_dir: Path,
                      link_dest: Optional[Path] = None) -> NodeTransferResult:
        """Transfer every phase in order; stop at the first failing phase.

        Args:
            endpoint: Node to read from
            snapshot_dir: Destination repositories/ directory of the new snapshot
            link_dest: Previous snapshot's repositories/ directory, if any

        Returns:
            NodeTransferResult naming the failed phase, if one failed. Output
            of phases that already completed is left in place.
        """
        result = NodeTransferResult(host=endpoint.address)
        remote_shell = self.transport.ssh_command(endpoint)

        for phase in PHASE_ORDER:
            logger.info(f"* [{endpoint.hostname}] Transferring {phase.label} ...")
            started = time.monotonic()
            try:
                outcome = self.sync_tool.sync(SyncRequest(
                    source=self.source_for(endpoint),
                    destination=snapshot_dir,
                    rules=phase.rules,
                    link_dest=link_dest,
                    compress=phase.compress,
                    hard_links=phase.preserve_hard_links,
                    remote_shell=remote_shell,
                    label=f"{endpoint.hostname} {phase.label}",
                ))
            except BackupInterrupted:
                raise
            except Exception as e:
                # Local faults (missing rsync, unwritable destination) fail this node only
                result.phases.append(PhaseResult(phase=phase, exit_code=1,
                                                 seconds=time.monotonic() - started))
                result.failed_phase = phase
                result.exit_code = 1
                result.error = f"{type(e).__name__}: {e}"
                logger.error(f"[{endpoint.hostname}] {phase.label} could not run: {result.error}")
                return result
            result.phases.append(PhaseResult(
                phase=phase,
                exit_code=outcome.exit_code,
                files_transferred=outcome.files_transferred,
                seconds=time.monotonic() - started,
            ))

            if not outcome.ok:
                result.failed_phase = phase
                result.exit_code = outcome.exit_code
                result.error = outcome.stderr.strip()
                logger.error(f"[{endpoint.hostname}] {phase.label} failed with exit code {outcome.exit_code}")
                return result

        logger.info(f"[{endpoint.hostname}] all phases transferred")
        return result
