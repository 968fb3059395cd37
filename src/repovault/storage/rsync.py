# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/rsync.py

"""
rsync invocation for repository transfers.

The byte-level transfer is rsync's job. This module only decides the flags:
filter rules, the previous-snapshot hard-link hint, compression, hard-link
preservation and the privileged remote rsync.
"""

import contextlib
import re
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Sequence

from loguru import logger

from repovault.config.manager import BackupConfig
from repovault.system.execution import CommandExecutor as ce

MARKER_NAME = ".sync_in_progress"

# "some files vanished before they could be transferred" - expected on a live node
RSYNC_VANISHED = 24

NICE_PREFIX = ("nice", "-n", "19", "ionice", "-c", "3")

_FILES_TRANSFERRED = re.compile(r"Number of regular files transferred:\s*([\d,]+)")


@dataclass
class SyncRequest:
    source: str
    destination: Path
    rules: Sequence[str] = ()
    link_dest: Optional[Path] = None
    compress: bool = True
    hard_links: bool = False
    remote_shell: Optional[list[str]] = None  # None for local sources
    label: str = "sync"


@dataclass
class SyncOutcome:
    exit_code: int
    files_transferred: Optional[int] = None
    stderr: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@contextlib.contextmanager
def create_temp_filter_file(rules: Sequence[str]) -> Iterator[str]:
    """
    Context manager writing rsync filter rules to a temporary merge file.

    Yields:
        str: Path to the temporary file, removed when the context exits
    """
    with tempfile.NamedTemporaryFile(mode='w', delete=True, suffix='.rsync-filter') as temp_file:
        for rule in rules:
            temp_file.write(f"{rule}\n")
        # rsync opens the file by name, so flush before it runs
        temp_file.flush()
        yield temp_file.name


def parse_files_transferred(stdout: str) -> Optional[int]:
    match = _FILES_TRANSFERRED.search(stdout)
    if not match:
        return None
    return int(match.group(1).replace(",", ""))


class RsyncTool:
    """Builds and runs rsync commands for one filtered directory-tree sync."""

    def __init__(self, config: BackupConfig) -> None:
        self.config = config

    def remote_rsync_path(self) -> str:
        """Remote command rsync should start: rsync as the repository owner."""
        parts = ["sudo", "-u", self.config.remote_user]
        if self.config.nice:
            parts += NICE_PREFIX
        parts.append("rsync")
        return " ".join(parts)

    def build_command(self, request: SyncRequest, filter_file: Optional[str] = None) -> list[str]:
        cmd = [self.config.rsync_path, "-a", "--stats", "--numeric-ids"]
        if request.hard_links:
            cmd.append("-H")
        cmd.append("-z" if request.compress else "--no-compress")

        # Markers must never end up in a snapshot
        cmd.append(f"--exclude=/{MARKER_NAME}")
        if filter_file:
            cmd.append(f"--filter=merge {filter_file}")

        if request.link_dest is not None:
            cmd.append(f"--link-dest={request.link_dest}")

        if request.remote_shell:
            cmd += ["-e", shlex.join(request.remote_shell)]
            cmd.append(f"--rsync-path={self.remote_rsync_path()}")

        cmd += [request.source, f"{str(request.destination).rstrip('/')}/"]
        return cmd

    def sync(self, request: SyncRequest) -> SyncOutcome:
        """Run one filtered sync. Non-zero exits are returned, not raised."""
        request.destination.mkdir(parents=True, exist_ok=True)
        with create_temp_filter_file(request.rules) as filter_file:
            cmd = self.build_command(request, filter_file)
            result = ce.run_local(cmd, check=False)

        outcome = SyncOutcome(
            exit_code=result.returncode,
            files_transferred=parse_files_transferred(result.stdout),
            stderr=result.stderr,
        )
        if outcome.exit_code == RSYNC_VANISHED:
            outcome.warnings.append(f"{request.label}: some files vanished during transfer")
            logger.warning(f"{request.label}: some files vanished during transfer from {request.source}")
            outcome.exit_code = 0
        elif outcome.exit_code != 0:
            logger.error(f"{request.label}: rsync exited {outcome.exit_code}: {outcome.stderr.strip()}")
        else:
            logger.debug(f"{request.label}: {outcome.files_transferred} file(s) transferred")
        return outcome
