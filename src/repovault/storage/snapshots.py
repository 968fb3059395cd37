# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.01.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/snapshots.py

"""
Local snapshot directories under the backup root.

    <data_dir>/
        20250614T020000/            one directory per run
            repositories/
            snapshot.json           written when the run completed
            incomplete              present until the run completed
        current -> 20250614T020000  last complete snapshot

Every snapshot is self-contained: unchanged files are hard links into the
previous snapshot, never references to it.
"""

import os
import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional

import orjson
from loguru import logger

SNAPSHOT_ID_FORMAT = "%Y%m%dT%H%M%S"
CURRENT = "current"
INCOMPLETE_MARKER = "incomplete"
METADATA_FILE = "snapshot.json"
REPOSITORIES_DIR = "repositories"


class SnapshotManager:
    """Creates, finalizes, promotes and prunes snapshots under one backup root."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    @staticmethod
    def new_snapshot_id(now: datetime = None) -> str:
        return (now or datetime.now(UTC)).strftime(SNAPSHOT_ID_FORMAT)

    def snapshot_dir(self, snapshot_id: str) -> Path:
        return self.data_dir / snapshot_id

    def repositories_dir(self, snapshot_id: str) -> Path:
        return self.snapshot_dir(snapshot_id) / REPOSITORIES_DIR

    def create(self, snapshot_id: str) -> Path:
        """Create the snapshot tree (idempotent) and flag it incomplete."""
        repos = self.repositories_dir(snapshot_id)
        repos.mkdir(parents=True, exist_ok=True)
        (self.snapshot_dir(snapshot_id) / INCOMPLETE_MARKER).touch()
        logger.debug(f"Snapshot directory ready: {repos}")
        return repos

    def link_dest(self) -> Optional[Path]:
        """Previous snapshot's repositories dir, only if one exists."""
        previous = self.data_dir / CURRENT / REPOSITORIES_DIR
        if previous.is_dir():
            return previous.resolve()
        return None

    def is_complete(self, snapshot_id: str) -> bool:
        snapshot = self.snapshot_dir(snapshot_id)
        return snapshot.is_dir() and not (snapshot / INCOMPLETE_MARKER).exists()

    def mark_complete(self, snapshot_id: str, metadata: dict = None) -> Path:
        snapshot = self.snapshot_dir(snapshot_id)
        record = {"snapshot_id": snapshot_id, "completed_at": datetime.now(UTC).isoformat()}
        record.update(metadata or {})
        metadata_path = snapshot / METADATA_FILE
        metadata_path.write_bytes(orjson.dumps(record, option=orjson.OPT_INDENT_2))
        (snapshot / INCOMPLETE_MARKER).unlink(missing_ok=True)
        logger.info(f"Snapshot {snapshot_id} complete")
        return metadata_path

    def read_metadata(self, snapshot_id: str) -> Optional[dict]:
        metadata_path = self.snapshot_dir(snapshot_id) / METADATA_FILE
        if not metadata_path.exists():
            return None
        return orjson.loads(metadata_path.read_bytes())

    def promote(self, snapshot_id: str) -> Path:
        """Atomically point `current` at a complete snapshot."""
        if not self.is_complete(snapshot_id):
            raise ValueError(f"Refusing to promote incomplete snapshot {snapshot_id}")

        current = self.data_dir / CURRENT
        staging = self.data_dir / f".{CURRENT}.{snapshot_id}"
        staging.unlink(missing_ok=True)
        staging.symlink_to(snapshot_id)
        os.replace(staging, current)
        logger.info(f"{current} -> {snapshot_id}")
        return current

    def list_snapshots(self) -> list[str]:
        """Snapshot ids, oldest first."""
        if not self.data_dir.is_dir():
            return []
        ids = []
        for entry in self.data_dir.iterdir():
            if entry.is_symlink() or not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                datetime.strptime(entry.name, SNAPSHOT_ID_FORMAT)
            except ValueError:
                continue
            ids.append(entry.name)
        return sorted(ids)

    def prune(self, keep: int, in_progress: str = None) -> list[str]:
        """Remove failed snapshots and all but the newest `keep` complete ones.

        The snapshot `current` points at is never removed.
        """
        current = self.data_dir / CURRENT
        current_id = os.readlink(current) if current.is_symlink() else None

        removed = []
        complete = []
        for snapshot_id in self.list_snapshots():
            if snapshot_id in (in_progress, current_id):
                continue
            if self.is_complete(snapshot_id):
                complete.append(snapshot_id)
            else:
                removed.append(snapshot_id)

        retained_slots = keep - (1 if current_id else 0)
        excess = max(0, len(complete) - max(retained_slots, 0))
        removed += complete[:excess]

        for snapshot_id in removed:
            logger.info(f"Pruning snapshot {snapshot_id}")
            shutil.rmtree(self.snapshot_dir(snapshot_id))
        return removed
