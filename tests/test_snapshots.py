# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.01.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/test_snapshots.py

import os
from datetime import datetime, UTC

import pytest

from repovault.storage.snapshots import SnapshotManager, CURRENT, INCOMPLETE_MARKER


@pytest.fixture
def snapshots(tmp_path):
    return SnapshotManager(tmp_path / "backups")


def completed(snapshots, snapshot_id, **metadata):
    snapshots.create(snapshot_id)
    snapshots.mark_complete(snapshot_id, metadata)
    return snapshot_id


class TestLifecycle:
    def test_snapshot_id_format(self):
        assert SnapshotManager.new_snapshot_id(datetime(2025, 6, 14, 2, 0, 0, tzinfo=UTC)) == "20250614T020000"

    def test_create_is_incomplete(self, snapshots):
        repos = snapshots.create("20250614T020000")
        assert repos.is_dir()
        assert repos.name == "repositories"
        assert (repos.parent / INCOMPLETE_MARKER).exists()
        assert not snapshots.is_complete("20250614T020000")

    def test_mark_complete_writes_metadata(self, snapshots):
        completed(snapshots, "20250614T020000", primary="ghe.example.com:122")

        assert snapshots.is_complete("20250614T020000")
        metadata = snapshots.read_metadata("20250614T020000")
        assert metadata["snapshot_id"] == "20250614T020000"
        assert metadata["primary"] == "ghe.example.com:122"
        assert "completed_at" in metadata

    def test_no_link_dest_without_current(self, snapshots):
        snapshots.create("20250614T020000")
        assert snapshots.link_dest() is None

    def test_promote_and_link_dest(self, snapshots):
        completed(snapshots, "20250614T020000")
        snapshots.promote("20250614T020000")

        current = snapshots.data_dir / CURRENT
        assert current.is_symlink()
        assert os.readlink(current) == "20250614T020000"
        assert snapshots.link_dest() == snapshots.repositories_dir("20250614T020000").resolve()

    def test_promote_replaces_current(self, snapshots):
        completed(snapshots, "20250614T020000")
        snapshots.promote("20250614T020000")
        completed(snapshots, "20250615T020000")
        snapshots.promote("20250615T020000")
        assert os.readlink(snapshots.data_dir / CURRENT) == "20250615T020000"

    def test_refuses_to_promote_incomplete(self, snapshots):
        snapshots.create("20250614T020000")
        with pytest.raises(ValueError, match="incomplete"):
            snapshots.promote("20250614T020000")
        assert not (snapshots.data_dir / CURRENT).exists()


class TestPrune:
    def test_list_ignores_current_and_strays(self, snapshots):
        completed(snapshots, "20250614T020000")
        snapshots.promote("20250614T020000")
        (snapshots.data_dir / "notes").mkdir()
        assert snapshots.list_snapshots() == ["20250614T020000"]

    def test_prune_keeps_newest_and_current(self, snapshots):
        ids = [completed(snapshots, f"2025061{day}T020000") for day in range(1, 6)]
        snapshots.promote(ids[-1])

        removed = snapshots.prune(keep=2)

        assert removed == ids[:3]
        assert snapshots.list_snapshots() == ids[3:]

    def test_prune_removes_failed_but_not_in_progress(self, snapshots):
        good = completed(snapshots, "20250611T020000")
        snapshots.promote(good)
        snapshots.create("20250612T020000")  # failed run
        snapshots.create("20250613T020000")  # this run

        removed = snapshots.prune(keep=5, in_progress="20250613T020000")

        assert removed == ["20250612T020000"]
        assert snapshots.list_snapshots() == [good, "20250613T020000"]
