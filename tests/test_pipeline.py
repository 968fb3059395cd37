# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.15
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/test_pipeline.py

"""Tests for the per-node phase pipeline."""

from repovault.core.phases import PHASE_ORDER, TransferPhase
from repovault.core.pipeline import TransferPipeline
from repovault.storage.transport import Endpoint

from tests.fixtures.fakes import FakeCluster, FakeSyncTool

NODE = Endpoint(alias="git-server-1", hostname="git-server-1", port=122)


def pipeline(config, sync_tool):
    return TransferPipeline(FakeCluster(), sync_tool, config)


class TestTransferNode:
    def test_all_phases_in_order(self, backup_config, tmp_path):
        sync_tool = FakeSyncTool()

        result = pipeline(backup_config, sync_tool).transfer_node(NODE, tmp_path / "repositories")

        assert result.ok
        assert result.completed_phases == list(PHASE_ORDER)
        assert sync_tool.phases_for("git-server-1") == list(PHASE_ORDER)

    def test_refs_land_before_objects(self, backup_config, tmp_path):
        sync_tool = FakeSyncTool()
        pipeline(backup_config, sync_tool).transfer_node(NODE, tmp_path / "repositories")

        order = sync_tool.phases_for("git-server-1")
        aux = order.index(TransferPhase.AUXILIARY)
        refs = order.index(TransferPhase.LOOSE_REFS_AND_LOGS)
        packed = order.index(TransferPhase.PACKED_REFS)
        objects = order.index(TransferPhase.OBJECTS_AND_PACKS)
        assert aux < packed < objects
        assert aux < refs < objects

    def test_requests_carry_phase_flags_and_link_dest(self, backup_config, tmp_path):
        sync_tool = FakeSyncTool()
        link_dest = tmp_path / "previous" / "repositories"

        pipeline(backup_config, sync_tool).transfer_node(NODE, tmp_path / "repositories", link_dest)

        assert len(sync_tool.requests) == len(PHASE_ORDER)
        for request, phase in zip(sync_tool.requests, PHASE_ORDER):
            assert request.link_dest == link_dest
            assert request.compress is phase.compress
            assert request.hard_links is phase.preserve_hard_links
            assert request.source == "git-server-1:/data/user/repositories/"
            assert request.remote_shell[:3] == ["ssh", "-p", "122"]

    def test_stops_at_first_failing_phase(self, backup_config, tmp_path):
        sync_tool = FakeSyncTool(failures={("git-server-1", TransferPhase.OBJECTS_AND_PACKS): 12})
        snapshot_dir = tmp_path / "repositories"

        result = pipeline(backup_config, sync_tool).transfer_node(NODE, snapshot_dir)

        assert not result.ok
        assert result.failed_phase is TransferPhase.OBJECTS_AND_PACKS
        assert result.exit_code == 12
        assert "code 12" in result.error
        assert TransferPhase.SPECIAL_DIRS not in sync_tool.phases_for("git-server-1")
        # Earlier phases' output stays in place
        assert (snapshot_dir / "git-server-1" / "packed_refs").exists()

    def test_local_error_fails_the_phase(self, backup_config, tmp_path):
        denied = PermissionError(13, "Permission denied", str(tmp_path / "repositories"))
        sync_tool = FakeSyncTool(errors={("git-server-1", TransferPhase.PACKED_REFS): denied})

        result = pipeline(backup_config, sync_tool).transfer_node(NODE, tmp_path / "repositories")

        assert not result.ok
        assert result.failed_phase is TransferPhase.PACKED_REFS
        assert result.exit_code == 1
        assert result.error.startswith("PermissionError:")
        assert result.completed_phases == [TransferPhase.AUXILIARY]
        assert TransferPhase.LOOSE_REFS_AND_LOGS not in sync_tool.phases_for("git-server-1")
