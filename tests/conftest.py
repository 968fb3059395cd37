# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.02
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/conftest.py

"""
Shared test fixtures for the repovault test suite.
"""

import pytest
from loguru import logger

from repovault.config.manager import BackupConfig
from repovault.storage.transport import Endpoint

from tests.fixtures.fakes import FakeCluster, FakeSyncTool


@pytest.fixture
def config_text():
    """Minimal repovault.yml text."""
    return """
hostname: ghe.example.com
data_dir: {data_dir}
cooldown_seconds: 5
poll_interval: 0
ssh_options:
  - ServerAliveInterval=30
"""


@pytest.fixture
def backup_config(tmp_path):
    """Fast-polling config writing snapshots under tmp_path."""
    return BackupConfig(
        hostname="ghe.example.com",
        data_dir=tmp_path / "backups",
        cooldown_seconds=5,
        poll_interval=0,
    )


@pytest.fixture
def primary():
    return Endpoint.parse("ghe.example.com")


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def sync_tool():
    return FakeSyncTool()


@pytest.fixture
def isolated_config_home(tmp_path, monkeypatch):
    """Point every config search path at an empty directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".xdg"))
    monkeypatch.setenv("REPOVAULT_CONFIG_HOME", str(home / ".repovault"))
    return home


@pytest.fixture(autouse=True)
def quiet_logger():
    """Reset loguru sinks that tests may have added."""
    yield
    logger.remove()
