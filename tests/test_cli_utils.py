# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/test_cli_utils.py

"""Tests for CLI utility functions."""

import signal
from unittest.mock import Mock

import pytest
import typer

from repovault.cli.utils import (
    describe_error, exit_code_for, handle_error, install_signal_handlers, load_config_with_console
)
from repovault.system.exceptions import (
    BackupInterrupted, ConfigError, ConnectivityError, MisuseError, ProtocolError,
    QuiescenceTimeoutError, TransferError, TransportError
)


class TestExitCodeFor:
    @pytest.mark.parametrize("error, expected", [
        (ConnectivityError("refused", host="h:22"), 255),
        (TransportError("lost", host="h:22"), 255),
        (TransportError("sudo failed", host="h:22", exit_code=1), 1),
        (ProtocolError("not recognized", host="h:22"), 101),
        (ProtocolError("bad version", host="h:22", exit_code=2), 2),
        (QuiescenceTimeoutError("h:22", 60), 1),
        (TransferError("phase failed", host="h:22", phase="objects and packs", sync_exit_code=12), 1),
        (BackupInterrupted("stop"), 1),
        (ConfigError("bad"), 1),
        (MisuseError("pipe"), 1),
    ])
    def test_mapping(self, error, expected):
        assert exit_code_for(error) == expected

    def test_quiescence_internal_status_never_leaks(self):
        assert exit_code_for(QuiescenceTimeoutError("h:22", 60)) != 7


class TestDescribeError:
    def test_quiescence_names_host_and_budget(self):
        message = describe_error(QuiescenceTimeoutError("git-server-2:22", 60))
        assert message == "git-server-2:22: maintenance did not quiesce within the 60s cooldown budget"

    def test_transfer_appends_missing_phase(self):
        error = TransferError("git-server-2:22 transfer failed", host="git-server-2:22",
                              phase="objects and packs")
        assert describe_error(error) == "git-server-2:22 transfer failed (phase: objects and packs)"

    def test_host_prefixed_when_absent(self):
        assert describe_error(ProtocolError("not recognized", host="h:22")) == "h:22: not recognized"


class TestHandleError:
    def test_prints_and_exits(self):
        console = Mock()
        with pytest.raises(typer.Exit) as exc_info:
            handle_error(console, ProtocolError("not recognized", host="h:22"))
        assert exc_info.value.exit_code == 101
        console.print.assert_called_once()

    def test_connectivity_prints_remediation(self):
        console = Mock()
        with pytest.raises(typer.Exit):
            handle_error(console, ConnectivityError("refused", host="h:22", remediation="check keys"))
        assert console.print.call_count == 2


class TestLoadConfigWithConsole:
    def test_missing_config_exits(self, isolated_config_home):
        console = Mock()
        with pytest.raises(typer.Exit) as exc_info:
            load_config_with_console(console)
        assert exc_info.value.exit_code == 1
        assert "Configuration error" in console.print.call_args.args[0]


def test_sigterm_becomes_interruption(monkeypatch):
    installed = {}
    monkeypatch.setattr(signal, "signal", lambda signum, handler: installed.setdefault(signum, handler))

    install_signal_handlers()

    with pytest.raises(BackupInterrupted, match="SIGTERM"):
        installed[signal.SIGTERM](signal.SIGTERM, None)
