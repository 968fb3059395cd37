# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.01.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/system/execution.py

"""Local command execution helpers."""

import shlex
import subprocess

from loguru import logger


class CommandExecutor:
    """Thin wrapper around subprocess so callers can be patched in tests."""

    @staticmethod
    def run_local(cmd: list[str], input_text: str = None, check: bool = True) -> subprocess.CompletedProcess:
        """Run a local command and capture its output.

        Args:
            cmd: argv list
            input_text: Optional text fed to the command's stdin
            check: Raise ValueError on non-zero exit

        Returns:
            The completed process with text stdout/stderr
        """
        logger.debug(f"Running: {shlex.join(cmd)}")
        result = subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise ValueError(
                f"Command failed with exit code {result.returncode}: {shlex.join(cmd)}\n{result.stderr.strip()}"
            )
        return result
