# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/system/logging_setup.py

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def console_level(verbose: bool = False, debug: bool = False) -> str:
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    return "WARNING"


def setup_logging(verbose: bool = False, debug: bool = False,
                  log_dir: Optional[Path] = None, log_name: str = "global",
                  verbose_ssh: bool = False) -> Optional[Path]:
    """Setup loguru logging for the entire application.

    Configures:
    - Console output: WARNING+ by default, INFO+ with --verbose, DEBUG+ with --debug
    - File output: DEBUG+ if a log directory is configured

    Returns:
        Path of the log file, or None when file logging is off
    """
    logger.remove()

    logger.add(
        sys.stderr,
        level=console_level(verbose, debug),
        format="<level>{level}</level>: {message}",
        colorize=True
    )

    # paramiko logs through the stdlib; only surface it when asked
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose_ssh else logging.WARNING)

    if not log_dir:
        return None

    log_file = None
    try:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"repovault-{log_name}.log"

        logger.add(
            log_file,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention="30 days",
            compression="gz"
        )
        logger.debug(f"File logging enabled: {log_file}")

    except Exception as e:
        # Don't fail the entire application if logging setup fails
        logger.warning(f"Failed to setup file logging: {e}")
        return None

    return log_file
