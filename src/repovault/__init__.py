# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.05.10
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/__init__.py

"""repovault - consistent, incremental backups of clustered git repository storage."""

__version__ = "0.4.0"
