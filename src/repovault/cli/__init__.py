# Author: PB & Claude
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/cli/__init__.py

"""Command Line Interface package for repovault."""

from .main import app

__all__ = ['app']
