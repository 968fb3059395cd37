# Author: PB & Claude
# Maintainer: PB
# Original date: 2025-06-13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/__init__.py

"""
Storage-facing layer for repovault.

This module provides:
- Remote command transport (SSH, proxied cluster nodes)
- Appliance negotiation and cluster topology queries
- rsync invocation and local snapshot directories
"""

from .transport import Endpoint, RemoteResult, SSHTransport, Tunnel
from .negotiation import HostNegotiator, NegotiationResult, Dialect, FailureKind
from .topology import ClusterNode, ClusterTopology
from .rsync import RsyncTool, SyncRequest, SyncOutcome
from .snapshots import SnapshotManager

__all__ = [
    "Endpoint", "RemoteResult", "SSHTransport", "Tunnel",
    "HostNegotiator", "NegotiationResult", "Dialect", "FailureKind",
    "ClusterNode", "ClusterTopology",
    "RsyncTool", "SyncRequest", "SyncOutcome",
    "SnapshotManager",
]
