# Author: PB & Claude
# Maintainer: PB
# Original date: 2025-06-13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/repovault/storage/topology.py

"""Cluster membership queries against the primary appliance."""

from loguru import logger
from pydantic import BaseModel, ConfigDict

from repovault.config.manager import BackupConfig
from repovault.system.exceptions import ProtocolError, EXIT_OK, EXIT_FAILURE
from .transport import Endpoint, SSHTransport


class ClusterNode(BaseModel):
    """One live cluster member holding the requested role."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    role: str


class ClusterTopology:
    """Expands a cluster's logical hostname into its storage nodes.

    Membership changes between backups, so nothing here is cached.
    """

    def __init__(self, transport: SSHTransport, config: BackupConfig) -> None:
        self.transport = transport
        self.config = config

    def list_nodes(self, primary: Endpoint, role: str = None) -> list[ClusterNode]:
        role = role or self.config.storage_role
        command = self.config.nodes_command.format(role=role)
        result = self.transport.run(primary, command)
        if result.exit_code != EXIT_OK:
            raise ProtocolError(
                f"Cluster member query for role '{role}' failed on {primary.address} "
                f"(exit {result.exit_code}): {result.stderr.strip() or result.stdout.strip()}",
                host=primary.address,
                exit_code=EXIT_FAILURE,
            )

        seen = set()
        nodes = []
        for token in result.stdout.split():
            if token not in seen:
                seen.add(token)
                nodes.append(ClusterNode(hostname=token, role=role))

        if nodes:
            logger.info(f"Found {len(nodes)} {role} node(s) behind {primary.hostname}: "
                        f"{', '.join(node.hostname for node in nodes)}")
        else:
            logger.info(f"No {role} nodes behind {primary.hostname}")
        return nodes

    def node_endpoint(self, primary: Endpoint, node: ClusterNode) -> Endpoint:
        """Endpoint for a node, reached by hopping through the primary."""
        endpoint = Endpoint(alias=node.hostname, hostname=node.hostname,
                            port=primary.port, user=primary.user)
        self.transport.forward(endpoint, via=primary)
        return endpoint
