"""
Kill Switch Firewall Service

Applies ufw rules that stop a node from leaking traffic outside the tunnel:
everything is denied by default, then wg0, DNS, SSH and the WireGuard port
are re-opened.
"""

import logging
from typing import Dict, List, Optional

from nexusfleet.config import resolve_ssh_credential
from nexusfleet.models.fleet import Node
from nexusfleet.networking.remote_executor import RemoteExecutor

logger = logging.getLogger(__name__)


def kill_switch_rules(wg_port: int, interface: str = "wg0") -> List[str]:
    """Ordered ufw commands that enable the kill switch."""
    return [
        "ufw default deny outgoing",
        "ufw default deny incoming",
        f"ufw allow out on {interface}",
        "ufw allow out 53",
        "ufw allow out 22/tcp",
        "ufw allow 22/tcp",
        f"ufw allow {wg_port}/udp",
        "ufw --force enable",
    ]


class FirewallService:
    """Enables and disables the egress kill switch on fleet nodes"""

    def __init__(self, executor: RemoteExecutor, interface: str = "wg0"):
        self.executor = executor
        self.interface = interface

    async def enable_kill_switch(self, node: Node) -> Dict[str, object]:
        """
        Apply the kill switch rule sequence to a node.

        Rules are applied in order and the first failure propagates, leaving
        any earlier rules in place.
        """
        logger.info(f"Enabling kill switch on {node.name} ({node.public_address})")
        credential = resolve_ssh_credential(node.ssh_credential_ref)

        for command in kill_switch_rules(node.wg_port, self.interface):
            await self._run(node, command, credential)

        return {"success": True, "status": "Kill Switch Active"}

    async def disable_kill_switch(self, node: Node) -> Dict[str, object]:
        logger.info(f"Disabling kill switch on {node.name} ({node.public_address})")
        await self._run(
            node,
            "ufw default allow outgoing",
            resolve_ssh_credential(node.ssh_credential_ref),
        )
        return {"success": True, "status": "Kill Switch Disabled"}

    async def _run(self, node: Node, command: str, credential: Optional[str]) -> str:
        try:
            return await self.executor.execute(
                command, node.public_address, node.ssh_user, 3, credential
            )
        except Exception as e:
            logger.error(f"Kill switch command failed on {node.name}: {command}: {e}")
            raise
