"""
Node Health Service

Probes every node (active or not) for reachability, estimates its load
from the live peer count and backfills a missing WireGuard public key.

Load estimate: min(100, max(5, peers * 2)), i.e. fifty peers saturate a
node. When the peer count cannot be read the previous load is kept.
An unreachable node is marked inactive with load 0; it is re-activated
by the first successful probe.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from nexusfleet.config import resolve_ssh_credential
from nexusfleet.models.fleet import Node
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.networking.wireguard_commands import (
    WireGuardCommands,
    count_peers_from_line_count,
)
from nexusfleet.networking.wireguard_keys import is_placeholder_key, is_usable_node_key
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)

logger = logging.getLogger(__name__)

REACHABILITY_PROBE = "uname"


def estimate_load(peer_count: int) -> int:
    return min(100, max(5, peer_count * 2))


@dataclass
class NodeHealth:
    node_id: str
    node_name: str
    online: bool
    load: int
    public_key_fetched: bool = False


class NodeHealthService:
    """Health monitor loop body"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: RemoteExecutor,
        commands: Optional[WireGuardCommands] = None,
        metrics: Optional[PrometheusMetricsService] = None,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self.executor = executor
        self.commands = commands or WireGuardCommands()
        self.metrics = metrics or get_metrics_service()
        self.max_retries = max_retries

    async def check_all(self) -> List[NodeHealth]:
        """Probe all nodes and persist their state. No-op in simulation mode."""
        if self.executor.is_simulated:
            logger.debug("Simulation mode: skipping node health checks")
            return []

        results = []
        with self._session_factory() as db:
            nodes = db.query(Node).all()
            for node in nodes:
                results.append(await self.check_node(node))
                db.commit()

            self.metrics.set_active_nodes(sum(1 for node in nodes if node.is_active))

        return results

    async def check_node(self, node: Node) -> NodeHealth:
        """
        Probe one node and update the ORM object in place.

        The caller owns the session and commits.
        """
        credential = resolve_ssh_credential(node.ssh_credential_ref)

        async def run(command: str) -> str:
            return await self.executor.execute(
                command, node.public_address, node.ssh_user, self.max_retries, credential
            )

        try:
            await run(REACHABILITY_PROBE)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if node.is_active:
                logger.warning(f"Server {node.name} ({node.public_address}) is OFFLINE: {e}")
            node.is_active = False
            node.current_load = 0
            self.metrics.record_health_check("offline")
            self.metrics.set_node_load(node.name, 0)
            return NodeHealth(node_id=node.id, node_name=node.name, online=False, load=0)

        if not node.is_active:
            logger.info(f"Server {node.name} is back ONLINE")
        node.is_active = True

        try:
            peers = count_peers_from_line_count(await run(self.commands.peer_count()))
            node.current_load = estimate_load(peers)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Could not read peer count on {node.name}, keeping load: {e}")

        fetched = False
        if is_placeholder_key(node.public_key):
            try:
                public_key = (await run(self.commands.read_public_key())).strip()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Could not fetch public key for {node.name}: {e}")
            else:
                if is_usable_node_key(public_key):
                    node.public_key = public_key
                    fetched = True
                    logger.info(f"Fetched public key for {node.name}")

        self.metrics.record_health_check("online")
        self.metrics.set_node_load(node.name, node.current_load)
        return NodeHealth(
            node_id=node.id,
            node_name=node.name,
            online=True,
            load=node.current_load,
            public_key_fetched=fetched,
        )
