"""
Peer Reconciliation Service

Converges each active node's live WireGuard peer table onto the peers
recorded in the database.

Per node:
- desired keys come from PeerRecord rows for that node
- observed keys come from one `wg show wg0 dump`
- desired - observed are resurrected with `wg set ... allowed-ips`
- observed - desired are removed with `wg set ... remove`

A dump that is empty, unparsable or produced by the simulated executor
means the observed state is unknown, and the node is skipped without any
mutation. A failing node never stops the pass for the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from nexusfleet.config import resolve_ssh_credential
from nexusfleet.models.fleet import Node, PeerRecord
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.networking.wireguard_commands import (
    DumpParseError,
    WireGuardCommands,
    parse_peer_dump,
)
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)

logger = logging.getLogger(__name__)


@dataclass
class DesiredVsObserved:
    """Set difference between database peers and live peers of one node"""
    desired: Set[str]
    observed: Set[str]

    @property
    def to_resurrect(self) -> Set[str]:
        return self.desired - self.observed

    @property
    def to_remove(self) -> Set[str]:
        return self.observed - self.desired

    @property
    def converged(self) -> bool:
        return not self.to_resurrect and not self.to_remove


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one node"""
    node_id: str
    node_name: str
    skipped: bool = False
    reason: Optional[str] = None
    resurrected: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None

    @property
    def mutations(self) -> int:
        return len(self.resurrected) + len(self.removed)


class PeerReconciliationService:
    """
    Self-healing loop body for the fleet's peer tables

    Usage:
        service = PeerReconciliationService(SessionLocal, executor)
        results = await service.reconcile_all()
    """

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

    async def reconcile_all(self) -> List[ReconciliationResult]:
        """Reconcile every active node sequentially."""
        logger.info("Starting full server synchronization...")
        results = []

        with self._session_factory() as db:
            nodes = db.query(Node).filter(Node.is_active.is_(True)).all()
            for node in nodes:
                try:
                    result = await self.reconcile_node(node, db)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Failed to sync server {node.name} ({node.public_address}): {e}",
                        exc_info=True,
                    )
                    self.metrics.record_reconcile_pass("failed")
                    result = ReconciliationResult(
                        node_id=node.id, node_name=node.name, failed=True, error=str(e)
                    )
                results.append(result)

        return results

    async def reconcile_node(self, node: Node, db: Session) -> ReconciliationResult:
        """
        Reconcile one node.

        Raises:
            RemoteExecutionError: The dump or a mutation command failed
        """
        result = ReconciliationResult(node_id=node.id, node_name=node.name)

        if self.executor.is_simulated:
            return self._skip(result, "simulation mode")

        credential = resolve_ssh_credential(node.ssh_credential_ref)
        dump = await self._run(node, self.commands.peer_dump(), credential)

        try:
            observed = {peer.public_key for peer in parse_peer_dump(dump)}
        except DumpParseError as e:
            logger.warning(f"Unparsable peer dump from {node.name}: {e}")
            return self._skip(result, "unparsable dump")

        peers = db.query(PeerRecord).filter(PeerRecord.node_id == node.id).all()
        by_key: Dict[str, PeerRecord] = {peer.public_key: peer for peer in peers}
        diff = DesiredVsObserved(desired=set(by_key), observed=observed)

        for public_key in sorted(diff.to_resurrect):
            peer = by_key[public_key]
            logger.warning(
                f"[Self-Healing] Peer {public_key[:8]} missing on {node.name}. Resurrecting..."
            )
            await self._run(
                node,
                self.commands.set_peer(public_key, peer.assigned_address),
                credential,
            )
            result.resurrected.append(public_key)
            self.metrics.record_reconcile_action("resurrect")

        for public_key in sorted(diff.to_remove):
            logger.warning(
                f"[Self-Healing] Zombie peer {public_key[:8]} found on {node.name}. Terminating..."
            )
            await self._run(node, self.commands.remove_peer(public_key), credential)
            result.removed.append(public_key)
            self.metrics.record_reconcile_action("remove")

        self.metrics.record_reconcile_pass("converged")
        if result.mutations:
            logger.info(
                f"Reconciled {node.name}: resurrected={len(result.resurrected)}, "
                f"removed={len(result.removed)}"
            )
        return result

    def _skip(self, result: ReconciliationResult, reason: str) -> ReconciliationResult:
        logger.debug(f"Skipping reconciliation of {result.node_name}: {reason}")
        self.metrics.record_reconcile_pass("skipped")
        result.skipped = True
        result.reason = reason
        return result

    async def _run(self, node: Node, command: str, credential: Optional[str]) -> str:
        return await self.executor.execute(
            command, node.public_address, node.ssh_user, self.max_retries, credential
        )
