"""
Usage Collection Service

Samples cumulative transfer counters from every active node and forwards
them to the UsageService as per-day totals.

Counter mapping: a peer's received bytes (rx) are the user's upload, its
transmitted bytes (tx) the user's download. Samples of all of a user's
peers, across every node reached in a pass, are summed and reported once
per user per pass.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from nexusfleet.config import resolve_ssh_credential
from nexusfleet.models.fleet import Node, PeerRecord
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.networking.wireguard_commands import WireGuardCommands, parse_transfer
from nexusfleet.services.collaborators import UsageService
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)

logger = logging.getLogger(__name__)

UserTotals = Dict[str, Tuple[int, int]]


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class UsageCollectionService:
    """Per-minute usage accounting loop body"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: RemoteExecutor,
        usage_service: UsageService,
        commands: Optional[WireGuardCommands] = None,
        metrics: Optional[PrometheusMetricsService] = None,
        clock: Callable[[], str] = today_iso,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self.executor = executor
        self.usage_service = usage_service
        self.commands = commands or WireGuardCommands()
        self.metrics = metrics or get_metrics_service()
        self.clock = clock
        self.max_retries = max_retries

    async def collect_all(self) -> UserTotals:
        """
        Collect usage from every active node and record one total per user.

        A node that cannot be sampled contributes nothing to this pass.

        Returns:
            Mapping of user id to the (upload, download) totals recorded
        """
        totals: Dict[str, list] = defaultdict(lambda: [0, 0])
        with self._session_factory() as db:
            nodes = db.query(Node).filter(Node.is_active.is_(True)).all()
            for node in nodes:
                try:
                    node_totals = await self.collect_node(node, db)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Usage sync skipped for {node.name}: {e}")
                    continue
                for user_id, (upload, download) in node_totals.items():
                    totals[user_id][0] += upload
                    totals[user_id][1] += download

        iso_date = self.clock()
        recorded: UserTotals = {}
        for user_id, (upload, download) in totals.items():
            self.usage_service.record_usage(user_id, upload, download, iso_date)
            recorded[user_id] = (upload, download)

        if recorded:
            logger.debug(f"Recorded usage for {len(recorded)} users on {iso_date}")
        return recorded

    async def collect_node(self, node: Node, db: Session) -> UserTotals:
        """Sample one node and return per-user (upload, download) sums."""
        if self.executor.is_simulated:
            return {}

        output = await self.executor.execute(
            self.commands.transfer_dump(),
            node.public_address,
            node.ssh_user,
            self.max_retries,
            resolve_ssh_credential(node.ssh_credential_ref),
        )
        samples = parse_transfer(output)
        if not samples:
            return {}

        owners = {
            peer.public_key: peer.user_id
            for peer in db.query(PeerRecord).filter(PeerRecord.node_id == node.id).all()
        }

        totals: Dict[str, list] = defaultdict(lambda: [0, 0])
        for sample in samples:
            if sample.rx_bytes == 0 and sample.tx_bytes == 0:
                continue
            user_id = owners.get(sample.public_key)
            if user_id is None:
                logger.debug(f"Transfer sample for unknown peer {sample.public_key[:8]} on {node.name}")
                continue
            totals[user_id][0] += sample.rx_bytes
            totals[user_id][1] += sample.tx_bytes
            self.metrics.record_usage_sample()

        return {user_id: (upload, download) for user_id, (upload, download) in totals.items()}
