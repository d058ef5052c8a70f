"""
IP Address Pool Manager

Allocates client addresses inside a node's 10.100.0.0/24 pool and persists
each assignment immediately.

Pool layout:
- .0 network and .255 broadcast are never handed out
- .1 belongs to the node's wg0 interface
- .2 through .254 are assignable, lowest free octet first

Uniqueness per (node, address) is guaranteed by a database constraint; the
in-process lock only narrows the window in which two allocations race.
"""

import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nexusfleet.models.fleet import NODE_SUBNET, IpAssignment

logger = logging.getLogger(__name__)

FIRST_HOST_OCTET = 2
LAST_HOST_OCTET = 254
POOL_PREFIX = NODE_SUBNET.rsplit(".", 1)[0]  # "10.100.0"


class SubnetExhaustedError(Exception):
    """Raised when every assignable address on a node is taken."""

    def __init__(self, node_id: str, allocated_count: int):
        self.node_id = node_id
        self.allocated_count = allocated_count
        super().__init__(
            f"Subnet exhausted for this server (node={node_id}, allocated={allocated_count})"
        )


def strip_prefix_length(address: str) -> str:
    return address.split("/", 1)[0]


class IPPoolManager:
    """
    Database-backed IP pool for one fleet

    Attributes:
        db: SQLAlchemy session used for reads and writes
        _lock: Thread lock serialising allocations within this process
    """

    _lock = threading.Lock()

    def __init__(self, db: Session):
        self.db = db

    def _assigned_addresses(self, node_id: str) -> List[str]:
        rows = (
            self.db.query(IpAssignment.address)
            .filter(IpAssignment.node_id == node_id)
            .all()
        )
        return [row[0] for row in rows]

    def allocate(self, node_id: str, user_id: str) -> str:
        """
        Allocate the lowest free address on a node.

        Args:
            node_id: Node whose pool to allocate from
            user_id: Owner recorded on the assignment

        Returns:
            Address with host prefix, e.g. "10.100.0.2/32"

        Raises:
            SubnetExhaustedError: If octets 2..254 are all assigned
        """
        with self._lock:
            taken = set(self._assigned_addresses(node_id))

            for octet in range(FIRST_HOST_OCTET, LAST_HOST_OCTET + 1):
                candidate = f"{POOL_PREFIX}.{octet}"
                if candidate in taken:
                    continue

                self.db.add(IpAssignment(node_id=node_id, user_id=user_id, address=candidate))
                try:
                    self.db.commit()
                except IntegrityError:
                    # Another writer claimed it first; try the next octet
                    self.db.rollback()
                    taken.add(candidate)
                    logger.warning(f"Address {candidate} on node {node_id} claimed concurrently")
                    continue

                logger.info(f"Allocated IP {candidate} on node {node_id} to user {user_id}")
                return f"{candidate}/32"

            raise SubnetExhaustedError(node_id=node_id, allocated_count=len(taken))

    def release(self, node_id: str, address: str) -> bool:
        """
        Free an address so it can be handed out again.

        Accepts the address with or without its /32 suffix.

        Returns:
            True if an assignment was removed
        """
        bare = strip_prefix_length(address)
        with self._lock:
            deleted = (
                self.db.query(IpAssignment)
                .filter(IpAssignment.node_id == node_id, IpAssignment.address == bare)
                .delete(synchronize_session=False)
            )
            self.db.commit()

        if deleted:
            logger.info(f"Released IP {bare} on node {node_id}")
        else:
            logger.warning(f"No assignment for {bare} on node {node_id} to release")
        return bool(deleted)

    def get_assignment(self, node_id: str, address: str) -> Optional[IpAssignment]:
        return (
            self.db.query(IpAssignment)
            .filter(
                IpAssignment.node_id == node_id,
                IpAssignment.address == strip_prefix_length(address),
            )
            .first()
        )

    def get_pool_stats(self, node_id: str) -> Dict[str, int]:
        """
        Get pool statistics for a node

        Returns:
            Dictionary with pool statistics
        """
        total = LAST_HOST_OCTET - FIRST_HOST_OCTET + 1
        allocated = len(self._assigned_addresses(node_id))
        return {
            "total_addresses": total,
            "allocated_addresses": allocated,
            "available_addresses": total - allocated,
            "utilization_percent": int((allocated / total) * 100),
        }
