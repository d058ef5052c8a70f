"""
Fleet Persistence Models

SQLAlchemy entities for VPN nodes, provisioned peers, per-node IP
assignments and daily usage totals.

Invariants enforced at the schema level:
- a peer public key appears at most once per node
- an address is assigned at most once per node
- one usage row per (user, day)
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from nexusfleet.db.base_class import Base

NODE_SUBNET = "10.100.0.0/24"
NODE_INTERFACE_ADDRESS = "10.100.0.1/24"
DEFAULT_WG_PORT = 51820


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserPlan(str, Enum):
    """Subscription plan, looked up through the user directory"""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


DEVICE_LIMITS = {
    UserPlan.FREE: 1,
    UserPlan.BASIC: 5,
    UserPlan.PRO: 10,
}


class Node(Base):
    """
    VPN Node Model

    A WireGuard server reachable over SSH. Created by an operator or the
    auto-configurator, updated by the health monitor, never deleted here.
    """
    __tablename__ = "nodes"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    city = Column(String(255), nullable=True)
    country = Column(String(255), nullable=True)
    country_code = Column(String(8), nullable=True)

    public_address = Column(String(255), nullable=False, index=True)
    wg_port = Column(Integer, nullable=False, default=DEFAULT_WG_PORT)
    ssh_user = Column(String(64), nullable=False, default="root")
    ssh_credential_ref = Column(String(255), nullable=True)

    # WireGuard public key, nullable until fetched from the node
    public_key = Column(String(255), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    current_load = Column(Integer, nullable=False, default=0)
    subnet = Column(String(32), nullable=False, default=NODE_SUBNET)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<Node {self.name} ({self.public_address})>"


class PeerRecord(Base):
    """
    Provisioned Peer Model

    Desired-state row for one client device on one node. The private key is
    never stored; it is returned once in the rendered client config.
    """
    __tablename__ = "peer_records"
    __table_args__ = (
        UniqueConstraint("node_id", "public_key", name="uq_peer_node_public_key"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    node_id = Column(String(36), ForeignKey("nodes.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    public_key = Column(String(255), nullable=False)
    assigned_address = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<PeerRecord {self.public_key[:8]}... on {self.node_id}>"


class IpAssignment(Base):
    """
    IP Assignment Model

    One row per allocated address inside a node's /24. Octet 1 belongs to
    the node interface; 2..254 are handed to peers.
    """
    __tablename__ = "ip_assignments"
    __table_args__ = (
        UniqueConstraint("node_id", "address", name="uq_ip_node_address"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    node_id = Column(String(36), ForeignKey("nodes.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    address = Column(String(45), nullable=False)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UsageRecord(Base):
    """Daily cumulative transfer totals per user"""
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "record_date", name="uq_usage_user_date"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    record_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    bytes_uploaded = Column(BigInteger, nullable=False, default=0)
    bytes_downloaded = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
