"""
Fleet models and schemas

SQLAlchemy entities for nodes, peers, IP assignments and usage, plus
Pydantic value types produced by node probing and onboarding.
"""

from .fleet import (
    Node,
    PeerRecord,
    IpAssignment,
    UsageRecord,
    UserPlan,
    DEVICE_LIMITS,
)
from .schemas import (
    OSFamily,
    OSFingerprint,
    ServiceState,
    RequirementReport,
    NodeMetadata,
    GenerateConfigRequest,
    ServerInventory,
    AutoConfigResult,
)

__all__ = [
    "Node",
    "PeerRecord",
    "IpAssignment",
    "UsageRecord",
    "UserPlan",
    "DEVICE_LIMITS",
    "OSFamily",
    "OSFingerprint",
    "ServiceState",
    "RequirementReport",
    "NodeMetadata",
    "GenerateConfigRequest",
    "ServerInventory",
    "AutoConfigResult",
]
