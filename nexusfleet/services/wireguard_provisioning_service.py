"""
WireGuard Peer Provisioning Service

Issues and revokes client VPN configurations.

Generate workflow:
1. Refuse while maintenance mode is on
2. Enforce the per-plan device limit
3. Resolve the node
4. Generate an X25519 keypair
5. Allocate an address from the node's pool
6. Add the peer on the node (fatal in production, logged otherwise)
7. Store the peer record and audit it
8. Render the client config, fetching the node key if it is still missing

The client private key only ever exists in the returned config text.
"""

import logging
import time
from typing import List, Optional

from sqlalchemy.orm import Session

from nexusfleet.config import FleetSettings, get_settings, resolve_ssh_credential
from nexusfleet.models.fleet import DEVICE_LIMITS, Node, PeerRecord, UserPlan
from nexusfleet.models.schemas import GenerateConfigRequest
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.networking.wireguard_commands import WireGuardCommands
from nexusfleet.networking.wireguard_config import ClientConfig
from nexusfleet.networking.wireguard_keys import (
    SERVER_PUBLIC_KEY_PLACEHOLDER,
    generate_keypair,
    is_placeholder_key,
    is_usable_node_key,
)
from nexusfleet.services.collaborators import (
    AUDIT_VPN_KEY_GENERATED,
    AUDIT_VPN_KEY_REVOKED,
    SETTING_MAINTENANCE_MODE,
    AuditService,
    SettingsStore,
    UserDirectory,
)
from nexusfleet.services.ip_pool_manager import IPPoolManager, SubnetExhaustedError
from nexusfleet.services.os_detection_service import looks_simulated
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Custom Exceptions
# ============================================================================

class ProvisioningError(Exception):
    """Base exception for provisioning errors"""
    pass


class MaintenanceModeError(ProvisioningError):
    """Raised when key generation is requested during maintenance"""

    def __init__(self):
        super().__init__("System is in maintenance mode. Cannot generate new keys.")


class DeviceLimitExceededError(ProvisioningError):
    """Raised when a user already holds as many peers as their plan allows"""

    def __init__(self, plan: UserPlan, limit: int):
        self.plan = plan
        self.limit = limit
        super().__init__(
            f"Device limit reached for {plan.value} plan ({limit} devices). Please upgrade."
        )


class NodeNotFoundError(ProvisioningError):
    """Raised when the requested node does not exist"""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Server location not found: {node_id}")


class PeerProvisioningError(ProvisioningError):
    """Raised when the peer could not be added on the node in production"""

    def __init__(self, node_address: str, cause: Exception):
        self.node_address = node_address
        self.cause = cause
        super().__init__(f"Failed to provision VPN tunnel on remote node {node_address}: {cause}")


class PeerNotFoundError(ProvisioningError):
    """Raised when a peer record does not exist"""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        super().__init__(f"Configuration not found: {peer_id}")


class PeerOwnershipError(ProvisioningError):
    """Raised when a user acts on a peer they do not own"""

    def __init__(self, peer_id: str, user_id: str):
        self.peer_id = peer_id
        self.user_id = user_id
        super().__init__("You do not own this device")


# ============================================================================
# Provisioning Service
# ============================================================================

class WireGuardProvisioningService:
    """
    Client peer provisioning service

    Attributes:
        db: Request-scoped SQLAlchemy session
        executor: Remote executor for node commands
        ip_pool: Address allocator sharing the same session
    """

    def __init__(
        self,
        db: Session,
        executor: RemoteExecutor,
        audit_service: AuditService,
        user_directory: UserDirectory,
        settings_store: SettingsStore,
        settings: Optional[FleetSettings] = None,
        metrics: Optional[PrometheusMetricsService] = None,
    ):
        self.db = db
        self.executor = executor
        self.audit_service = audit_service
        self.user_directory = user_directory
        self.settings_store = settings_store
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_service()

        self.ip_pool = IPPoolManager(db)
        self.commands = WireGuardCommands(
            interface=self.settings.wg_interface,
            sudo=self.settings.ssh_use_sudo,
        )

    @property
    def provisioning_is_fatal(self) -> bool:
        return self.settings.is_production and not self.executor.is_simulated

    async def generate(
        self,
        user_id: str,
        node_id: str,
        dns: Optional[str] = None,
        mtu: Optional[int] = None,
    ) -> str:
        """
        Provision a new client peer and return its wg-quick config.

        Args:
            user_id: Requesting user
            node_id: Target node
            dns: DNS server override (IPv4)
            mtu: MTU override (1280-1500)

        Returns:
            Client configuration file content

        Raises:
            MaintenanceModeError, DeviceLimitExceededError, NodeNotFoundError,
            SubnetExhaustedError, PeerProvisioningError
        """
        request = GenerateConfigRequest(node_id=node_id, dns=dns, mtu=mtu)
        logger.info(f"Generating VPN config for user {user_id} on node {node_id}")

        try:
            self._check_maintenance()
            self._check_device_limit(user_id)
            node = self._get_node(request.node_id)
        except ProvisioningError:
            self.metrics.record_peer_provisioned("rejected")
            raise

        private_key, public_key = generate_keypair()
        logger.debug(f"Generated WireGuard keypair: Public={public_key[:8]}...")

        try:
            assigned_address = self.ip_pool.allocate(node.id, user_id)
        except SubnetExhaustedError:
            self.metrics.record_peer_provisioned("rejected")
            raise

        try:
            await self._provision_peer_on_node(node, public_key, assigned_address)
            logger.info(f"Successfully provisioned peer on {node.name} ({node.public_address})")
        except Exception as e:
            if self.provisioning_is_fatal:
                logger.error(f"Failed to provision peer on {node.public_address}: {e}")
                self.ip_pool.release(node.id, assigned_address)
                self.metrics.record_peer_provisioned("failed")
                raise PeerProvisioningError(node.public_address, e) from e
            logger.warning(f"Provisioning failed (non-production): {e}")

        peer = PeerRecord(
            node_id=node.id,
            user_id=user_id,
            name=f"Device-{node.country_code or 'XX'}-{str(int(time.time() * 1000))[-4:]}",
            public_key=public_key,
            assigned_address=assigned_address,
        )
        self.db.add(peer)
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to store peer record on {node.name}: {e}")
            self.ip_pool.release(node.id, assigned_address)
            self.metrics.record_peer_provisioned("failed")
            raise
        self.db.refresh(peer)

        self.audit_service.log(
            AUDIT_VPN_KEY_GENERATED,
            user_id,
            peer.id,
            {"location": f"{node.city} ({node.public_address})"},
        )

        server_public_key = await self._resolve_server_public_key(node)
        self.metrics.record_peer_provisioned("success")

        return ClientConfig(
            private_key=private_key,
            address=assigned_address,
            dns=request.dns or self.settings.default_dns,
            mtu=request.mtu or self.settings.default_mtu,
            server_public_key=server_public_key,
            endpoint=f"{node.public_address}:{node.wg_port}",
            persistent_keepalive=self.settings.persistent_keepalive,
        ).to_config_file()

    async def revoke(self, user_id: str, peer_id: str) -> None:
        """
        Revoke a client peer owned by the user.

        Removal from the node is best-effort; the record and its address are
        always released so the reconciler removes any leftover live peer.

        Raises:
            PeerNotFoundError: No such peer
            PeerOwnershipError: Peer belongs to another user
        """
        peer = self.db.get(PeerRecord, peer_id)
        if peer is None:
            raise PeerNotFoundError(peer_id)
        if peer.user_id != user_id:
            raise PeerOwnershipError(peer_id, user_id)

        node = self.db.get(Node, peer.node_id)
        if node is not None and not self.executor.is_simulated:
            try:
                await self.executor.execute(
                    self.commands.remove_peer(peer.public_key),
                    node.public_address,
                    node.ssh_user,
                    self.settings.ssh_max_retries,
                    resolve_ssh_credential(node.ssh_credential_ref),
                )
                logger.info(f"Removed peer {peer.public_key[:8]}... from {node.name}")
            except Exception as e:
                logger.warning(f"Failed to remove peer from node {node.public_address}: {e}")

        node_id, address = peer.node_id, peer.assigned_address
        self.db.delete(peer)
        self.db.commit()
        self.ip_pool.release(node_id, address)

        self.audit_service.log(AUDIT_VPN_KEY_REVOKED, user_id, peer_id, {"reason": "User revoked device"})
        self.metrics.record_peer_revoked()

    def list_user_peers(self, user_id: str) -> List[PeerRecord]:
        """All peers of a user, newest first."""
        return (
            self.db.query(PeerRecord)
            .filter(PeerRecord.user_id == user_id)
            .order_by(PeerRecord.created_at.desc())
            .all()
        )

    def _check_maintenance(self) -> None:
        value = self.settings_store.get_setting_value(SETTING_MAINTENANCE_MODE)
        if value is not None and value.strip().lower() == "true":
            raise MaintenanceModeError()

    def _check_device_limit(self, user_id: str) -> None:
        plan = UserPlan(self.user_directory.get_plan(user_id))
        limit = DEVICE_LIMITS[plan]
        existing = self.db.query(PeerRecord).filter(PeerRecord.user_id == user_id).count()
        if existing >= limit:
            raise DeviceLimitExceededError(plan, limit)

    def _get_node(self, node_id: str) -> Node:
        node = self.db.get(Node, node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    async def _provision_peer_on_node(self, node: Node, public_key: str, assigned_address: str) -> None:
        credential = resolve_ssh_credential(node.ssh_credential_ref)
        bare = assigned_address.split("/", 1)[0]

        logger.debug(f"Provisioning peer {public_key[:8]}... on {node.public_address} with IP {bare}")
        await self.executor.execute(
            self.commands.set_peer(public_key, f"{bare}/32"),
            node.public_address,
            node.ssh_user,
            self.settings.ssh_max_retries,
            credential,
        )

        try:
            verify = await self.executor.execute(
                self.commands.verify_peer(public_key),
                node.public_address,
                node.ssh_user,
                self.settings.ssh_max_retries,
                credential,
            )
        except Exception as e:
            logger.warning(f"Could not verify peer on {node.public_address}, continuing: {e}")
            return

        if not verify or looks_simulated(verify):
            logger.warning(f"Could not verify peer on {node.public_address}, continuing")
        else:
            logger.debug(f"Peer verified on {node.public_address}")

    async def _resolve_server_public_key(self, node: Node) -> str:
        if not is_placeholder_key(node.public_key):
            return node.public_key

        try:
            fetched = (
                await self.executor.execute(
                    self.commands.read_public_key(),
                    node.public_address,
                    node.ssh_user,
                    self.settings.ssh_max_retries,
                    resolve_ssh_credential(node.ssh_credential_ref),
                )
            ).strip()
        except Exception as e:
            logger.warning(f"Could not fetch public key for {node.name}: {e}")
            return SERVER_PUBLIC_KEY_PLACEHOLDER

        if not is_usable_node_key(fetched):
            logger.warning(f"Could not fetch public key for {node.name}: invalid key")
            return SERVER_PUBLIC_KEY_PLACEHOLDER

        node.public_key = fetched
        self.db.commit()
        return fetched
