"""
Node Auto-Configuration Service

Zero-touch onboarding of a fresh server into the fleet:

1. Detect the operating system (unknown hosts are rejected)
2. Audit requirements
3. Install missing packages / WireGuard
4. Install the orchestrator's SSH key
5. Generate node keys, write wg0.conf, start the interface
6. Open the firewall for SSH and the WireGuard port
7. Enable IPv4/IPv6 forwarding (Linux)
8. Read back and validate the node's WireGuard public key
9. Persist the Node

Steps 3-7 are each gated by the audit, so running the pipeline again on a
half-configured host only repeats the work still missing. There is no
remote rollback.
"""

import logging
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.orm import Session

from nexusfleet.models.fleet import Node
from nexusfleet.models.schemas import (
    AutoConfigResult,
    NodeMetadata,
    OSFamily,
    OSFingerprint,
    RequirementReport,
    ServiceState,
)
from nexusfleet.networking.remote_executor import RemoteExecutionError, RemoteExecutor
from nexusfleet.networking.wireguard_commands import PUBLIC_KEY_PATH
from nexusfleet.networking.wireguard_config import NodeInterfaceConfig
from nexusfleet.networking.wireguard_keys import generate_keypair, is_usable_node_key
from nexusfleet.services.collaborators import AUDIT_NODE_PROVISIONED, AuditService
from nexusfleet.services.os_detection_service import OSDetectionService
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)
from nexusfleet.services.requirement_audit_service import RequirementAuditService

logger = logging.getLogger(__name__)

WINDOWS_WG_CONFIG_DIR = "C:\\Program Files\\WireGuard\\Data\\Configurations"
WINDOWS_WG_CONFIG_PATH = f"{WINDOWS_WG_CONFIG_DIR}\\wg0.conf"
WINDOWS_WG_PUBLIC_KEY_PATH = f"{WINDOWS_WG_CONFIG_DIR}\\publickey"
WINDOWS_INSTALLER_URL = "https://download.wireguard.com/windows-client/wireguard-installer.exe"

SYSTEM_ACTOR = "system"


class AutoConfigError(Exception):
    """Base exception for node auto-configuration."""
    pass


class UnsupportedOperatingSystemError(AutoConfigError):
    """Raised when OS detection cannot classify the host. Caller error."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(
            f"Could not detect operating system on {host}. "
            f"Please ensure SSH access is configured."
        )


class AutoConfigStageError(AutoConfigError):
    """Raised when a pipeline stage fails after detection."""

    def __init__(self, stage: str, host: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.host = host
        self.cause = cause
        super().__init__(f"Auto-configuration failed at stage '{stage}' on {host}: {cause}")


class InvalidNodePublicKeyError(AutoConfigStageError):
    """Raised when the key read back from a node is empty or a placeholder."""

    def __init__(self, host: str, public_key: Optional[str]):
        self.public_key = public_key
        super().__init__("key-retrieval", host, ValueError("Invalid WireGuard public key"))


class NodeAutoConfigService:
    """
    Service for onboarding fleet nodes over SSH

    Usage:
        service = NodeAutoConfigService(db, executor)
        result = await service.provision("203.0.113.10", "root", NodeMetadata(name="fra-1"))
    """

    def __init__(
        self,
        db: Session,
        executor: RemoteExecutor,
        detector: Optional[OSDetectionService] = None,
        auditor: Optional[RequirementAuditService] = None,
        audit_service: Optional[AuditService] = None,
        metrics: Optional[PrometheusMetricsService] = None,
    ):
        self.db = db
        self.executor = executor
        self.detector = detector or OSDetectionService(executor)
        self.auditor = auditor or RequirementAuditService(executor)
        self.audit_service = audit_service
        self.metrics = metrics or get_metrics_service()

    async def provision(
        self,
        address: str,
        ssh_user: str,
        metadata: NodeMetadata,
        credential: Optional[str] = None,
    ) -> AutoConfigResult:
        """
        Run the onboarding pipeline against a host.

        Args:
            address: Public address of the host
            ssh_user: SSH user for every remote command
            metadata: Operator-supplied node attributes
            credential: Optional password used until key trust is installed

        Returns:
            AutoConfigResult with the persisted node and the step log

        Raises:
            UnsupportedOperatingSystemError: OS could not be detected
            AutoConfigStageError: A later stage failed (cause chained)
        """
        steps: List[str] = []
        wg_port = metadata.wg_port

        async def run(command: str) -> str:
            return await self.executor.execute(command, address, ssh_user, 3, credential)

        try:
            steps.append("Detecting operating system...")
            logger.info(f"Detecting OS on {address}...")
            fingerprint = await self.detector.detect(address, ssh_user, credential)
            steps.append(f"Detected: {fingerprint.describe()}")

            if fingerprint.family == OSFamily.UNKNOWN:
                raise UnsupportedOperatingSystemError(address)

            steps.append("Checking server requirements...")
            report = await self.auditor.check(address, ssh_user, fingerprint, credential, wg_port)
            steps.append(
                f"Requirements check complete. Missing: {len(report.missing_packages)} packages"
            )

            if report.missing_packages or report.wireguard_state == ServiceState.NOT_INSTALLED:
                await self._stage(
                    "install", address, steps,
                    "Installing missing requirements...", "Requirements installed successfully",
                    lambda: self._install_requirements(run, fingerprint, report),
                )

            if not report.ssh_ready or report.ssh_state != ServiceState.RUNNING:
                await self._stage(
                    "ssh-trust", address, steps,
                    "Configuring SSH access...", "SSH configured",
                    lambda: self._configure_ssh(run, fingerprint),
                )

            if not report.wireguard_running:
                await self._stage(
                    "wireguard", address, steps,
                    "Configuring WireGuard...", "WireGuard configured",
                    lambda: self._configure_wireguard(run, fingerprint, wg_port),
                )

            if not report.firewall_configured:
                await self._stage(
                    "firewall", address, steps,
                    "Configuring firewall...", "Firewall configured",
                    lambda: self._configure_firewall(run, fingerprint, wg_port),
                )

            if fingerprint.family == OSFamily.LINUX and not report.ip_forwarding_enabled:
                await self._stage(
                    "ip-forwarding", address, steps,
                    "Enabling IP forwarding...", "IP forwarding enabled",
                    lambda: self._enable_ip_forwarding(run),
                )

            steps.append("Fetching WireGuard public key...")
            public_key = await self._read_public_key(run, address, fingerprint)
            steps.append("Public key retrieved")

            steps.append("Creating server record...")
            node = self._persist_node(address, ssh_user, metadata, public_key)
            steps.append("Server added successfully")

        except AutoConfigError as e:
            self.metrics.record_autoconfig_run("failed")
            logger.error(f"Auto-configuration failed for {address}: {e}")
            raise

        final_report = await self.auditor.check(address, ssh_user, fingerprint, credential, wg_port)
        self.metrics.record_autoconfig_run("success")

        if self.audit_service is not None:
            self.audit_service.log(
                AUDIT_NODE_PROVISIONED,
                SYSTEM_ACTOR,
                node.id,
                {"address": address, "os": fingerprint.describe()},
            )

        return AutoConfigResult(
            node=node,
            fingerprint=fingerprint,
            final_report=final_report,
            steps=steps,
        )

    async def _stage(
        self,
        stage: str,
        host: str,
        steps: List[str],
        started: str,
        finished: str,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        steps.append(started)
        logger.info(f"[{host}] {started}")
        try:
            await action()
        except AutoConfigError:
            raise
        except Exception as e:
            raise AutoConfigStageError(stage, host, e) from e
        steps.append(finished)

    async def _install_requirements(
        self,
        run: Callable[[str], Awaitable[str]],
        fingerprint: OSFingerprint,
        report: RequirementReport,
    ) -> None:
        if fingerprint.family == OSFamily.WINDOWS:
            if report.wireguard_state == ServiceState.NOT_INSTALLED:
                await run(
                    "powershell -Command \"Invoke-WebRequest "
                    f"-Uri '{WINDOWS_INSTALLER_URL}' -OutFile '$env:TEMP\\wireguard-installer.exe'; "
                    "Start-Process -FilePath '$env:TEMP\\wireguard-installer.exe' "
                    "-ArgumentList '/S' -Wait\""
                )
        elif fingerprint.is_apt_family:
            await run("apt-get update -y")
            if report.missing_packages:
                await run(f"apt-get install -y {' '.join(report.missing_packages)}")
            if report.wireguard_state == ServiceState.NOT_INSTALLED:
                await run("apt-get install -y wireguard wireguard-tools qrencode")
        elif fingerprint.is_yum_family:
            await run("yum install -y epel-release elrepo-release")
            await run("yum install -y kmod-wireguard wireguard-tools")
        elif fingerprint.family == OSFamily.MACOS:
            await run("brew install wireguard-tools")
        else:
            logger.warning(
                f"No package manager known for {fingerprint.describe()}; skipping install"
            )

    async def _configure_ssh(
        self,
        run: Callable[[str], Awaitable[str]],
        fingerprint: OSFingerprint,
    ) -> None:
        public_key = self.executor.get_public_key()

        if fingerprint.family == OSFamily.WINDOWS:
            ssh_path = "$env:USERPROFILE\\.ssh"
            await run('powershell -Command "Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0"')
            await run('powershell -Command "Start-Service sshd; Set-Service -Name sshd -StartupType Automatic"')
            await run(
                f"powershell -Command \"New-Item -ItemType Directory -Force -Path '{ssh_path}' | Out-Null; "
                f"Add-Content -Path '{ssh_path}\\authorized_keys' -Value '{public_key}'\""
            )
        else:
            await run(
                f'mkdir -p ~/.ssh && chmod 700 ~/.ssh && echo "{public_key}" >> ~/.ssh/authorized_keys '
                f"&& chmod 600 ~/.ssh/authorized_keys"
            )

    async def _configure_wireguard(
        self,
        run: Callable[[str], Awaitable[str]],
        fingerprint: OSFingerprint,
        wg_port: int,
    ) -> None:
        if fingerprint.family == OSFamily.WINDOWS:
            # No `wg genkey` pipeline on Windows; the keypair is generated here
            private_key, public_key = generate_keypair()
            config = NodeInterfaceConfig(
                private_key=private_key,
                listen_port=wg_port,
                post_up=None,
                post_down=None,
            ).to_config_file()
            await run(
                f"powershell -Command \"New-Item -ItemType Directory -Force -Path '{WINDOWS_WG_CONFIG_DIR}' | Out-Null; "
                f"Set-Content -Path '{WINDOWS_WG_CONFIG_PATH}' -Value @'\n{config}\n'@; "
                f"Set-Content -Path '{WINDOWS_WG_PUBLIC_KEY_PATH}' -Value '{public_key}'\""
            )
            return

        await run("mkdir -p /etc/wireguard && chmod 700 /etc/wireguard")
        await run("cd /etc/wireguard && umask 077 && wg genkey | tee privatekey | wg pubkey > publickey")

        private_key = (await run("cat /etc/wireguard/privatekey")).strip()
        if not private_key:
            raise ValueError("Generated WireGuard private key is empty")

        config = NodeInterfaceConfig(private_key=private_key, listen_port=wg_port).to_config_file()
        await run(f"cat > /etc/wireguard/wg0.conf << 'EOF'\n{config}EOF")
        await run("systemctl enable wg-quick@wg0 && systemctl start wg-quick@wg0")

    async def _configure_firewall(
        self,
        run: Callable[[str], Awaitable[str]],
        fingerprint: OSFingerprint,
        wg_port: int,
    ) -> None:
        if fingerprint.family == OSFamily.WINDOWS:
            await run(
                "powershell -Command \"New-NetFirewallRule -DisplayName 'WireGuard VPN' "
                f"-Direction Inbound -Protocol UDP -LocalPort {wg_port} -Action Allow\""
            )
            await run(
                "powershell -Command \"New-NetFirewallRule -DisplayName 'SSH' "
                "-Direction Inbound -Protocol TCP -LocalPort 22 -Action Allow\""
            )
            return

        try:
            await run(f"ufw allow {wg_port}/udp comment 'WireGuard VPN'")
            await run('ufw allow 22/tcp comment "SSH"')
            await run("ufw --force enable")
        except RemoteExecutionError as e:
            logger.warning(f"ufw unavailable ({e}); falling back to iptables")
            await run(f"iptables -A INPUT -p udp --dport {wg_port} -j ACCEPT")
            await run("iptables -A INPUT -p tcp --dport 22 -j ACCEPT")

    async def _enable_ip_forwarding(self, run: Callable[[str], Awaitable[str]]) -> None:
        await run("sysctl -w net.ipv4.ip_forward=1")
        await run('echo "net.ipv4.ip_forward=1" >> /etc/sysctl.conf')
        await run("sysctl -w net.ipv6.conf.all.forwarding=1")

    async def _read_public_key(
        self,
        run: Callable[[str], Awaitable[str]],
        host: str,
        fingerprint: OSFingerprint,
    ) -> str:
        if fingerprint.family == OSFamily.WINDOWS:
            command = f"powershell -Command \"Get-Content '{WINDOWS_WG_PUBLIC_KEY_PATH}'\""
        else:
            command = f"cat {PUBLIC_KEY_PATH}"

        try:
            public_key = (await run(command)).strip()
        except Exception as e:
            raise AutoConfigStageError("key-retrieval", host, e) from e

        if not is_usable_node_key(public_key):
            raise InvalidNodePublicKeyError(host, public_key)
        return public_key

    def _persist_node(
        self,
        address: str,
        ssh_user: str,
        metadata: NodeMetadata,
        public_key: str,
    ) -> Node:
        node = Node(
            name=metadata.name,
            city=metadata.city,
            country=metadata.country,
            country_code=metadata.country_code,
            public_address=address,
            wg_port=metadata.wg_port,
            ssh_user=ssh_user,
            ssh_credential_ref=metadata.ssh_credential_ref,
            public_key=public_key,
            is_active=True,
        )
        self.db.add(node)
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise AutoConfigStageError("persist", address, e) from e
        self.db.refresh(node)

        logger.info(f"Node {node.name} ({address}) added to fleet as {node.id}")
        return node
