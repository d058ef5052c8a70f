"""
Tests for zero-touch node onboarding.

Tests follow BDD-style naming (Given/When/Then) as per project standards.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ScriptedExecutor, command_failure
from nexusfleet.models.fleet import Node
from nexusfleet.models.schemas import (
    NodeMetadata,
    OSFamily,
    OSFingerprint,
    RequirementReport,
    ServiceState,
)
from nexusfleet.networking.remote_executor import RemoteCommandError, SimulatedRemoteExecutor
from nexusfleet.networking.wireguard_keys import generate_keypair
from nexusfleet.services.collaborators import AUDIT_NODE_PROVISIONED, AuditService
from nexusfleet.services.node_autoconfig_service import (
    AutoConfigStageError,
    InvalidNodePublicKeyError,
    NodeAutoConfigService,
    UnsupportedOperatingSystemError,
)

UBUNTU = OSFingerprint(family=OSFamily.LINUX, distribution="ubuntu", version="22.04", architecture="x86_64")
WINDOWS = OSFingerprint(family=OSFamily.WINDOWS, distribution="windows-server", version="10.0")

FRESH = RequirementReport(missing_packages=["wireguard", "qrencode"])
READY = RequirementReport(
    ssh_ready=True,
    ssh_state=ServiceState.RUNNING,
    wireguard_state=ServiceState.RUNNING,
    firewall_configured=True,
    ip_forwarding_enabled=True,
)


@pytest.fixture
def node_keys():
    return generate_keypair()


@pytest.fixture
def metadata():
    return NodeMetadata(name="Frankfurt-2", city="Frankfurt", country="Germany", country_code="DE")


@pytest.fixture
def audit_service():
    return MagicMock(spec=AuditService)


def make_service(db_session, executor, metrics, audit_service, fingerprint, *reports):
    detector = MagicMock()
    detector.detect = AsyncMock(return_value=fingerprint)
    auditor = MagicMock()
    auditor.check = AsyncMock(side_effect=list(reports))
    return NodeAutoConfigService(
        db_session,
        executor,
        detector=detector,
        auditor=auditor,
        audit_service=audit_service,
        metrics=metrics,
    )


def linux_host(node_keys, metrics, **extra_rules):
    private_key, public_key = node_keys
    rules = list(extra_rules.items()) + [
        ("cat /etc/wireguard/privatekey", private_key),
        ("cat /etc/wireguard/publickey", public_key),
    ]
    return ScriptedExecutor(rules=rules, metrics=metrics)


class TestLinuxOnboarding:
    """Test the Linux onboarding pipeline"""

    @pytest.mark.asyncio
    async def test_fresh_ubuntu_host(self, db_session, metrics, registry, audit_service, metadata, node_keys):
        """
        GIVEN a fresh Ubuntu host missing everything
        WHEN provisioning
        THEN every stage should run and the node should be persisted with its key
        """
        executor = linux_host(node_keys, metrics)
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, FRESH, READY)

        result = await service.provision("203.0.113.20", "root", metadata)

        node = db_session.query(Node).one()
        assert result.node.id == node.id
        assert node.public_key == node_keys[1]
        assert node.public_address == "203.0.113.20"
        assert node.country_code == "DE"
        assert node.is_active is True

        assert "apt-get install -y wireguard qrencode" in executor.commands
        assert executor.ran("authorized_keys")
        assert executor.ran("wg genkey")
        assert executor.ran("cat > /etc/wireguard/wg0.conf << 'EOF'\n[Interface]")
        assert executor.ran("ufw --force enable")
        assert executor.ran("sysctl -w net.ipv4.ip_forward=1")

        assert result.steps[0] == "Detecting operating system..."
        assert "Installing missing requirements..." in result.steps
        assert "Enabling IP forwarding..." in result.steps
        assert result.steps[-1] == "Server added successfully"
        assert result.final_report == READY

        audit_service.log.assert_called_once()
        assert audit_service.log.call_args.args[0] == AUDIT_NODE_PROVISIONED
        assert registry.get_sample_value(
            "nexusfleet_autoconfig_runs_total", {"result": "success"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_node_config_written_with_private_key(self, db_session, metrics, audit_service, metadata, node_keys):
        executor = linux_host(node_keys, metrics)
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, FRESH, READY)

        await service.provision("203.0.113.20", "root", metadata)

        heredoc = next(c for c in executor.commands if c.startswith("cat > /etc/wireguard/wg0.conf"))
        assert f"PrivateKey = {node_keys[0]}\n" in heredoc
        assert "ListenPort = 51820\n" in heredoc
        assert heredoc.endswith("EOF")

    @pytest.mark.asyncio
    async def test_configured_host_only_reads_key(self, db_session, metrics, audit_service, metadata, node_keys):
        """
        GIVEN a host whose audit reports everything in place
        WHEN provisioning
        THEN no configuration stage should run
        """
        executor = linux_host(node_keys, metrics)
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, READY, READY)

        result = await service.provision("203.0.113.20", "root", metadata)

        assert executor.commands == ["cat /etc/wireguard/publickey"]
        assert "Configuring WireGuard..." not in result.steps

    @pytest.mark.asyncio
    async def test_ufw_failure_falls_back_to_iptables(self, db_session, metrics, audit_service, metadata, node_keys):
        executor = linux_host(node_keys, metrics, **{"ufw allow": command_failure()})
        report = READY.model_copy(update={"firewall_configured": False})
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, report, READY)

        await service.provision("203.0.113.20", "root", metadata.model_copy(update={"wg_port": 51999}))

        assert "iptables -A INPUT -p udp --dport 51999 -j ACCEPT" in executor.commands
        assert "iptables -A INPUT -p tcp --dport 22 -j ACCEPT" in executor.commands


class TestOnboardingFailures:
    """Test fail-fast behaviour"""

    @pytest.mark.asyncio
    async def test_unknown_os_is_rejected(self, db_session, metrics, registry, audit_service, metadata):
        """
        GIVEN a host no probe can classify
        WHEN provisioning
        THEN should raise UnsupportedOperatingSystemError and persist nothing
        """
        executor = ScriptedExecutor(metrics=metrics)
        service = make_service(db_session, executor, metrics, audit_service, OSFingerprint())

        with pytest.raises(UnsupportedOperatingSystemError, match="Could not detect operating system"):
            await service.provision("192.0.2.1", "root", metadata)

        assert db_session.query(Node).count() == 0
        service.auditor.check.assert_not_awaited()
        audit_service.log.assert_not_called()
        assert registry.get_sample_value(
            "nexusfleet_autoconfig_runs_total", {"result": "failed"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_stage_failure_is_wrapped(self, db_session, metrics, audit_service, metadata, node_keys):
        executor = linux_host(node_keys, metrics, **{"apt-get update": command_failure()})
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, FRESH, READY)

        with pytest.raises(AutoConfigStageError) as exc_info:
            await service.provision("203.0.113.20", "root", metadata)

        assert exc_info.value.stage == "install"
        assert isinstance(exc_info.value.__cause__, RemoteCommandError)
        assert db_session.query(Node).count() == 0

    @pytest.mark.asyncio
    async def test_placeholder_key_is_rejected(self, db_session, metrics, audit_service, metadata):
        executor = ScriptedExecutor(metrics=metrics, rules=[
            ("cat /etc/wireguard/publickey", "mock-success-output"),
        ])
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, READY, READY)

        with pytest.raises(InvalidNodePublicKeyError) as exc_info:
            await service.provision("203.0.113.20", "root", metadata)

        assert exc_info.value.stage == "key-retrieval"
        assert exc_info.value.public_key == "mock-success-output"
        assert db_session.query(Node).count() == 0

    @pytest.mark.asyncio
    async def test_unreadable_key_is_stage_error(self, db_session, metrics, audit_service, metadata):
        executor = ScriptedExecutor(metrics=metrics, rules=[
            ("cat /etc/wireguard/publickey", command_failure()),
        ])
        service = make_service(db_session, executor, metrics, audit_service, UBUNTU, READY, READY)

        with pytest.raises(AutoConfigStageError) as exc_info:
            await service.provision("203.0.113.20", "root", metadata)

        assert exc_info.value.stage == "key-retrieval"

    @pytest.mark.asyncio
    async def test_simulation_cannot_onboard(self, db_session, metrics, metadata):
        """
        GIVEN the simulated executor and the real detector
        WHEN provisioning
        THEN the canned output should be classified as unknown and rejected
        """
        service = NodeAutoConfigService(db_session, SimulatedRemoteExecutor(delay=0, metrics=metrics), metrics=metrics)

        with pytest.raises(UnsupportedOperatingSystemError):
            await service.provision("192.0.2.1", "root", metadata)


class TestWindowsOnboarding:
    @pytest.mark.asyncio
    async def test_windows_keypair_generated_locally(self, db_session, metrics, audit_service, metadata, node_keys):
        """
        GIVEN a Windows host without WireGuard
        WHEN provisioning
        THEN the config and public key file should be written and no forwarding stage run
        """
        executor = ScriptedExecutor(metrics=metrics, rules=[("Get-Content", node_keys[1])])
        report = RequirementReport(ssh_ready=True, ssh_state=ServiceState.RUNNING)
        service = make_service(db_session, executor, metrics, audit_service, WINDOWS, report, READY)

        result = await service.provision("198.51.100.7", "Administrator", metadata)

        assert executor.ran("wireguard-installer.exe")
        write = next(c for c in executor.commands if "Set-Content" in c)
        assert "Configurations\\wg0.conf" in write
        assert "Configurations\\publickey" in write
        assert "New-NetFirewallRule" in " ".join(executor.commands)
        assert "Enabling IP forwarding..." not in result.steps
        assert result.node.public_key == node_keys[1]
