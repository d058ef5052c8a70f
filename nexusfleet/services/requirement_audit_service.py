"""
Requirement Audit Service

Runs a read-only probe battery against a node and reports what the
onboarding pipeline still has to do: SSH and WireGuard service state,
firewall, IP forwarding and missing packages.

Each probe stands alone. A probe that fails leaves its field at the
pessimistic default of RequirementReport; the rest of the battery still
runs.
"""

import logging
from typing import List, Optional

from nexusfleet.models.fleet import DEFAULT_WG_PORT
from nexusfleet.models.schemas import (
    OSFamily,
    OSFingerprint,
    RequirementReport,
    ServiceState,
)
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.services.os_detection_service import ProbeRunner

logger = logging.getLogger(__name__)

APT_PACKAGES = ["wireguard", "qrencode", "iptables"]
YUM_PACKAGES = ["wireguard-tools"]
BREW_PACKAGES = ["wireguard-tools"]

# Linux
LINUX_SSH_PROBE = 'systemctl is-active sshd 2>/dev/null || systemctl is-active ssh 2>/dev/null || echo "inactive"'
LINUX_WG_INSTALLED_PROBE = 'which wg 2>/dev/null && echo "installed" || echo "not-installed"'
LINUX_WG_ACTIVE_PROBE = 'systemctl is-active wg-quick@wg0 2>/dev/null || echo "inactive"'
LINUX_UFW_PROBE = 'which ufw 2>/dev/null && ufw status | head -1 || echo "not-installed"'
LINUX_IPTABLES_PROBE = "iptables -L -n 2>/dev/null | head -5 | wc -l"
LINUX_IP_FORWARD_PROBE = "sysctl net.ipv4.ip_forward | awk '{print $3}'"

# Windows
WIN_SSH_PROBE = (
    'powershell -Command "Get-Service sshd -ErrorAction SilentlyContinue '
    '| Select-Object -ExpandProperty Status"'
)
WIN_WG_SERVICE_PROBE = (
    'powershell -Command "Get-Service -Name \\"WireGuardTunnel*\\" -ErrorAction SilentlyContinue '
    '| Select-Object -First 1 -ExpandProperty Status"'
)
WIN_WG_EXE_PROBE = 'powershell -Command "Test-Path \\"C:\\Program Files\\WireGuard\\wg.exe\\""'
WIN_FIREWALL_PROBE = 'powershell -Command "(Get-NetFirewallProfile -Profile Domain,Public,Private).Enabled"'

# macOS
MAC_SSH_PROBE = 'sudo launchctl list | grep sshd || echo "not-running"'


def dpkg_probe(package: str) -> str:
    return f'dpkg -l | grep -q "^ii.*{package}" && echo "installed" || echo "missing"'


def rpm_probe(package: str) -> str:
    return f'rpm -q {package} 2>/dev/null && echo "installed" || echo "missing"'


def brew_probe(package: str) -> str:
    return f'brew list {package} >/dev/null 2>&1 && echo "installed" || echo "missing"'


def last_line(output: Optional[str]) -> str:
    if not output:
        return ""
    lines = output.strip().splitlines()
    return lines[-1].strip() if lines else ""


class RequirementAuditService:
    """Audits a node's readiness to serve as a WireGuard endpoint"""

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    async def check(
        self,
        host: str,
        user: str,
        fingerprint: OSFingerprint,
        credential: Optional[str] = None,
        wg_port: int = DEFAULT_WG_PORT,
    ) -> RequirementReport:
        """
        Produce a RequirementReport for a host whose OS is already known.

        Args:
            host: Node address
            user: SSH user
            fingerprint: Result of OS detection
            credential: Optional password credential
            wg_port: WireGuard listen port reported in required_ports

        Returns:
            RequirementReport; all-false for unknown hosts
        """
        report = RequirementReport(required_ports=[22, wg_port])
        runner = ProbeRunner(self.executor, host, user, credential)

        if fingerprint.family == OSFamily.WINDOWS:
            await self._check_windows(runner, report)
        elif fingerprint.family == OSFamily.LINUX:
            await self._check_linux(runner, fingerprint, report)
        elif fingerprint.family == OSFamily.MACOS:
            await self._check_macos(runner, report)
        else:
            logger.warning(f"Skipping requirement audit for {host}: unknown OS")

        logger.info(
            f"Requirement audit for {host}: ssh={report.ssh_state.value}, "
            f"wireguard={report.wireguard_state.value}, firewall={report.firewall_configured}, "
            f"forwarding={report.ip_forwarding_enabled}, missing={report.missing_packages}"
        )
        return report

    async def _check_windows(self, runner: ProbeRunner, report: RequirementReport) -> None:
        ssh_status = await runner.run(WIN_SSH_PROBE)
        if ssh_status is not None:
            report.ssh_ready = "running" in ssh_status.lower()
            report.ssh_state = ServiceState.RUNNING if report.ssh_ready else ServiceState.STOPPED

        wg_status = await runner.run(WIN_WG_SERVICE_PROBE)
        if wg_status and wg_status.strip():
            report.wireguard_state = (
                ServiceState.RUNNING if "running" in wg_status.lower() else ServiceState.STOPPED
            )
        else:
            wg_exe = await runner.run(WIN_WG_EXE_PROBE)
            if wg_exe and wg_exe.strip().lower() == "true":
                report.wireguard_state = ServiceState.STOPPED

        firewall = await runner.run(WIN_FIREWALL_PROBE)
        report.firewall_configured = bool(firewall and "True" in firewall)

    async def _check_linux(
        self,
        runner: ProbeRunner,
        fingerprint: OSFingerprint,
        report: RequirementReport,
    ) -> None:
        ssh_status = await runner.run(LINUX_SSH_PROBE)
        if ssh_status is not None:
            state = last_line(ssh_status)
            report.ssh_ready = state == "active"
            if report.ssh_ready:
                report.ssh_state = ServiceState.RUNNING
            elif "inactive" in ssh_status:
                report.ssh_state = ServiceState.STOPPED

        wg_installed = last_line(await runner.run(LINUX_WG_INSTALLED_PROBE))
        if wg_installed == "installed":
            wg_active = await runner.run(LINUX_WG_ACTIVE_PROBE)
            report.wireguard_state = (
                ServiceState.RUNNING if last_line(wg_active) == "active" else ServiceState.STOPPED
            )

        ufw = await runner.run(LINUX_UFW_PROBE)
        if ufw is not None and "not-installed" not in ufw:
            report.firewall_configured = "Status: active" in ufw
        else:
            rule_lines = await runner.run(LINUX_IPTABLES_PROBE)
            try:
                report.firewall_configured = int((rule_lines or "0").strip()) > 0
            except ValueError:
                report.firewall_configured = False

        ip_forward = await runner.run(LINUX_IP_FORWARD_PROBE)
        report.ip_forwarding_enabled = bool(ip_forward and ip_forward.strip() == "1")

        if fingerprint.is_apt_family:
            report.missing_packages = await self._missing(runner, APT_PACKAGES, dpkg_probe)
        elif fingerprint.is_yum_family:
            report.missing_packages = await self._missing(runner, YUM_PACKAGES, rpm_probe)

    async def _check_macos(self, runner: ProbeRunner, report: RequirementReport) -> None:
        ssh_status = await runner.run(MAC_SSH_PROBE)
        if ssh_status is not None:
            report.ssh_ready = "not-running" not in ssh_status
            report.ssh_state = ServiceState.RUNNING if report.ssh_ready else ServiceState.STOPPED

        # WireGuard on macOS is not a managed service; installed means stopped
        if last_line(await runner.run(LINUX_WG_INSTALLED_PROBE)) == "installed":
            report.wireguard_state = ServiceState.STOPPED

        report.missing_packages = await self._missing(runner, BREW_PACKAGES, brew_probe)

    @staticmethod
    async def _missing(runner: ProbeRunner, packages: List[str], probe_for) -> List[str]:
        missing = []
        for package in packages:
            result = last_line(await runner.run(probe_for(package)))
            if result != "installed":
                missing.append(package)
        return missing
