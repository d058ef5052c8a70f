"""
Server Inventory Service

Best-effort hardware and runtime snapshot of a node: hostname, kernel,
uptime, timezone, memory, disk, IPv4 interfaces and the location and
contents of its WireGuard configuration.

Used by operators before and after onboarding. Probe failures leave the
corresponding field empty; nothing here raises for an unreachable or
unusual host.
"""

import logging
import re
from typing import List, Optional

from nexusfleet.models.schemas import (
    DiskInfo,
    MemoryInfo,
    NetworkInterfaceInfo,
    OSFamily,
    OSFingerprint,
    ServerInventory,
    WireGuardInstallInfo,
)
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.services.os_detection_service import OSDetectionService, ProbeRunner
from nexusfleet.services.requirement_audit_service import LINUX_WG_INSTALLED_PROBE, last_line

logger = logging.getLogger(__name__)

LINUX_CONFIG_PATHS = [
    "/etc/wireguard/wg0.conf",
    "/usr/local/etc/wireguard/wg0.conf",
    "/opt/wireguard/wg0.conf",
]
LINUX_CONFIG_SEARCH = 'find /etc /usr/local /opt /home -name "wg0.conf" 2>/dev/null | head -1'

WINDOWS_CONFIG_PATHS = [
    "C:\\Program Files\\WireGuard\\Data\\Configurations\\wg0.conf",
    "C:\\Program Files (x86)\\WireGuard\\Data\\Configurations\\wg0.conf",
    "C:\\ProgramData\\WireGuard\\Configurations\\wg0.conf",
]
WINDOWS_CONFIG_SEARCH = (
    'powershell -Command "Get-ChildItem -Path \\"C:\\Program Files\\", \\"C:\\ProgramData\\" '
    '-Recurse -Filter \\"wg0.conf\\" -ErrorAction SilentlyContinue '
    '| Select-Object -First 1 -ExpandProperty FullName"'
)

LINUX_MEMORY_PROBE = "free -m | grep Mem"
LINUX_DISK_PROBE = "df -BG / | tail -1 | awk '{print $2, $4}' | sed 's/G//g'"
LINUX_TIMEZONE_PROBE = (
    'timedatectl show -p Timezone --value 2>/dev/null || cat /etc/timezone 2>/dev/null || echo "UTC"'
)
LINUX_INTERFACES_PROBE = 'ip -4 addr show | grep -E "^[0-9]+:|inet " | grep -v "127.0.0.1" | head -6'

WINDOWS_HOSTNAME_PROBE = 'powershell -Command "$env:COMPUTERNAME"'
WINDOWS_TIMEZONE_PROBE = 'powershell -Command "[System.TimeZoneInfo]::Local.Id"'
WINDOWS_MEMORY_PROBE = (
    'powershell -Command "$mem = Get-WmiObject Win32_ComputerSystem; '
    "$total = [math]::Round($mem.TotalPhysicalMemory / 1MB, 0); "
    "$free = [math]::Round((Get-WmiObject Win32_OperatingSystem).FreePhysicalMemory / 1KB, 0); "
    'Write-Output \\"$total $free\\""'
)
WINDOWS_WG_SERVICE_PROBE = (
    'powershell -Command "Get-Service -Name \\"WireGuardTunnel*\\" -ErrorAction SilentlyContinue '
    '| Select-Object -First 1"'
)

_LISTEN_PORT = re.compile(r"ListenPort\s*=\s*(\d+)", re.IGNORECASE)
_ADDRESS = re.compile(r"Address\s*=\s*(\S+)", re.IGNORECASE)
_PUBLIC_KEY = re.compile(r"PublicKey\s*=\s*(\S+)", re.IGNORECASE)
_MEMORY = re.compile(r"(\d+)\s+(\d+)\s+(\d+)")
_INET = re.compile(r"inet\s+(\S+)")


def linux_read_config(path: str) -> str:
    return f'sudo cat {path} 2>/dev/null || cat {path} 2>/dev/null || echo ""'


def windows_read_config(path: str) -> str:
    return f"powershell -Command \"Get-Content '{path}' -ErrorAction SilentlyContinue\""


def _usable_config(content: Optional[str]) -> bool:
    if not content or not content.strip():
        return False
    return not any(
        marker in content for marker in ("No such file", "Permission denied", "Cannot find path")
    )


def parse_interfaces(output: str) -> List[NetworkInterfaceInfo]:
    """Pair `N: name:` header lines with the `inet` lines that follow them."""
    interfaces = []
    current = ""
    for line in output.splitlines():
        if not line.strip():
            continue
        if "inet " in line:
            match = _INET.search(line)
            if match and current:
                interfaces.append(
                    NetworkInterfaceInfo(name=current, address=match.group(1).split("/")[0])
                )
        elif ":" in line:
            parts = line.split(":")
            if len(parts) > 1:
                current = parts[1].strip()
    return interfaces


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ServerInventoryService:
    """
    Collects ServerInventory snapshots

    Usage:
        inventory = await ServerInventoryService(executor).collect(host, "root")
    """

    def __init__(self, executor: RemoteExecutor, detector: Optional[OSDetectionService] = None):
        self.executor = executor
        self.detector = detector or OSDetectionService(executor)

    async def collect(
        self,
        host: str,
        user: str = "root",
        credential: Optional[str] = None,
    ) -> ServerInventory:
        runner = ProbeRunner(self.executor, host, user, credential)
        fingerprint = await self.detector.detect_with(runner)
        inventory = ServerInventory(os=fingerprint)

        if fingerprint.family == OSFamily.LINUX:
            await self._collect_linux(runner, inventory)
        elif fingerprint.family == OSFamily.WINDOWS:
            await self._collect_windows(runner, inventory)
        else:
            logger.info(f"No inventory probes for {host} ({fingerprint.family.value})")

        return inventory

    async def fetch_wireguard_config(
        self,
        host: str,
        user: str = "root",
        credential: Optional[str] = None,
    ) -> Optional[str]:
        """Return the raw wg0.conf content of a node, or None if it cannot be found."""
        runner = ProbeRunner(self.executor, host, user, credential)
        fingerprint = await self.detector.detect_with(runner)
        path = await self.find_config_path(runner, fingerprint)

        if fingerprint.family == OSFamily.WINDOWS:
            candidates = [p for p in (path, WINDOWS_CONFIG_PATHS[0]) if p]
            read = windows_read_config
        else:
            candidates = [p for p in (path, LINUX_CONFIG_PATHS[0]) if p]
            read = linux_read_config

        for candidate in dict.fromkeys(candidates):
            content = await runner.run(read(candidate))
            if _usable_config(content):
                return content
        return None

    async def find_config_path(
        self,
        runner: ProbeRunner,
        fingerprint: OSFingerprint,
    ) -> Optional[str]:
        """Probe well-known locations, then fall back to a bounded search."""
        if fingerprint.family == OSFamily.WINDOWS:
            for path in WINDOWS_CONFIG_PATHS:
                exists = await runner.run(f"powershell -Command \"Test-Path '{path}'\"")
                if exists and exists.strip().lower() == "true":
                    return path
            found = await runner.run(WINDOWS_CONFIG_SEARCH, max_retries=1)
        else:
            for path in LINUX_CONFIG_PATHS:
                exists = await runner.run(f'test -f {path} && echo "exists" || echo "notfound"')
                if exists and "exists" in exists:
                    return path
            found = await runner.run(LINUX_CONFIG_SEARCH, max_retries=1)

        if found and found.strip() and "No such file" not in found and "Error" not in found:
            return found.strip()
        return None

    async def _collect_linux(self, runner: ProbeRunner, inventory: ServerInventory) -> None:
        inventory.hostname = await runner.run("hostname")
        inventory.kernel = await runner.run("uname -r")
        inventory.uptime = await runner.run("uptime -p")
        inventory.timezone = await runner.run_or(LINUX_TIMEZONE_PROBE, "UTC")

        memory = await runner.run(LINUX_MEMORY_PROBE)
        match = _MEMORY.search(memory or "")
        if match:
            inventory.memory = MemoryInfo(
                total_mb=int(match.group(1)),
                available_mb=int(match.group(3)),
            )

        disk = (await runner.run(LINUX_DISK_PROBE) or "").split()
        if len(disk) >= 2:
            inventory.disk = DiskInfo(total_gb=_to_int(disk[0]), available_gb=_to_int(disk[1]))

        interfaces = await runner.run(LINUX_INTERFACES_PROBE)
        if interfaces:
            inventory.interfaces = parse_interfaces(interfaces)

        installed = await runner.run(LINUX_WG_INSTALLED_PROBE)
        if last_line(installed) != "installed":
            inventory.wireguard = WireGuardInstallInfo(installed=False)
            return

        path = await self.find_config_path(runner, inventory.os) or LINUX_CONFIG_PATHS[0]
        inventory.wireguard = WireGuardInstallInfo(installed=True, config_path=path)
        self._apply_config(inventory.wireguard, await runner.run(linux_read_config(path)))

    async def _collect_windows(self, runner: ProbeRunner, inventory: ServerInventory) -> None:
        inventory.hostname = await runner.run(WINDOWS_HOSTNAME_PROBE)
        inventory.timezone = await runner.run(WINDOWS_TIMEZONE_PROBE)

        memory = (await runner.run(WINDOWS_MEMORY_PROBE) or "").split()
        if len(memory) >= 2:
            inventory.memory = MemoryInfo(total_mb=_to_int(memory[0]), available_mb=_to_int(memory[1]))

        path = await self.find_config_path(runner, inventory.os)
        if path:
            inventory.wireguard = WireGuardInstallInfo(installed=True, config_path=path)
            self._apply_config(inventory.wireguard, await runner.run(windows_read_config(path)))
            return

        service = await runner.run(WINDOWS_WG_SERVICE_PROBE)
        inventory.wireguard = WireGuardInstallInfo(installed=bool(service and service.strip()))

    @staticmethod
    def _apply_config(info: WireGuardInstallInfo, content: Optional[str]) -> None:
        if not _usable_config(content):
            return
        port = _LISTEN_PORT.search(content)
        address = _ADDRESS.search(content)
        public_key = _PUBLIC_KEY.search(content)
        if port:
            info.listen_port = int(port.group(1))
        if address:
            info.interface_address = address.group(1)
        if public_key:
            info.public_key = public_key.group(1)
