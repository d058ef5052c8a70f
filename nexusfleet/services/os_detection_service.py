"""
OS Detection Service

Classifies the operating system of a remote host through a fixed, ordered
list of probes. The first probe whose classifier returns a family wins;
follow-up probes for that family then resolve distribution, version and
architecture.

Every probe is best-effort. A failing probe leaves its field unresolved
and detection degrades to partial information, ending at `unknown`.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from nexusfleet.models.schemas import OSFamily, OSFingerprint
from nexusfleet.networking.remote_executor import RemoteExecutor

logger = logging.getLogger(__name__)

UNKNOWN_FIELD = "unknown"

SIMULATION_MARKERS = ("SIMULATION", "mock")

PS_VERSION_PROBE = 'powershell -Command "$PSVersionTable.PSVersion.Major"'
PS_CAPTION_PROBE = 'powershell -Command "(Get-CimInstance Win32_OperatingSystem).Caption"'
PS_VERSION_DETAIL_PROBE = 'powershell -Command "(Get-CimInstance Win32_OperatingSystem).Version"'
PS_ARCH_PROBE = 'powershell -Command "$env:PROCESSOR_ARCHITECTURE"'
UNAME_KERNEL_PROBE = "uname -s"
UNAME_MACHINE_PROBE = "uname -m"
OS_RELEASE_EXISTS_PROBE = 'test -f /etc/os-release && echo "yes"'
OS_RELEASE_READ_PROBE = "cat /etc/os-release"
LSB_RELEASE_PROBE = 'lsb_release -is 2>/dev/null || echo "unknown"'
SW_VERS_PROBE = "sw_vers -productVersion"

_OS_RELEASE_ID = re.compile(r"^ID=(.+)$", re.MULTILINE)
_OS_RELEASE_VERSION = re.compile(r'^VERSION_ID="?([^"\n]+)"?', re.MULTILINE)


def looks_simulated(output: Optional[str]) -> bool:
    return output is not None and any(marker in output for marker in SIMULATION_MARKERS)


class ProbeRunner:
    """
    Runs read-only probe commands against one host.

    Any exception from the executor is logged and mapped to None, the
    "unresolved" sentinel. Outputs are cached per command for the lifetime
    of the runner, so classifiers sharing a probe cost one round-trip.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        host: str,
        user: str = "root",
        credential: Optional[str] = None,
        max_retries: int = 3,
    ):
        self.executor = executor
        self.host = host
        self.user = user
        self.credential = credential
        self.max_retries = max_retries
        self._cache: Dict[str, Optional[str]] = {}

    async def run(self, command: str, max_retries: Optional[int] = None) -> Optional[str]:
        if command in self._cache:
            return self._cache[command]

        try:
            output = await self.executor.execute(
                command,
                self.host,
                self.user,
                max_retries or self.max_retries,
                self.credential,
            )
        except Exception as e:
            logger.debug(f"Probe on {self.host} unresolved ({command}): {e}")
            output = None

        self._cache[command] = output
        return output

    async def run_or(self, command: str, default: str) -> str:
        output = await self.run(command)
        if output is None or not output.strip():
            return default
        return output.strip()


def classify_powershell(output: Optional[str]) -> Optional[OSFamily]:
    """Windows when PowerShell reports a major version of at least 3."""
    if output is None or looks_simulated(output):
        return None
    try:
        major = int(output.strip())
    except ValueError:
        return None
    return OSFamily.WINDOWS if major >= 3 else None


def classify_uname_linux(output: Optional[str]) -> Optional[OSFamily]:
    if output and "linux" in output.lower():
        return OSFamily.LINUX
    return None


def classify_uname_darwin(output: Optional[str]) -> Optional[OSFamily]:
    if output and "darwin" in output.lower():
        return OSFamily.MACOS
    return None


@dataclass(frozen=True)
class OSProbe:
    """One detection step: a command and the classifier applied to its output"""
    name: str
    command: str
    classify: Callable[[Optional[str]], Optional[OSFamily]]


DEFAULT_PROBES: List[OSProbe] = [
    OSProbe("powershell", PS_VERSION_PROBE, classify_powershell),
    OSProbe("uname-linux", UNAME_KERNEL_PROBE, classify_uname_linux),
    OSProbe("uname-darwin", UNAME_KERNEL_PROBE, classify_uname_darwin),
]


class OSDetectionService:
    """
    Service for fingerprinting remote operating systems

    Usage:
        detector = OSDetectionService(executor)
        fingerprint = await detector.detect("203.0.113.10", "root")
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        probes: Optional[List[OSProbe]] = None,
    ):
        self.executor = executor
        self.probes = list(probes) if probes is not None else list(DEFAULT_PROBES)
        self._describers: Dict[OSFamily, Callable[[ProbeRunner], Awaitable[OSFingerprint]]] = {
            OSFamily.WINDOWS: self._describe_windows,
            OSFamily.LINUX: self._describe_linux,
            OSFamily.MACOS: self._describe_macos,
        }

    async def detect(
        self,
        host: str,
        user: str = "root",
        credential: Optional[str] = None,
    ) -> OSFingerprint:
        """
        Detect the operating system of a host.

        Never raises for probe failures; returns family `unknown` when no
        probe classifies the host.
        """
        runner = ProbeRunner(self.executor, host, user, credential)
        return await self.detect_with(runner)

    async def detect_with(self, runner: ProbeRunner) -> OSFingerprint:
        for probe in self.probes:
            output = await runner.run(probe.command)
            family = probe.classify(output)
            if family is None:
                continue

            logger.info(f"Host {runner.host} classified as {family.value} by {probe.name} probe")
            return await self._describers[family](runner)

        logger.warning(f"Could not detect OS on {runner.host}")
        return OSFingerprint(family=OSFamily.UNKNOWN)

    async def _describe_windows(self, runner: ProbeRunner) -> OSFingerprint:
        caption = await runner.run(PS_CAPTION_PROBE)
        if caption is None or not caption.strip():
            distribution = UNKNOWN_FIELD
        elif "server" in caption.lower():
            distribution = "windows-server"
        else:
            distribution = "windows"

        return OSFingerprint(
            family=OSFamily.WINDOWS,
            distribution=distribution,
            version=await runner.run_or(PS_VERSION_DETAIL_PROBE, UNKNOWN_FIELD),
            architecture=await runner.run_or(PS_ARCH_PROBE, UNKNOWN_FIELD),
        )

    async def _describe_linux(self, runner: ProbeRunner) -> OSFingerprint:
        distribution = None
        version = UNKNOWN_FIELD

        exists = await runner.run(OS_RELEASE_EXISTS_PROBE)
        if exists and "yes" in exists:
            os_release = await runner.run(OS_RELEASE_READ_PROBE)
            if os_release:
                id_match = _OS_RELEASE_ID.search(os_release)
                version_match = _OS_RELEASE_VERSION.search(os_release)
                if id_match:
                    distribution = id_match.group(1).replace('"', "").strip().lower()
                if version_match:
                    version = version_match.group(1).replace('"', "").strip()

        if not distribution:
            lsb = await runner.run(LSB_RELEASE_PROBE)
            if lsb and lsb.strip() and UNKNOWN_FIELD not in lsb.lower():
                distribution = lsb.strip().lower()

        return OSFingerprint(
            family=OSFamily.LINUX,
            distribution=distribution or "linux",
            version=version,
            architecture=await runner.run_or(UNAME_MACHINE_PROBE, UNKNOWN_FIELD),
        )

    async def _describe_macos(self, runner: ProbeRunner) -> OSFingerprint:
        return OSFingerprint(
            family=OSFamily.MACOS,
            distribution="macos",
            version=await runner.run_or(SW_VERS_PROBE, UNKNOWN_FIELD),
            architecture=await runner.run_or(UNAME_MACHINE_PROBE, UNKNOWN_FIELD),
        )
