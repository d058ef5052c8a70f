"""
Fleet Value Schemas

Pydantic models for transient values produced while probing and
onboarding nodes: OS fingerprints, requirement reports, inventory
snapshots and auto-configuration results.
"""

from enum import Enum
from ipaddress import IPv4Address
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nexusfleet.models.fleet import DEFAULT_WG_PORT


class OSFamily(str, Enum):
    """Operating system family of a remote host"""
    WINDOWS = "windows"
    LINUX = "linux"
    MACOS = "macos"
    UNKNOWN = "unknown"


class ServiceState(str, Enum):
    """Observed state of a remote service"""
    RUNNING = "running"
    STOPPED = "stopped"
    NOT_INSTALLED = "not-installed"


APT_DISTRIBUTIONS = {"ubuntu", "debian"}
YUM_DISTRIBUTIONS = {"centos", "rhel", "fedora", "rocky", "almalinux"}


class OSFingerprint(BaseModel):
    """Result of OS detection; fields stay None when unresolved"""
    model_config = ConfigDict(use_enum_values=False)

    family: OSFamily = OSFamily.UNKNOWN
    distribution: Optional[str] = None
    version: Optional[str] = None
    architecture: Optional[str] = None

    @property
    def is_apt_family(self) -> bool:
        return self.family == OSFamily.LINUX and self.distribution in APT_DISTRIBUTIONS

    @property
    def is_yum_family(self) -> bool:
        return self.family == OSFamily.LINUX and self.distribution in YUM_DISTRIBUTIONS

    def describe(self) -> str:
        parts = [self.family.value, self.distribution or "", self.version or ""]
        return " ".join(p for p in parts if p)


class RequirementReport(BaseModel):
    """
    Requirement audit of a node.

    Defaults are the most pessimistic values; probes only ever upgrade them.
    """
    ssh_ready: bool = False
    ssh_state: ServiceState = ServiceState.NOT_INSTALLED
    wireguard_state: ServiceState = ServiceState.NOT_INSTALLED
    firewall_configured: bool = False
    ip_forwarding_enabled: bool = False
    required_ports: List[int] = Field(default_factory=lambda: [22, DEFAULT_WG_PORT])
    missing_packages: List[str] = Field(default_factory=list)

    @property
    def wireguard_running(self) -> bool:
        return self.wireguard_state == ServiceState.RUNNING


class NodeMetadata(BaseModel):
    """Operator-supplied attributes for a node being onboarded"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = Field(None, max_length=8)
    wg_port: int = Field(DEFAULT_WG_PORT, ge=1, le=65535)
    ssh_credential_ref: Optional[str] = None


class GenerateConfigRequest(BaseModel):
    """Caller overrides for client config generation"""
    model_config = ConfigDict(extra="forbid")

    node_id: str = Field(..., min_length=1)
    dns: Optional[str] = Field(None, description="IPv4 DNS server override")
    mtu: Optional[int] = Field(None, ge=1280, le=1500)

    @field_validator("dns")
    @classmethod
    def validate_dns(cls, v):
        """DNS override must be a plain IPv4 address"""
        if v is None:
            return v
        IPv4Address(v)
        return v


class MemoryInfo(BaseModel):
    total_mb: Optional[int] = None
    available_mb: Optional[int] = None


class DiskInfo(BaseModel):
    total_gb: Optional[int] = None
    available_gb: Optional[int] = None


class WireGuardInstallInfo(BaseModel):
    installed: bool = False
    config_path: Optional[str] = None
    listen_port: Optional[int] = None
    interface_address: Optional[str] = None
    public_key: Optional[str] = None


class NetworkInterfaceInfo(BaseModel):
    name: str
    address: str


class ServerInventory(BaseModel):
    """Best-effort hardware and runtime snapshot of a node"""
    os: OSFingerprint = Field(default_factory=OSFingerprint)
    hostname: Optional[str] = None
    kernel: Optional[str] = None
    uptime: Optional[str] = None
    timezone: Optional[str] = None
    memory: Optional[MemoryInfo] = None
    disk: Optional[DiskInfo] = None
    interfaces: List[NetworkInterfaceInfo] = Field(default_factory=list)
    wireguard: WireGuardInstallInfo = Field(default_factory=WireGuardInstallInfo)


class AutoConfigResult(BaseModel):
    """Outcome of a successful node onboarding"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    node: Any
    fingerprint: OSFingerprint
    final_report: RequirementReport
    steps: List[str] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "node_id": self.node.id,
            "name": self.node.name,
            "os": self.fingerprint.describe(),
            "steps": list(self.steps),
        }
