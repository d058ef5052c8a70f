"""
WireGuard Configuration Schema

Pydantic models for the two configuration files the fleet engine renders:
- ClientConfig: handed to an end-user device, full tunnel through a node
- NodeInterfaceConfig: the wg0.conf written onto a node during onboarding
"""

import base64
from ipaddress import AddressValueError, IPv4Address
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import conint

from nexusfleet.models.fleet import DEFAULT_WG_PORT, NODE_INTERFACE_ADDRESS

FULL_TUNNEL_ALLOWED_IPS = ["0.0.0.0/0", "::/0"]

NAT_POST_UP = (
    "iptables -A FORWARD -i wg0 -j ACCEPT; "
    "iptables -t nat -A POSTROUTING -o eth0 -j MASQUERADE"
)
NAT_POST_DOWN = (
    "iptables -D FORWARD -i wg0 -j ACCEPT; "
    "iptables -t nat -D POSTROUTING -o eth0 -j MASQUERADE"
)


def _validate_cidr_address(v: str) -> str:
    parts = v.split("/")
    if len(parts) != 2:
        raise ValueError("Address must include CIDR notation (e.g., 10.100.0.2/32)")
    try:
        IPv4Address(parts[0])
        prefix_len = int(parts[1])
    except (AddressValueError, ValueError) as e:
        raise ValueError(f"Invalid IP address format: {e}")
    if prefix_len < 0 or prefix_len > 32:
        raise ValueError("CIDR prefix must be between 0 and 32")
    return v


class ClientConfig(BaseModel):
    """
    Client Device Configuration

    Full-tunnel configuration returned once to the requesting user. The
    private key is embedded here and nowhere else.
    """
    private_key: str = Field(..., description="Base64-encoded client private key")
    address: str = Field(..., description="Assigned address, e.g. 10.100.0.2/32")
    dns: str = Field("1.1.1.1")
    mtu: conint(ge=1280, le=1500) = Field(1420)

    server_public_key: str = Field(..., min_length=1)
    endpoint: str = Field(..., description="node-address:port")
    allowed_ips: List[str] = Field(default_factory=lambda: list(FULL_TUNNEL_ALLOWED_IPS))
    persistent_keepalive: conint(ge=0, le=3600) = Field(25)

    model_config = ConfigDict(frozen=False)

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        """Private key must be 44 characters decoding to 32 bytes"""
        if len(v) != 44:
            raise ValueError("Private key must be 44 characters (base64 encoded)")
        try:
            decoded = base64.b64decode(v)
        except ValueError as e:
            raise ValueError(f"Invalid base64 private key: {e}")
        if len(decoded) != 32:
            raise ValueError("Private key must decode to 32 bytes")
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_cidr_address(v)

    def to_config_file(self) -> str:
        """
        Render the configuration in wg-quick file format.

        Returns:
            String representation of the client configuration file
        """
        lines = [
            "[Interface]",
            f"PrivateKey = {self.private_key}",
            f"Address = {self.address}",
            f"DNS = {self.dns}",
            f"MTU = {self.mtu}",
            "",
            "[Peer]",
            f"PublicKey = {self.server_public_key}",
            f"AllowedIPs = {', '.join(self.allowed_ips)}",
            f"Endpoint = {self.endpoint}",
        ]
        if self.persistent_keepalive > 0:
            lines.append(f"PersistentKeepalive = {self.persistent_keepalive}")
        lines.append("")
        return "\n".join(lines)


class NodeInterfaceConfig(BaseModel):
    """Server-side wg0 interface configuration written during onboarding"""
    private_key: str = Field(..., min_length=1)
    address: str = Field(NODE_INTERFACE_ADDRESS)
    listen_port: conint(ge=1, le=65535) = Field(DEFAULT_WG_PORT)
    post_up: Optional[str] = Field(NAT_POST_UP)
    post_down: Optional[str] = Field(NAT_POST_DOWN)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_cidr_address(v)

    def to_config_file(self) -> str:
        lines = [
            "[Interface]",
            f"PrivateKey = {self.private_key}",
            f"Address = {self.address}",
            f"ListenPort = {self.listen_port}",
        ]
        if self.post_up:
            lines.append(f"PostUp = {self.post_up}")
        if self.post_down:
            lines.append(f"PostDown = {self.post_down}")
        lines.append("")
        return "\n".join(lines)
