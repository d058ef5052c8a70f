"""
Fleet Settings

Environment-driven configuration for the fleet engine. Values are read once
with os.getenv and cached; tests build FleetSettings directly.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_settings_instance: Optional["FleetSettings"] = None
_settings_lock = threading.Lock()

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


class FleetSettings(BaseModel):
    """Runtime configuration for remote execution, loops and rendering."""

    database_url: str = Field("sqlite:///./nexusfleet.db")
    environment: str = Field("development", description="'production' makes peer provisioning fatal")
    log_level: str = Field("INFO")

    # SSH
    ssh_key_path: str = Field("/etc/nexusvpn/id_rsa")
    ssh_private_key: Optional[str] = Field(None, description="Inline private key (VPN_SSH_KEY)")
    ssh_public_key: Optional[str] = Field(None, description="Inline public key (VPN_SSH_PUBLIC_KEY)")
    mock_ssh: bool = Field(False, description="Force simulation mode")
    ssh_port: int = Field(22, ge=1, le=65535)
    ssh_command_timeout: float = Field(15.0, gt=0)
    ssh_max_retries: int = Field(3, ge=1)
    ssh_use_sudo: bool = Field(True)
    simulation_delay: float = Field(0.1, ge=0)

    # WireGuard
    wg_interface: str = Field("wg0")
    default_dns: str = Field("1.1.1.1")
    default_mtu: int = Field(1420, ge=1280, le=1500)
    persistent_keepalive: int = Field(25, ge=0, le=3600)

    # Policy
    maintenance_mode: bool = Field(False)

    # Loop intervals (seconds)
    health_check_interval: float = Field(30.0, gt=0)
    reconcile_interval: float = Field(300.0, gt=0)
    usage_sync_interval: float = Field(60.0, gt=0)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "FleetSettings":
        """Build settings from process environment variables."""
        private_key = os.getenv("VPN_SSH_KEY")
        if private_key:
            # env var content often carries escaped newlines
            private_key = private_key.replace("\\n", "\n")

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./nexusfleet.db"),
            environment=os.getenv("APP_ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            ssh_key_path=os.getenv("SSH_KEY_PATH", "/etc/nexusvpn/id_rsa"),
            ssh_private_key=private_key,
            ssh_public_key=os.getenv("VPN_SSH_PUBLIC_KEY"),
            mock_ssh=_env_flag("MOCK_SSH"),
            ssh_command_timeout=float(os.getenv("SSH_COMMAND_TIMEOUT", "15")),
            ssh_max_retries=int(os.getenv("SSH_MAX_RETRIES", "3")),
            ssh_use_sudo=_env_flag("SSH_USE_SUDO", default=True),
            simulation_delay=float(os.getenv("SIMULATION_DELAY", "0.1")),
            wg_interface=os.getenv("WG_INTERFACE", "wg0"),
            default_dns=os.getenv("DEFAULT_DNS", "1.1.1.1"),
            default_mtu=int(os.getenv("DEFAULT_MTU", "1420")),
            maintenance_mode=_env_flag("MAINTENANCE_MODE"),
            health_check_interval=float(os.getenv("HEALTH_CHECK_INTERVAL", "30")),
            reconcile_interval=float(os.getenv("RECONCILE_INTERVAL", "300")),
            usage_sync_interval=float(os.getenv("USAGE_SYNC_INTERVAL", "60")),
        )

    def load_private_key(self) -> Optional[str]:
        """
        Resolve SSH private key material.

        The key file takes precedence over the inline environment value.
        Returns None when neither is available (simulation mode).
        """
        path = Path(self.ssh_key_path)
        try:
            if path.is_file():
                return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read SSH key {path}: {e}")
        return self.ssh_private_key

    def load_public_key(self) -> Optional[str]:
        """Resolve the orchestrator's SSH public key used for trust bootstrap."""
        path = Path(f"{self.ssh_key_path}.pub")
        try:
            if path.is_file():
                return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning(f"Failed to read SSH public key {path}: {e}")
        if self.ssh_public_key:
            return self.ssh_public_key.strip()
        return None


def resolve_ssh_credential(ref: Optional[str]) -> Optional[str]:
    """
    Resolve a node's SSH credential reference to a secret.

    Supported forms:
        env:NAME   - value of environment variable NAME
        file:PATH  - stripped content of PATH

    Unknown or missing references resolve to None (key auth only).
    """
    if not ref:
        return None

    scheme, _, target = ref.partition(":")
    if scheme == "env" and target:
        return os.getenv(target)
    if scheme == "file" and target:
        try:
            return Path(target).read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning(f"Could not read credential file {target}: {e}")
            return None

    logger.warning(f"Unsupported SSH credential reference scheme: {scheme!r}")
    return None


def get_settings() -> FleetSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings_instance
    if _settings_instance is None:
        with _settings_lock:
            if _settings_instance is None:
                _settings_instance = FleetSettings.from_env()
    return _settings_instance


def reset_settings() -> None:
    """Drop cached settings (used by tests)."""
    global _settings_instance
    with _settings_lock:
        _settings_instance = None
