"""
WireGuard Networking Package

Remote command execution against fleet nodes, the `wg` command surface and
its output parsers, key handling and configuration rendering.
"""

from nexusfleet.networking.remote_executor import (
    RemoteExecutor,
    SSHRemoteExecutor,
    SimulatedRemoteExecutor,
    RemoteExecutionError,
    RemoteConnectionError,
    RemoteCommandError,
    RetriesExhaustedError,
    build_remote_executor,
)

from nexusfleet.networking.wireguard_commands import (
    WireGuardCommands,
    DumpParseError,
    DumpPeer,
    TransferSample,
    parse_peer_dump,
    parse_transfer,
)

from nexusfleet.networking.wireguard_config import (
    ClientConfig,
    NodeInterfaceConfig,
)

__all__ = [
    "RemoteExecutor",
    "SSHRemoteExecutor",
    "SimulatedRemoteExecutor",
    "RemoteExecutionError",
    "RemoteConnectionError",
    "RemoteCommandError",
    "RetriesExhaustedError",
    "build_remote_executor",
    "WireGuardCommands",
    "DumpParseError",
    "DumpPeer",
    "TransferSample",
    "parse_peer_dump",
    "parse_transfer",
    "ClientConfig",
    "NodeInterfaceConfig",
]
