"""
WireGuard Remote Command Surface

Builds the exact `wg` command lines sent to nodes and parses their
tab-separated output.

`wg show <iface> dump` format:
    line 1 (interface): private-key  public-key  listen-port  fwmark
    line 2+ (peers):    public-key  preshared-key  endpoint  allowed-ips
                        latest-handshake  rx-bytes  tx-bytes  keepalive

`wg show <iface> transfer` format:
    public-key  rx-bytes  tx-bytes
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

INTERFACE_DUMP_FIELDS = 4
PEER_DUMP_FIELDS = 8
TRANSFER_FIELDS = 3

PUBLIC_KEY_PATH = "/etc/wireguard/publickey"


class DumpParseError(ValueError):
    """Raised when `wg show` output cannot be interpreted."""
    pass


@dataclass(frozen=True)
class DumpPeer:
    """One peer line of `wg show <iface> dump`"""
    public_key: str
    endpoint: Optional[str]
    allowed_ips: str
    latest_handshake: int
    rx_bytes: int
    tx_bytes: int


@dataclass(frozen=True)
class TransferSample:
    """One line of `wg show <iface> transfer`"""
    public_key: str
    rx_bytes: int
    tx_bytes: int


class WireGuardCommands:
    """
    Command line builder bound to one interface name.

    Args:
        interface: WireGuard interface name
        sudo: Prefix privileged commands with `sudo`
    """

    def __init__(self, interface: str = "wg0", sudo: bool = True):
        self.interface = interface
        self.sudo = sudo

    def _wg(self, args: str) -> str:
        prefix = "sudo " if self.sudo else ""
        return f"{prefix}wg {args}"

    def peer_dump(self) -> str:
        return self._wg(f"show {self.interface} dump")

    def transfer_dump(self) -> str:
        return self._wg(f"show {self.interface} transfer")

    def set_peer(self, public_key: str, allowed_ips: str) -> str:
        return self._wg(f"set {self.interface} peer {public_key} allowed-ips {allowed_ips}")

    def remove_peer(self, public_key: str) -> str:
        return self._wg(f"set {self.interface} peer {public_key} remove")

    def verify_peer(self, public_key: str) -> str:
        return f"{self.peer_dump()} | grep {public_key}"

    def peer_count(self) -> str:
        return f"{self.peer_dump()} | wc -l"

    def read_public_key(self) -> str:
        return f"cat {PUBLIC_KEY_PATH}"


def parse_peer_dump(output: str) -> List[DumpPeer]:
    """
    Parse `wg show <iface> dump` output into peer entries.

    The first line must be the interface line. An interface line alone
    is a valid, empty peer table.

    Raises:
        DumpParseError: Output is blank or any line has the wrong shape
    """
    lines = [line for line in (output or "").splitlines() if line.strip()]
    if not lines:
        raise DumpParseError("Empty dump output")

    interface_fields = lines[0].split("\t")
    if len(interface_fields) != INTERFACE_DUMP_FIELDS:
        raise DumpParseError(
            f"Malformed interface line: expected {INTERFACE_DUMP_FIELDS} fields, "
            f"got {len(interface_fields)}"
        )

    peers = []
    for line in lines[1:]:
        fields = line.split("\t")
        if len(fields) != PEER_DUMP_FIELDS:
            raise DumpParseError(
                f"Malformed peer line: expected {PEER_DUMP_FIELDS} fields, got {len(fields)}"
            )
        try:
            peers.append(DumpPeer(
                public_key=fields[0],
                endpoint=None if fields[2] == "(none)" else fields[2],
                allowed_ips=fields[3],
                latest_handshake=int(fields[4]),
                rx_bytes=int(fields[5]),
                tx_bytes=int(fields[6]),
            ))
        except ValueError as e:
            raise DumpParseError(f"Non-numeric counter in peer line: {e}") from e

    return peers


def parse_transfer(output: str) -> List[TransferSample]:
    """
    Parse `wg show <iface> transfer` output.

    Lines with the wrong number of fields or non-numeric counters are
    dropped individually.
    """
    samples = []
    for line in (output or "").splitlines():
        fields = line.strip().split("\t")
        if len(fields) != TRANSFER_FIELDS:
            continue
        try:
            rx, tx = int(fields[1]), int(fields[2])
        except ValueError:
            logger.debug(f"Skipping transfer line with bad counters: {line!r}")
            continue
        samples.append(TransferSample(public_key=fields[0], rx_bytes=rx, tx_bytes=tx))
    return samples


def count_peers_from_line_count(output: str) -> int:
    """Peer count from `dump | wc -l` output: all lines minus the interface line."""
    lines = int(output.strip())
    return max(0, lines - 1)
