"""
Pytest configuration and shared fixtures
"""

import os

# Process settings are read on first import of nexusfleet.db
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MOCK_SSH", "true")

from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nexusfleet.config import FleetSettings
from nexusfleet.db.base import Base
from nexusfleet.models.fleet import Node
from nexusfleet.networking.remote_executor import (
    RemoteCommandError,
    RemoteConnectionError,
    RemoteExecutor,
    RetriesExhaustedError,
)
from nexusfleet.services.prometheus_metrics_service import PrometheusMetricsService

Response = Union[str, BaseException, Callable[[str], str]]


class ScriptedExecutor(RemoteExecutor):
    """
    Remote executor answering from an ordered list of (substring, response) rules.

    A response may be a string, an exception instance (raised) or a callable
    taking the command. Unmatched commands return `default`. Every call is
    recorded as (host, command).
    """

    def __init__(
        self,
        rules: Optional[List[Tuple[str, Response]]] = None,
        default: Response = "",
        metrics: Optional[PrometheusMetricsService] = None,
        simulated: bool = False,
    ):
        super().__init__(public_key="ssh-ed25519 AAAAC3Nza-test orchestrator", metrics=metrics)
        self.rules: List[Tuple[str, Response]] = list(rules or [])
        self.default = default
        self.is_simulated = simulated
        self.calls: List[Tuple[str, str]] = []

    def on(self, needle: str, response: Response) -> "ScriptedExecutor":
        self.rules.append((needle, response))
        return self

    @property
    def commands(self) -> List[str]:
        return [command for _, command in self.calls]

    def ran(self, needle: str) -> bool:
        return any(needle in command for command in self.commands)

    async def execute(self, command, host, user="root", max_retries=3, credential_override=None):
        self.calls.append((host, command))
        response = self.default
        for needle, candidate in self.rules:
            if needle in command:
                response = candidate
                break

        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(command)
        return response


def command_failure(host: str = "203.0.113.10", command: str = "cmd", code: int = 1) -> RemoteCommandError:
    return RemoteCommandError(host, command, code, "boom")


INTERFACE_DUMP_LINE = "cHJpdmF0ZQ==\tcHVibGlj\t51820\toff"


class FakeWireGuardHost:
    """
    In-memory wg0 peer table answering the fleet's remote command surface.

    peers maps public key -> [allowed_ips, rx_bytes, tx_bytes].
    """

    def __init__(self, public_key: Optional[str] = "HostPublicKeyAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", reachable: bool = True):
        self.public_key = public_key
        self.reachable = reachable
        self.peers: Dict[str, List] = {}

    def add_peer(self, public_key: str, allowed_ips: str = "10.100.0.2/32", rx: int = 0, tx: int = 0) -> None:
        self.peers[public_key] = [allowed_ips, rx, tx]

    def set_counters(self, public_key: str, rx: int, tx: int) -> None:
        self.peers[public_key][1] = rx
        self.peers[public_key][2] = tx

    def _dump(self) -> str:
        lines = [INTERFACE_DUMP_LINE]
        for key, (allowed, rx, tx) in self.peers.items():
            lines.append(f"{key}\t(none)\t(none)\t{allowed}\t0\t{rx}\t{tx}\toff")
        return "\n".join(lines)

    def handle(self, command: str) -> str:
        tokens = command.split()
        if "| wc -l" in command:
            return str(len(self.peers) + 1)
        if "| grep" in command:
            key = tokens[-1]
            if key not in self.peers:
                raise command_failure(command=command)
            return next(line for line in self._dump().splitlines() if line.startswith(key))
        if "dump" in command:
            return self._dump()
        if "transfer" in command:
            return "\n".join(f"{key}\t{rx}\t{tx}" for key, (_, rx, tx) in self.peers.items())
        if "peer" in tokens and tokens[-1] == "remove":
            self.peers.pop(tokens[tokens.index("peer") + 1], None)
            return ""
        if "allowed-ips" in tokens:
            key = tokens[tokens.index("peer") + 1]
            self.peers.setdefault(key, [tokens[tokens.index("allowed-ips") + 1], 0, 0])
            return ""
        if "publickey" in command:
            if self.public_key is None:
                raise command_failure(command=command)
            return self.public_key
        if command.startswith("uname"):
            return "Linux"
        return ""


class FleetExecutor(RemoteExecutor):
    """Routes commands to FakeWireGuardHost instances by address; unknown or unreachable hosts exhaust retries."""

    def __init__(self, hosts: Optional[Dict[str, FakeWireGuardHost]] = None, metrics=None):
        super().__init__(metrics=metrics)
        self.hosts: Dict[str, FakeWireGuardHost] = dict(hosts or {})
        self.calls: List[Tuple[str, str]] = []

    def commands_for(self, host: str) -> List[str]:
        return [command for h, command in self.calls if h == host]

    async def execute(self, command, host, user="root", max_retries=3, credential_override=None):
        self.calls.append((host, command))
        target = self.hosts.get(host)
        if target is None or not target.reachable:
            raise RetriesExhaustedError(host, max_retries, RemoteConnectionError(f"{host} unreachable"))
        return target.handle(command)


@pytest.fixture
def registry():
    """Isolated Prometheus registry"""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return PrometheusMetricsService(registry=registry)


@pytest.fixture
def settings():
    return FleetSettings(database_url="sqlite://", ssh_key_path="/nonexistent/id_rsa")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_node(db_session):
    """Factory persisting a Node with sensible defaults"""

    def _make_node(**overrides) -> Node:
        values = {
            "name": "Frankfurt-1",
            "city": "Frankfurt",
            "country": "Germany",
            "country_code": "DE",
            "public_address": "203.0.113.10",
            "ssh_user": "root",
            "public_key": "NodePublicKeyAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=",
            "is_active": True,
        }
        values.update(overrides)
        node = Node(**values)
        db_session.add(node)
        db_session.commit()
        db_session.refresh(node)
        return node

    return _make_node
