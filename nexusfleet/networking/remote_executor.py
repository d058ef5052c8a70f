"""
Remote Command Execution

Runs shell commands on fleet nodes over SSH with a per-attempt timeout and
exponential backoff between attempts.

Two implementations share the RemoteExecutor interface:
- SSHRemoteExecutor: real asyncssh connections
- SimulatedRemoteExecutor: deterministic canned responses, selected when no
  SSH key material is configured or MOCK_SSH is set

Retry policy:
- connection errors, auth failures and timeouts are retried, waiting
  2 ** (attempt - 1) seconds between attempts
- a non-zero exit status is surfaced immediately, never retried
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Optional, Tuple

import asyncssh

from nexusfleet.config import FleetSettings
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)

logger = logging.getLogger(__name__)

DEV_PUBLIC_KEY = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABgQC...mock-key... nexusfleet-dev"


class RemoteExecutionError(Exception):
    """Base exception for remote command execution."""
    pass


class RemoteConnectionError(RemoteExecutionError):
    """Raised for a single failed attempt: unreachable host, auth failure or timeout."""
    pass


class RemoteCommandError(RemoteExecutionError):
    """Raised when the remote command exits with a non-zero status."""

    def __init__(self, host: str, command: str, exit_status: int, stderr: str = ""):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(
            f"Command failed on {host} with code {exit_status}"
            + (f": {stderr.strip()}" if stderr and stderr.strip() else "")
        )


class RetriesExhaustedError(RemoteExecutionError):
    """Raised when every connection attempt to a host has failed."""

    def __init__(self, host: str, attempts: int, last_error: Optional[BaseException]):
        self.host = host
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All {attempts} attempts to reach {host} exhausted. Last error: {last_error}"
        )


class RemoteExecutor(ABC):
    """
    Executes shell commands on named hosts.

    Callers decide whether a failure is fatal; nothing is swallowed here.
    """

    is_simulated = False

    def __init__(
        self,
        public_key: Optional[str] = None,
        metrics: Optional[PrometheusMetricsService] = None,
    ):
        self._public_key = public_key
        self.metrics = metrics or get_metrics_service()

    def get_public_key(self) -> str:
        """SSH public key to install on nodes during trust bootstrap."""
        return self._public_key or DEV_PUBLIC_KEY

    @abstractmethod
    async def execute(
        self,
        command: str,
        host: str,
        user: str = "root",
        max_retries: int = 3,
        credential_override: Optional[str] = None,
    ) -> str:
        """
        Run a command on a host and return its stripped stdout.

        Args:
            command: Shell command line
            host: Hostname or IP address
            user: SSH username
            max_retries: Total connection attempts before giving up
            credential_override: Password used alongside key authentication

        Raises:
            RemoteCommandError: Command exited non-zero
            RetriesExhaustedError: No attempt could complete
        """


class SSHRemoteExecutor(RemoteExecutor):
    """asyncssh-backed executor with per-attempt timeout and backoff"""

    def __init__(
        self,
        client_key: asyncssh.SSHKey,
        public_key: Optional[str] = None,
        port: int = 22,
        command_timeout: float = 15.0,
        metrics: Optional[PrometheusMetricsService] = None,
    ):
        if public_key is None:
            public_key = client_key.export_public_key().decode("ascii").strip()
        super().__init__(public_key=public_key, metrics=metrics)
        self._client_key = client_key
        self.port = port
        self.command_timeout = command_timeout

        logger.info(
            f"Initialized SSH remote executor (port={port}, timeout={command_timeout}s)"
        )

    @staticmethod
    def backoff_delay(attempt: int) -> int:
        """Delay in seconds after the given 1-based failed attempt."""
        return 2 ** (attempt - 1)

    async def execute(
        self,
        command: str,
        host: str,
        user: str = "root",
        max_retries: int = 3,
        credential_override: Optional[str] = None,
    ) -> str:
        max_retries = max(1, max_retries)
        last_error: Optional[RemoteConnectionError] = None

        for attempt in range(1, max_retries + 1):
            try:
                output = await asyncio.wait_for(
                    self._run_once(command, host, user, credential_override),
                    timeout=self.command_timeout,
                )
                self.metrics.record_remote_command("success")
                return output

            except RemoteCommandError as e:
                self.metrics.record_remote_command("command_failed")
                logger.error(f"[SSH {host}] Cmd: {command} | Exit Code: {e.exit_status}")
                raise

            except asyncio.TimeoutError:
                last_error = RemoteConnectionError(
                    f"Timed out after {self.command_timeout}s on {host}"
                )
            except (asyncssh.Error, OSError) as e:
                last_error = RemoteConnectionError(f"SSH error on {host}: {e}")

            self.metrics.record_remote_command("connection_failed")
            logger.warning(
                f"[SSH {host}] attempt {attempt}/{max_retries} failed: {last_error}"
            )

            if attempt < max_retries:
                delay = self.backoff_delay(attempt)
                logger.debug(f"[SSH {host}] retrying in {delay}s")
                await asyncio.sleep(delay)

        raise RetriesExhaustedError(host, max_retries, last_error) from last_error

    async def _run_once(
        self,
        command: str,
        host: str,
        user: str,
        password: Optional[str],
    ) -> str:
        """Open one connection, run the command, close the connection."""
        async with asyncssh.connect(
            host,
            port=self.port,
            username=user,
            client_keys=[self._client_key],
            password=password,
            known_hosts=None,  # nodes are onboarded by address, no pinned host keys
        ) as conn:
            result = await conn.run(command, check=False)

        exit_status = result.exit_status if result.exit_status is not None else -1
        if exit_status != 0:
            raise RemoteCommandError(host, command, exit_status, str(result.stderr or ""))

        return str(result.stdout or "").strip()


MOCK_PEER_KEY = "mock-peer-key"
SIMULATED_SERVER_PUBLIC_KEY = "SimulatedServerPublicKeyBase64="
MOCK_SUCCESS_OUTPUT = "mock-success-output"
MOCK_PEER_DUMP = (
    f"{MOCK_PEER_KEY}\t(none)\t10.100.0.2:58123\t10.100.0.2/32\t1683400000\t8920\t3290\t25"
)
MOCK_TRANSFER = f"{MOCK_PEER_KEY}\t48213\t251907"

# (required substrings, response); first match wins
_CANNED_RESPONSES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("wg show", "dump"), MOCK_PEER_DUMP),
    (("cat /etc/wireguard/publickey",), SIMULATED_SERVER_PUBLIC_KEY),
    (("wg show", "transfer"), MOCK_TRANSFER),
    (("wg set", "allowed-ips"), MOCK_SUCCESS_OUTPUT),
)


class SimulatedRemoteExecutor(RemoteExecutor):
    """
    Deterministic fake responder for disconnected operation.

    The same command substring always yields the same canned output, after
    an artificial delay. Executed commands are kept in a bounded history.
    """

    is_simulated = True

    def __init__(
        self,
        delay: float = 0.1,
        public_key: Optional[str] = None,
        metrics: Optional[PrometheusMetricsService] = None,
        history_size: int = 500,
    ):
        super().__init__(public_key=public_key, metrics=metrics)
        self.delay = delay
        self.history: Deque[Tuple[str, str]] = deque(maxlen=history_size)

    @staticmethod
    def respond(command: str) -> str:
        for needles, response in _CANNED_RESPONSES:
            if all(needle in command for needle in needles):
                return response
        return MOCK_SUCCESS_OUTPUT

    async def execute(
        self,
        command: str,
        host: str,
        user: str = "root",
        max_retries: int = 3,
        credential_override: Optional[str] = None,
    ) -> str:
        logger.debug(f"[SIMULATION SSH -> {host}] {command}")
        self.history.append((host, command))
        if self.delay:
            await asyncio.sleep(self.delay)
        self.metrics.record_remote_command("simulated")
        return self.respond(command)


def build_remote_executor(
    settings: FleetSettings,
    metrics: Optional[PrometheusMetricsService] = None,
) -> RemoteExecutor:
    """
    Select the executor implementation for this process.

    Simulation is chosen when MOCK_SSH is set, when no private key material
    is configured, or when the configured key cannot be parsed.
    """
    if settings.mock_ssh:
        logger.warning("MOCK_SSH is set. Entering SIMULATION MODE. Operations will be mocked.")
        return SimulatedRemoteExecutor(
            delay=settings.simulation_delay,
            public_key=settings.load_public_key(),
            metrics=metrics,
        )

    private_key = settings.load_private_key()
    if not private_key:
        logger.warning("No SSH key found. Entering SIMULATION MODE. Operations will be mocked.")
        return SimulatedRemoteExecutor(
            delay=settings.simulation_delay,
            public_key=settings.load_public_key(),
            metrics=metrics,
        )

    try:
        client_key = asyncssh.import_private_key(private_key)
    except (asyncssh.KeyImportError, ValueError) as e:
        logger.warning(f"Failed to load SSH key: {e}. Defaulting to SIMULATION MODE.")
        return SimulatedRemoteExecutor(
            delay=settings.simulation_delay,
            public_key=settings.load_public_key(),
            metrics=metrics,
        )

    return SSHRemoteExecutor(
        client_key=client_key,
        public_key=settings.load_public_key(),
        port=settings.ssh_port,
        command_timeout=settings.ssh_command_timeout,
        metrics=metrics,
    )
