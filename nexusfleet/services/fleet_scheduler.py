"""
Fleet Scheduler

Runs the three background loops of the engine on fixed intervals:

- health:    NodeHealthService.check_all            (30 s)
- reconcile: PeerReconciliationService.reconcile_all (300 s)
- usage:     UsageCollectionService.collect_all      (60 s)

Each tick launches one pass as its own asyncio task. A tick that finds the
previous pass still running is skipped, so passes of the same loop never
overlap. A failing pass is logged and the loop keeps ticking.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from nexusfleet.config import FleetSettings, get_settings
from nexusfleet.networking.remote_executor import RemoteExecutor
from nexusfleet.networking.wireguard_commands import WireGuardCommands
from nexusfleet.services.collaborators import UsageService
from nexusfleet.services.node_health_service import NodeHealthService
from nexusfleet.services.peer_reconciliation_service import PeerReconciliationService
from nexusfleet.services.prometheus_metrics_service import (
    PrometheusMetricsService,
    get_metrics_service,
)
from nexusfleet.services.usage_collection_service import UsageCollectionService

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Fixed-interval loop around one async pass function.

    The first pass runs one interval after start() unless run_immediately
    is set.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        metrics: Optional[PrometheusMetricsService] = None,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        self.name = name
        self.interval = interval
        self.func = func
        self.metrics = metrics or get_metrics_service()
        self.run_immediately = run_immediately

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

        self.passes = 0
        self.failures = 0
        self.skipped = 0
        self.last_started_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pass_in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"fleet-{self.name}")
        logger.info(f"Started {self.name} loop (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop ticking and cancel any pass still in flight."""
        self._running = False
        tasks = [t for t in (self._task, self._current) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._current = None
        logger.info(f"Stopped {self.name} loop")

    def tick(self) -> bool:
        """
        Launch one pass unless the previous one is still running.

        Returns:
            True if a pass was launched
        """
        if self.pass_in_progress:
            self.skipped += 1
            logger.debug(f"{self.name} pass still running, skipping tick")
            self.metrics.record_loop_tick(self.name, "skipped")
            return False

        self._current = asyncio.create_task(self._run_pass())
        return True

    async def _loop(self) -> None:
        if self.run_immediately:
            self.tick()

        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            if self._running:
                self.tick()

    async def _run_pass(self) -> None:
        self.last_started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error(f"Error in {self.name} loop: {e}", exc_info=True)
            self.metrics.record_loop_tick(self.name, "error")
        else:
            self.last_error = None
            self.metrics.record_loop_tick(self.name, "success")
        finally:
            self.passes += 1
            self.metrics.observe_loop_duration(self.name, time.monotonic() - started)

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "running": self._running,
            "pass_in_progress": self.pass_in_progress,
            "passes": self.passes,
            "failures": self.failures,
            "skipped_ticks": self.skipped,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_error": self.last_error,
        }


class FleetScheduler:
    """Owns the periodic tasks of the engine and starts/stops them together."""

    def __init__(self, tasks: List[PeriodicTask]):
        self.tasks: Dict[str, PeriodicTask] = {task.name: task for task in tasks}

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()

    async def stop(self) -> None:
        await asyncio.gather(*(task.stop() for task in self.tasks.values()))

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: task.status() for name, task in self.tasks.items()}


def build_fleet_scheduler(
    session_factory: Callable[[], Session],
    executor: RemoteExecutor,
    usage_service: UsageService,
    settings: Optional[FleetSettings] = None,
    metrics: Optional[PrometheusMetricsService] = None,
) -> FleetScheduler:
    """Wire the health, reconcile and usage loops from settings."""
    settings = settings or get_settings()
    metrics = metrics or get_metrics_service()
    commands = WireGuardCommands(interface=settings.wg_interface, sudo=settings.ssh_use_sudo)

    health = NodeHealthService(
        session_factory, executor, commands=commands, metrics=metrics,
        max_retries=settings.ssh_max_retries,
    )
    reconciler = PeerReconciliationService(
        session_factory, executor, commands=commands, metrics=metrics,
        max_retries=settings.ssh_max_retries,
    )
    usage = UsageCollectionService(
        session_factory, executor, usage_service, commands=commands, metrics=metrics,
        max_retries=settings.ssh_max_retries,
    )

    return FleetScheduler([
        PeriodicTask("health", settings.health_check_interval, health.check_all, metrics),
        PeriodicTask("reconcile", settings.reconcile_interval, reconciler.reconcile_all, metrics),
        PeriodicTask("usage", settings.usage_sync_interval, usage.collect_all, metrics),
    ])
