"""
Prometheus Metrics Service

Central metrics registry for the fleet engine. Exposes counters, gauges,
histograms and build info in Prometheus text format via generate_metrics().

Services push counter/histogram observations via record_*() / observe_*()
methods. Node gauges are set by the health monitor after each probe.
"""

import logging
import platform
import threading
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from nexusfleet import __version__

logger = logging.getLogger(__name__)

# Singleton instance
_metrics_service_instance: Optional["PrometheusMetricsService"] = None
_singleton_lock = threading.Lock()


class PrometheusMetricsService:
    """
    Prometheus Metrics Service

    Usage:
        service = get_metrics_service()
        service.record_remote_command("success")
        service.record_reconcile_action("resurrect")
        output = service.generate_metrics()
    """

    def __init__(
        self,
        namespace: str = "nexusfleet",
        registry: Optional[CollectorRegistry] = None,
    ):
        self._namespace = namespace
        self._registry = registry or CollectorRegistry(auto_describe=True)
        self._lock = threading.Lock()

        self._define_metrics()

    def _define_metrics(self) -> None:
        """Define all Prometheus metrics on the registry."""
        ns = self._namespace
        reg = self._registry

        # ── Counters ──

        self._remote_commands_total = Counter(
            f"{ns}_remote_commands_total",
            "Remote command attempts by outcome",
            ["result"],
            registry=reg,
        )

        self._reconcile_actions_total = Counter(
            f"{ns}_reconcile_actions_total",
            "Convergence actions issued by the peer reconciler",
            ["action"],
            registry=reg,
        )

        self._reconcile_passes_total = Counter(
            f"{ns}_reconcile_passes_total",
            "Per-node reconciliation outcomes",
            ["result"],
            registry=reg,
        )

        self._usage_samples_total = Counter(
            f"{ns}_usage_samples_total",
            "Per-peer usage samples recorded",
            registry=reg,
        )

        self._health_checks_total = Counter(
            f"{ns}_health_checks_total",
            "Node health probes by outcome",
            ["result"],
            registry=reg,
        )

        self._peers_provisioned_total = Counter(
            f"{ns}_peers_provisioned_total",
            "Client peer provisioning attempts by outcome",
            ["result"],
            registry=reg,
        )

        self._peers_revoked_total = Counter(
            f"{ns}_peers_revoked_total",
            "Client peers revoked",
            registry=reg,
        )

        self._autoconfig_runs_total = Counter(
            f"{ns}_autoconfig_runs_total",
            "Node auto-configuration runs by outcome",
            ["result"],
            registry=reg,
        )

        self._loop_ticks_total = Counter(
            f"{ns}_loop_ticks_total",
            "Scheduler ticks by loop and outcome",
            ["loop", "result"],
            registry=reg,
        )

        # ── Gauges ──

        self._active_nodes = Gauge(
            f"{ns}_active_nodes",
            "Nodes currently marked active",
            registry=reg,
        )

        self._node_load = Gauge(
            f"{ns}_node_load_percent",
            "Estimated node load from peer count",
            ["node"],
            registry=reg,
        )

        # ── Histograms ──

        self._loop_duration_seconds = Histogram(
            f"{ns}_loop_duration_seconds",
            "Duration of a scheduler pass in seconds",
            ["loop"],
            registry=reg,
        )

        # ── Info ──

        self._build_info = Info(
            f"{ns}_build",
            "Build information",
            registry=reg,
        )
        self._build_info.info({
            "version": __version__,
            "python_version": platform.python_version(),
        })

    # ── Counter Record Methods (Push Model) ──

    def record_remote_command(self, result: str) -> None:
        """Record a remote command attempt. result: success/command_failed/connection_failed/simulated"""
        self._remote_commands_total.labels(result=result).inc()

    def record_reconcile_action(self, action: str) -> None:
        """Record a convergence action. action: resurrect/remove"""
        self._reconcile_actions_total.labels(action=action).inc()

    def record_reconcile_pass(self, result: str) -> None:
        """Record a per-node reconciliation. result: converged/skipped/failed"""
        self._reconcile_passes_total.labels(result=result).inc()

    def record_usage_sample(self) -> None:
        self._usage_samples_total.inc()

    def record_health_check(self, result: str) -> None:
        """Record a health probe. result: online/offline"""
        self._health_checks_total.labels(result=result).inc()

    def record_peer_provisioned(self, result: str) -> None:
        """Record a provisioning attempt. result: success/rejected/failed"""
        self._peers_provisioned_total.labels(result=result).inc()

    def record_peer_revoked(self) -> None:
        self._peers_revoked_total.inc()

    def record_autoconfig_run(self, result: str) -> None:
        """Record an auto-configuration run. result: success/failed"""
        self._autoconfig_runs_total.labels(result=result).inc()

    def record_loop_tick(self, loop: str, result: str) -> None:
        """Record a scheduler tick. result: success/error/skipped"""
        self._loop_ticks_total.labels(loop=loop, result=result).inc()

    # ── Gauges ──

    def set_active_nodes(self, count: int) -> None:
        self._active_nodes.set(count)

    def set_node_load(self, node_name: str, load: int) -> None:
        self._node_load.labels(node=node_name).set(load)

    # ── Histogram Observation Methods ──

    def observe_loop_duration(self, loop: str, duration_seconds: float) -> None:
        self._loop_duration_seconds.labels(loop=loop).observe(duration_seconds)

    # ── Output ──

    def generate_metrics(self) -> str:
        """
        Generate Prometheus text format metrics output.

        Returns:
            Prometheus exposition format string
        """
        return generate_latest(self._registry).decode("utf-8")


def get_metrics_service() -> PrometheusMetricsService:
    """
    Get the singleton PrometheusMetricsService instance.

    Returns:
        The shared PrometheusMetricsService instance
    """
    global _metrics_service_instance
    if _metrics_service_instance is None:
        with _singleton_lock:
            if _metrics_service_instance is None:
                _metrics_service_instance = PrometheusMetricsService()
    return _metrics_service_instance
