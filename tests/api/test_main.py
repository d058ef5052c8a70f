"""
Application Endpoint Tests

Tests for the liveness, fleet loop status and Prometheus endpoints.
"""

import time

import pytest
from fastapi.testclient import TestClient

from nexusfleet.main import PROMETHEUS_CONTENT_TYPE, create_app
from nexusfleet.services.fleet_scheduler import FleetScheduler, PeriodicTask


@pytest.fixture
def outcomes():
    return {"health": None, "usage": None}


@pytest.fixture
def app(settings, metrics, outcomes):
    """App whose scheduler runs stub passes"""

    def make_pass(name):
        async def run():
            if outcomes[name] is not None:
                raise outcomes[name]

        return run

    def scheduler_factory(_settings):
        return FleetScheduler([
            PeriodicTask("health", 3600, make_pass("health"), metrics, run_immediately=True),
            PeriodicTask("usage", 3600, make_pass("usage"), metrics, run_immediately=True),
        ])

    return create_app(settings=settings, scheduler_factory=scheduler_factory)


def wait_for_passes(client, expected=2, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        loops = client.get("/health/fleet").json()["loops"]
        if sum(loop["passes"] for loop in loops.values()) >= expected:
            return loops
        time.sleep(0.01)
    raise AssertionError("scheduler passes did not complete")


class TestHealthEndpoints:
    def test_liveness(self, app):
        with TestClient(app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_fleet_status_ok(self, app):
        """
        GIVEN loops whose passes succeed
        WHEN requesting GET /health/fleet
        THEN should report ok with one entry per loop
        """
        with TestClient(app) as client:
            loops = wait_for_passes(client)
            body = client.get("/health/fleet").json()

        assert body["status"] == "ok"
        assert body["environment"] == "development"
        assert set(loops) == {"health", "usage"}
        assert loops["health"]["interval_seconds"] == 3600
        assert loops["health"]["running"] is True

    def test_fleet_status_degraded_on_failing_loop(self, app, outcomes):
        """
        GIVEN a usage loop whose pass raises
        WHEN requesting GET /health/fleet
        THEN should report degraded and carry the error
        """
        outcomes["usage"] = RuntimeError("node database locked")

        with TestClient(app) as client:
            wait_for_passes(client)
            body = client.get("/health/fleet").json()

        assert body["status"] == "degraded"
        assert body["loops"]["usage"]["last_error"] == "node database locked"
        assert body["loops"]["health"]["last_error"] is None

    def test_scheduler_stopped_on_shutdown(self, app):
        with TestClient(app):
            scheduler = app.state.scheduler

        assert all(not loop["running"] for loop in scheduler.status().values())


class TestMetricsEndpoint:
    def test_prometheus_output(self, app):
        with TestClient(app) as client:
            response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"] == PROMETHEUS_CONTENT_TYPE
        assert "nexusfleet_build_info" in response.text
