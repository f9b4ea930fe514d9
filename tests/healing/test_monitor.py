"""
End-to-end tests for the health monitor aggregate.

Tests cover:
- Failure, incident and recovery flow through the whole control loop
- Automatic restart healing a module
- Configuration-driven wiring (defaults, per-module overrides, optional parts)
- Liveness and keep-alive status reports
- Process-wide instance accessors
"""

import json
import logging
import os

import pytest

from healing.events import SignalType
from healing.exceptions import ConfigError
from healing.incidents import InMemoryHealthEventStore
from healing.monitor import (
    HealthMonitor,
    create_health_monitor,
    get_health_monitor,
    reset_health_monitor,
)
from healing.types import ModuleStatus
from utils.logger import ROOT_LOGGER_NAME

QUIET = {"logging": {"log_signals": False}}


def collect(bus):
    events = []
    for kind in SignalType:
        bus.subscribe(kind, events.append)
    return events


@pytest.fixture
def monitor(timers):
    mon = HealthMonitor(QUIET, timers=timers)
    yield mon
    mon.stop_nowait()


class TestControlLoop:
    """Test the monitor end to end on a virtual clock."""

    @pytest.mark.asyncio
    async def test_failure_incident_and_recovery(self, monitor, timers, probe):
        events = collect(monitor.bus)
        probe.healthy = False
        monitor.register_module(
            "gateway", probe, check_interval=1, failure_threshold=3, metadata={"critical": True}
        )
        await monitor.start()

        statuses = []
        for step in (0, 1, 1):
            await timers.advance(step)
            statuses.append(monitor.get_module_health("gateway").status)

        assert statuses == [ModuleStatus.DEGRADED, ModuleStatus.DEGRADED, ModuleStatus.UNHEALTHY]
        assert [e.kind for e in events if e.kind == SignalType.DEGRADED] == [SignalType.DEGRADED]
        opened = [e for e in events if e.kind == SignalType.INCIDENT_OPENED]
        assert len(opened) == 1
        assert len(monitor.incidents.get_active_incidents()) == 1

        probe.healthy = True
        await timers.advance(1)

        record = monitor.get_module_health("gateway")
        assert record.status == ModuleStatus.HEALTHY
        assert record.consecutive_failures == 0
        assert len([e for e in events if e.kind == SignalType.RECOVERED]) == 1
        resolved = [e for e in events if e.kind == SignalType.INCIDENT_RESOLVED]
        assert len(resolved) == 1
        assert resolved[0].incident.id == opened[0].incident.id
        assert monitor.incidents.get_active_incidents() == []

        await monitor.stop()
        assert monitor.store.all()[0]["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_non_critical_module_opens_no_incident(self, monitor, timers, probe):
        probe.healthy = False
        monitor.register_module("cache", probe, check_interval=1, failure_threshold=1)
        await monitor.start()
        await timers.advance(0)

        assert monitor.get_module_health("cache").status == ModuleStatus.UNHEALTHY
        assert monitor.incidents.get_active_incidents() == []
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_restart_heals_module(self, monitor, timers, probe):
        probe.healthy = False
        restarts = []

        async def restart_gateway():
            restarts.append(timers.time())
            probe.healthy = True
            return True

        monitor.register_module("gateway", probe, check_interval=1, metadata={"critical": True})
        monitor.register_service_restarter("gateway", restart_gateway)
        await monitor.start()

        await timers.advance(0)
        assert restarts == [0]
        await timers.advance(1)

        assert monitor.get_module_health("gateway").status == ModuleStatus.HEALTHY
        record = monitor.engine.get_remediation_record("gateway")
        assert record.successes == 1
        assert record.attempts == 0
        assert monitor.incidents.get_incident_history()[0].remediation_attempts == 1
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_force_remediation_delegates(self, monitor):
        monitor.register_service_restarter("gateway", lambda: True)

        outcome = await monitor.force_remediation("gateway")

        assert outcome.success is True
        assert outcome.forced is True

    @pytest.mark.asyncio
    async def test_stop_halts_checks(self, monitor, timers, probe):
        monitor.register_module("gateway", probe, check_interval=1)
        await monitor.start()
        await timers.advance(0)
        await monitor.stop()
        await timers.advance(10)

        assert probe.calls == 1
        assert monitor.is_running is False
        assert monitor.get_status()["running"] is False


class TestConfiguration:
    """Test configuration-driven wiring."""

    def test_monitor_defaults_apply(self, timers, probe):
        monitor = HealthMonitor(
            {"monitor": {"default_check_interval": 10, "default_failure_threshold": 5}, **QUIET},
            timers=timers,
        )
        applied = monitor.register_module("gateway", probe)

        assert applied.check_interval == 10
        assert applied.failure_threshold == 5

    def test_module_overrides(self, timers, probe):
        monitor = HealthMonitor(
            {"modules": {"gateway": {"failure_threshold": 1, "metadata": {"critical": True}}}, **QUIET},
            timers=timers,
        )

        applied = monitor.register_module("gateway", probe)
        assert applied.failure_threshold == 1
        assert applied.critical is True

        explicit = monitor.register_module("gateway", probe, failure_threshold=4)
        assert explicit.failure_threshold == 4

    def test_invalid_config_raises(self, timers):
        with pytest.raises(ConfigError) as exc_info:
            HealthMonitor({"auto_healing": {"max_remediation_attempts": 0}}, timers=timers)
        assert "auto_healing.max_remediation_attempts" in exc_info.value.field_errors

    def test_optional_parts(self, timers):
        monitor = HealthMonitor(
            {
                "auto_healing": {"circuit_breaker_failures": 5},
                "notifications": {"webhook": {"enabled": True, "url": "https://hooks.example.com/alerts"}},
            },
            timers=timers,
        )

        assert [h.name for h in monitor.engine.get_handlers()] == ["service-restart", "circuit-breaker"]
        assert monitor.notifier is not None
        assert monitor.notifier.url == "https://hooks.example.com/alerts"
        assert monitor.signal_logger is not None

    def test_webhook_without_url(self, timers):
        monitor = HealthMonitor({"notifications": {"webhook": {"enabled": True}}, **QUIET}, timers=timers)

        assert monitor.notifier is None
        assert monitor.signal_logger is None

    def test_from_config_file(self, tmp_path, timers):
        path = tmp_path / "healmon.json"
        path.write_text(json.dumps({"incidents": {"correlation_window": 60}, **QUIET}))

        monitor = HealthMonitor.from_config_file(str(path), timers=timers, configure_logging=False)

        assert monitor.incidents.correlation_window == 60
        assert monitor.settings.auto_healing.max_remediation_attempts == 5

    def test_log_level_environment_respected(self, tmp_path, timers, monkeypatch):
        """LOG_LEVEL applies when the file does not set a level."""
        root = logging.getLogger(ROOT_LOGGER_NAME)
        handlers, level, propagate = list(root.handlers), root.level, root.propagate
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        path = tmp_path / "healmon.json"
        path.write_text(json.dumps({"logging": {"console": False, "log_signals": False}}))
        try:
            HealthMonitor.from_config_file(str(path), timers=timers)
            assert root.level == logging.DEBUG

            path.write_text(json.dumps({"logging": {"level": "ERROR", "console": False, "log_signals": False}}))
            HealthMonitor.from_config_file(str(path), timers=timers)
            assert root.level == logging.ERROR
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in handlers:
                root.addHandler(handler)
            root.setLevel(level)
            root.propagate = propagate

    @pytest.mark.asyncio
    async def test_checks_are_logged_to_event_store(self, timers, probe):
        store = InMemoryHealthEventStore()
        monitor = HealthMonitor(QUIET, timers=timers, event_store=store)
        monitor.register_module("gateway", probe)

        await monitor.scheduler.check_module("gateway")
        await monitor.scheduler.wait_idle()

        events = await monitor.get_persisted_history("gateway")
        assert [e["status"] for e in events] == ["healthy"]


class TestStatusReports:
    """Test liveness and keep-alive summaries."""

    def test_liveness(self, monitor):
        liveness = monitor.liveness()

        assert liveness["alive"] is True
        assert liveness["pid"] == os.getpid()
        assert liveness["uptime"] >= 0
        assert liveness["memory_mb"] > 0
        assert liveness["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_status_report(self, monitor, probe_factory):
        monitor.register_module("ok", probe_factory(healthy=True))
        monitor.register_module("flaky", probe_factory(healthy=False))
        await monitor.scheduler.check_module("ok")
        await monitor.scheduler.check_module("flaky")

        report = monitor.status_report()

        assert report["alive"] is True
        assert report["status"] == "degraded"
        assert report["services"] == {"ok": "healthy", "flaky": "degraded"}
        assert report["health_summary"]["total"] == 2
        assert report["active_incidents"] == 0
        assert set(report["memory"]) == {"rss_mb", "vms_mb", "percent"}

    def test_status_report_healthy_when_empty(self, monitor):
        assert monitor.status_report()["status"] == "healthy"

    def test_get_status(self, monitor):
        status = monitor.get_status()

        assert set(status) == {"running", "scheduler", "auto_healing", "incidents", "bus"}


class TestProcessInstance:
    """Test the process-wide accessor."""

    def test_lazy_singleton_and_reset(self):
        reset_health_monitor()
        try:
            first = get_health_monitor()
            assert get_health_monitor() is first

            independent = create_health_monitor(QUIET)
            assert independent is not first

            reset_health_monitor()
            assert get_health_monitor() is not first
        finally:
            reset_health_monitor()
