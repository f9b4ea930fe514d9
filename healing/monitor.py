"""
Health monitor aggregate.

One HealthMonitor owns the signal bus, the check scheduler, the incident
aggregator and the auto-healing engine of a process, all sharing one clock.
A lazily created process-wide instance is available through
get_health_monitor(); tests build independent instances directly.
"""

import os
import time
from typing import Any, Dict, List, Mapping, Optional, Union

import psutil
from pydantic import ValidationError

from healing.auto_healing import AutoHealingEngine, CircuitBreakerHandler, RestartFn
from healing.exceptions import ConfigError
from healing.incidents import (
    HealthEventStore,
    IncidentAggregator,
    IncidentStore,
    InMemoryHealthEventStore,
    InMemoryIncidentStore,
)
from healing.notifier import WebhookNotifier
from healing.scheduler import DEFAULT_HISTORY_LIMIT, HealthCheckScheduler
from healing.signals import SignalBus
from healing.timers import LoopTimers, Timers
from healing.types import (
    HealthSnapshot,
    ModuleConfig,
    ModuleHealthRecord,
    ModuleStatus,
    Probe,
    RemediationOutcome,
)
from utils.config_loader import ConfigLoader, ConfigModel
from utils.logger import SignalLogger, get_logger, setup_logging
from utils.time import to_iso, utc_now

logger = get_logger(__name__)


def _build_settings(config: Union[ConfigModel, Mapping[str, Any], None]) -> ConfigModel:
    if config is None:
        return ConfigModel()
    if isinstance(config, ConfigModel):
        return config
    try:
        return ConfigModel(**config)
    except ValidationError as e:
        raise ConfigError.from_validation("Invalid health monitor configuration", e) from e


class HealthMonitor:
    """
    Owned aggregate wiring the monitoring control loop together.
    """

    def __init__(
        self,
        config: Union[ConfigModel, Mapping[str, Any], None] = None,
        timers: Optional[Timers] = None,
        store: Optional[IncidentStore] = None,
        event_store: Optional[HealthEventStore] = None,
    ):
        """
        Args:
            config: ConfigModel or equivalent mapping (defaults when omitted)
            timers: Shared clock (event loop timers by default)
            store: Durable incident store (in-memory by default)
            event_store: Durable health check log (in-memory by default)
        """
        self.settings = _build_settings(config)
        self.timers = timers or LoopTimers()
        self.bus = SignalBus()
        self.store = store if store is not None else InMemoryIncidentStore()
        self.event_store = event_store if event_store is not None else InMemoryHealthEventStore()

        self.scheduler = HealthCheckScheduler(
            self.bus,
            self.timers,
            defaults=self.settings.monitor.module_defaults(),
            history_capacity=self.settings.monitor.history_capacity,
            event_store=self.event_store,
        )
        self.incidents = IncidentAggregator(
            self.bus,
            self.timers,
            self.store,
            correlation_window=self.settings.incidents.correlation_window,
            resolved_history=self.settings.incidents.resolved_history,
        )
        self.engine = AutoHealingEngine(
            self.bus,
            self.timers,
            self.settings.auto_healing,
            incidents=self.incidents,
            health_lookup=self.scheduler.get_module_health,
        )

        healing_cfg = self.settings.auto_healing
        if healing_cfg.circuit_breaker_failures:
            self.engine.register_handler(
                CircuitBreakerHandler(
                    self.scheduler,
                    self.timers,
                    failure_threshold=healing_cfg.circuit_breaker_failures,
                    reset_after=healing_cfg.circuit_breaker_reset,
                )
            )

        self.signal_logger = SignalLogger() if self.settings.logging.log_signals else None

        webhook = self.settings.notifications.webhook
        self.notifier: Optional[WebhookNotifier] = None
        if webhook.enabled:
            if webhook.url:
                self.notifier = WebhookNotifier(webhook.url, webhook.timeout)
            else:
                logger.warning("Webhook notifications enabled without a url; alerts disabled")

        self._running = False
        self._created_at = time.time()
        self._process = psutil.Process(os.getpid())

    @classmethod
    def from_config_file(
        cls,
        config_path: str = "healmon.json",
        timers: Optional[Timers] = None,
        store: Optional[IncidentStore] = None,
        event_store: Optional[HealthEventStore] = None,
        configure_logging: bool = True,
    ) -> "HealthMonitor":
        """Build a monitor from a JSON file plus HEALMON_ environment overrides."""
        loader = ConfigLoader()
        loader.load_config(config_path)
        settings = loader.settings()
        if configure_logging:
            setup_logging(settings.logging.model_dump(exclude_unset=True))
        return cls(settings, timers=timers, store=store, event_store=event_store)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_module(
        self,
        name: str,
        probe: Probe,
        config: Optional[ModuleConfig] = None,
        **overrides: Any,
    ) -> ModuleConfig:
        """
        Register a module with the scheduler.

        Per-module settings from the "modules" config section apply first;
        explicit keyword overrides win over them.
        """
        if config is None:
            overrides = {**self.settings.modules.get(name, {}), **overrides}
        return self.scheduler.register_module(name, probe, config, **overrides)

    def unregister_module(self, name: str) -> bool:
        return self.scheduler.unregister_module(name)

    def register_service_restarter(self, name: str, restart_fn: RestartFn) -> None:
        self.engine.register_service_restarter(name, restart_fn)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Health monitor already running")
            return
        self._running = True
        # Incidents subscribe before the engine so an incident exists by the
        # time the engine records attempts against it.
        self.incidents.attach()
        self.engine.start()
        if self.signal_logger is not None:
            self.signal_logger.attach(self.bus)
        if self.notifier is not None:
            self.notifier.attach(self.bus)
        self.scheduler.start()
        logger.info("Health monitor started")

    def stop_nowait(self) -> None:
        """Stop scheduling and signal handling without waiting for in-flight work."""
        if not self._running:
            return
        self._running = False
        self.scheduler.stop()
        self.engine.stop()
        self.incidents.detach()
        if self.signal_logger is not None:
            self.signal_logger.detach()
        if self.notifier is not None:
            self.notifier.detach()
        logger.info("Health monitor stopped")

    async def stop(self) -> None:
        """Stop, then wait for in-flight checks, remediations and store writes."""
        self.stop_nowait()
        await self.scheduler.wait_idle()
        await self.engine.wait_idle()
        await self.bus.drain()
        await self.incidents.flush()

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get_module_health(self, name: str) -> Optional[ModuleHealthRecord]:
        return self.scheduler.get_module_health(name)

    def get_all_health(self) -> Dict[str, ModuleHealthRecord]:
        return self.scheduler.get_all_health()

    def get_overall_health(self) -> Dict[str, Any]:
        return self.scheduler.get_overall_health()

    def get_module_health_history(self, name: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[HealthSnapshot]:
        return self.scheduler.get_module_health_history(name, limit)

    async def get_persisted_history(self, name: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        return await self.scheduler.get_persisted_history(name, limit)

    async def force_remediation(self, name: str) -> RemediationOutcome:
        return await self.engine.force_remediation(name)

    def liveness(self) -> Dict[str, Any]:
        """
        Whether the process itself is alive. Independent of subsystem health.
        """
        memory_mb: Optional[float]
        try:
            memory_mb = round(self._process.memory_info().rss / (1024 * 1024), 2)
        except psutil.Error:
            memory_mb = None
        return {
            "alive": True,
            "pid": self._process.pid,
            "uptime": round(time.time() - self._created_at, 3),
            "memory_mb": memory_mb,
            "timestamp": to_iso(utc_now()),
        }

    def status_report(self) -> Dict[str, Any]:
        """Keep-alive summary of the whole monitor."""
        overall = self.scheduler.get_overall_health()
        if overall["unhealthy"] > 0:
            status = ModuleStatus.UNHEALTHY.value
        elif overall["degraded"] > 0:
            status = ModuleStatus.DEGRADED.value
        else:
            status = ModuleStatus.HEALTHY.value

        try:
            mem = self._process.memory_info()
            memory = {
                "rss_mb": round(mem.rss / (1024 * 1024), 2),
                "vms_mb": round(mem.vms / (1024 * 1024), 2),
                "percent": round(self._process.memory_percent(), 2),
            }
        except psutil.Error as e:
            logger.debug(f"Memory stats unavailable: {e}")
            memory = {}

        return {
            "alive": True,
            "status": status,
            "services": {name: record.status.value for name, record in self.scheduler.get_all_health().items()},
            "health_summary": overall,
            "active_incidents": len(self.incidents.get_active_incidents()),
            "monitor_uptime": round(self.scheduler.get_monitor_uptime(), 3),
            "memory": memory,
            "timestamp": to_iso(utc_now()),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "scheduler": self.scheduler.get_stats(),
            "auto_healing": self.engine.get_status(),
            "incidents": self.incidents.get_stats(),
            "bus": self.bus.get_stats(),
        }


# Process-wide monitor instance
_health_monitor: Optional[HealthMonitor] = None


def get_health_monitor() -> HealthMonitor:
    """Get the process-wide health monitor, creating it on first use."""
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = HealthMonitor()
    return _health_monitor


def create_health_monitor(
    config: Union[ConfigModel, Mapping[str, Any], None] = None,
    timers: Optional[Timers] = None,
    store: Optional[IncidentStore] = None,
) -> HealthMonitor:
    """Create an independent health monitor; does not touch the process-wide one."""
    return HealthMonitor(config, timers=timers, store=store)


def reset_health_monitor() -> None:
    """Stop and drop the process-wide health monitor."""
    global _health_monitor
    if _health_monitor is not None:
        _health_monitor.stop_nowait()
    _health_monitor = None
