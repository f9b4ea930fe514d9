"""
Health check scheduler.

Runs one independent repeating timer per registered module. Each tick
performs a timeout-bounded probe, replaces the module's health record,
appends to its bounded history and publishes a signal when the module
crosses a health band boundary.

Key Features:
- Idempotent registration (upsert by name) with timer hot-reload
- Skip-if-in-flight: a module never has two checks running at once
- Threshold state machine: HEALTHY -> DEGRADED -> UNHEALTHY, reset on success
- Results of checks started before stop() are discarded
- Every check result optionally logged to a durable HealthEventStore
"""

import inspect
import asyncio
from collections import deque
from dataclasses import replace
from typing import Any, Deque, Dict, List, Mapping, Optional, Set

from healing.events import HealthEvent, SignalType
from healing.exceptions import (
    CheckFailed,
    CheckReportedUnhealthy,
    CheckTimeout,
    ConfigError,
    HealthCheckError,
)
from healing.incidents import HealthEventStore
from healing.signals import SignalBus
from healing.timers import LoopTimers, RepeatingTimer, Timers, WaitTimeout, wait_with_timeout
from healing.types import (
    HealthSnapshot,
    ModuleConfig,
    ModuleHealthRecord,
    ModuleStatus,
    Probe,
    ProbeResult,
    status_for_failures,
)
from utils.logger import get_logger
from utils.time import utc_now

logger = get_logger(__name__)

# Entries kept per module in the health history ring buffer
HISTORY_CAPACITY = 500
DEFAULT_HISTORY_LIMIT = 50


class _ModuleEntry:
    """Scheduler-private state for one registered module."""

    def __init__(self, name: str, probe: Probe, config: ModuleConfig, history_capacity: int):
        self.name = name
        self.probe = probe
        self.config = config
        self.record = ModuleHealthRecord(module_name=name, metadata=dict(config.metadata))
        self.history: Deque[HealthSnapshot] = deque(maxlen=history_capacity)
        self.timer: Optional[RepeatingTimer] = None
        self.in_flight = False
        self.healthy_since: Optional[float] = None
        self.skipped_ticks = 0

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class HealthCheckScheduler:
    """
    Periodically probes registered modules and tracks their health.
    """

    def __init__(
        self,
        bus: SignalBus,
        timers: Optional[Timers] = None,
        defaults: Optional[Mapping[str, Any]] = None,
        history_capacity: int = HISTORY_CAPACITY,
        event_store: Optional[HealthEventStore] = None,
    ):
        """
        Args:
            bus: Bus that receives degraded/unhealthy/recovered signals
            timers: Clock and timer source (event loop timers by default)
            defaults: Default ModuleConfig values applied to every registration
            history_capacity: Ring buffer size of each module's history
            event_store: Durable log receiving every check result
        """
        if history_capacity < 1:
            raise ConfigError("history_capacity must be at least 1")
        self.bus = bus
        self.timers = timers or LoopTimers()
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self.history_capacity = history_capacity
        self.event_store = event_store

        self._modules: Dict[str, _ModuleEntry] = {}
        self._tasks: Set[asyncio.Future] = set()
        self._running = False
        self._epoch = 0
        self._started_at: Optional[float] = None
        self._checks_discarded = 0
        self._store_errors = 0

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
        Register a module, or update it if already registered.

        Args:
            name: Unique module name
            probe: No-arg callable returning a ProbeResult-compatible value
            config: Full module configuration (defaults used when omitted)
            **overrides: Individual ModuleConfig fields

        Returns:
            The validated configuration now in effect

        Raises:
            ConfigError: On an empty name, non-callable probe or invalid config
        """
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Module name must be a non-empty string")
        if not callable(probe):
            raise ConfigError("Health check probe must be callable", module_name=name)

        base = config.model_dump() if config is not None else self.defaults
        module_config = ModuleConfig.build(name, base, **overrides)

        entry = self._modules.get(name)
        if entry is not None:
            logger.warning(f"Module {name} already registered, updating configuration")
            entry.cancel_timer()
            entry.probe = probe
            entry.config = module_config
            entry.record = replace(entry.record, metadata=dict(module_config.metadata))
        else:
            entry = _ModuleEntry(name, probe, module_config, self.history_capacity)
            self._modules[name] = entry
            logger.info(
                f"Registered module {name} "
                f"(interval={module_config.check_interval}s, timeout={module_config.timeout}s, "
                f"threshold={module_config.failure_threshold})"
            )

        if self._running and module_config.enabled:
            self._install_timer(entry)
        return module_config

    def unregister_module(self, name: str) -> bool:
        entry = self._modules.pop(name, None)
        if entry is None:
            logger.warning(f"Cannot unregister unknown module {name}")
            return False
        entry.cancel_timer()
        self._release(entry.record, ModuleHealthRecord(module_name=name, metadata=dict(entry.config.metadata)))
        logger.info(f"Unregistered module {name}")
        return True

    def enable_module(self, name: str) -> bool:
        entry = self._modules.get(name)
        if entry is None:
            logger.warning(f"Cannot enable unknown module {name}")
            return False
        entry.config = entry.config.model_copy(update={"enabled": True})
        if self._running and entry.timer is None:
            self._install_timer(entry)
        logger.info(f"Enabled health checks for {name}")
        return True

    def disable_module(self, name: str) -> bool:
        entry = self._modules.get(name)
        if entry is None:
            logger.warning(f"Cannot disable unknown module {name}")
            return False
        entry.config = entry.config.model_copy(update={"enabled": False})
        entry.cancel_timer()
        logger.info(f"Disabled health checks for {name}")
        return True

    def reset_module_metrics(self, name: str) -> bool:
        """Reset a module to the never-checked healthy state and clear its history."""
        entry = self._modules.get(name)
        if entry is None:
            logger.warning(f"Cannot reset unknown module {name}")
            return False
        previous = entry.record
        entry.record = ModuleHealthRecord(module_name=name, metadata=dict(entry.config.metadata))
        entry.history.clear()
        entry.healthy_since = None
        entry.skipped_ticks = 0
        logger.info(f"Reset health metrics for {name}")
        self._release(previous, entry.record)
        return True

    def _release(self, previous: ModuleHealthRecord, current: ModuleHealthRecord) -> None:
        # Reset or removal of a failing module ends its failure episode
        if previous.status == ModuleStatus.HEALTHY:
            return
        self.bus.publish(
            HealthEvent(
                kind=SignalType.RECOVERED,
                module_name=current.module_name,
                previous_status=previous.status,
                current_status=ModuleStatus.HEALTHY,
                consecutive_failures=0,
                metrics=current,
            )
        )

    def get_module_config(self, name: str) -> Optional[ModuleConfig]:
        entry = self._modules.get(name)
        return entry.config if entry else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Install a timer for every enabled module; the first check runs immediately."""
        if self._running:
            logger.warning("Health check scheduler already running")
            return
        self._running = True
        self._started_at = self.timers.time()
        for entry in self._modules.values():
            if entry.config.enabled:
                self._install_timer(entry)
        logger.info(f"Health check scheduler started with {len(self._modules)} modules")

    def stop(self) -> None:
        """
        Cancel every timer. Checks already in flight run to completion but
        their results are discarded.
        """
        if not self._running:
            return
        self._running = False
        self._epoch += 1
        for entry in self._modules.values():
            entry.cancel_timer()
        logger.info("Health check scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for every check task spawned by timer ticks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _install_timer(self, entry: _ModuleEntry) -> None:
        entry.cancel_timer()
        entry.timer = self.timers.call_repeating(
            entry.config.check_interval, self._tick, entry.name, initial_delay=0.0
        )

    def _tick(self, name: str) -> None:
        entry = self._modules.get(name)
        if entry is None:
            return
        if entry.in_flight:
            entry.skipped_ticks += 1
            logger.debug(f"Skipping health check for {name}: previous check still running")
            return
        task = asyncio.ensure_future(self.check_module(name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_module(self, name: str) -> Optional[ModuleHealthRecord]:
        """
        Run one timeout-bounded check of ``name`` now.

        Returns:
            The new health record, or None if the module is unknown, a check
            was already in flight, or the result was discarded after stop().
        """
        entry = self._modules.get(name)
        if entry is None:
            logger.warning(f"Health check requested for unknown module {name}")
            return None
        if entry.in_flight:
            entry.skipped_ticks += 1
            return None

        entry.in_flight = True
        epoch = self._epoch
        started = self.timers.time()
        result: Optional[ProbeResult] = None
        error: Optional[HealthCheckError] = None
        try:
            result, error = await self._run_probe(entry)
        finally:
            entry.in_flight = False

        if epoch != self._epoch or self._modules.get(name) is not entry:
            self._checks_discarded += 1
            logger.debug(f"Discarding late health check result for {name}")
            return None

        measured_ms = (self.timers.time() - started) * 1000.0
        latency_ms = result.latency_ms if result is not None and result.latency_ms is not None else measured_ms
        return self._apply_result(entry, error, latency_ms)

    async def _run_probe(self, entry: _ModuleEntry):
        timeout = entry.config.timeout
        try:
            value = entry.probe()
            if inspect.isawaitable(value):
                value = await wait_with_timeout(self.timers, value, timeout)
            result = ProbeResult.coerce(value)
        except WaitTimeout:
            return None, CheckTimeout(entry.name, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return None, CheckFailed(entry.name, e)

        if not result.healthy:
            return result, CheckReportedUnhealthy(entry.name, result.message)
        return result, None

    def _apply_result(
        self,
        entry: _ModuleEntry,
        error: Optional[HealthCheckError],
        latency_ms: float,
    ) -> ModuleHealthRecord:
        previous = entry.record
        now = self.timers.time()
        wall_now = utc_now()
        total = previous.total_checks + 1
        average = (previous.average_latency_ms * previous.total_checks + latency_ms) / total

        if error is None:
            if previous.status != ModuleStatus.HEALTHY or entry.healthy_since is None:
                entry.healthy_since = now
            record = replace(
                previous,
                status=ModuleStatus.HEALTHY,
                consecutive_failures=0,
                consecutive_successes=previous.consecutive_successes + 1,
                total_checks=total,
                successful_checks=previous.successful_checks + 1,
                last_check_time=wall_now,
                last_healthy_time=wall_now,
                last_error=None,
                average_latency_ms=average,
                uptime=now - entry.healthy_since,
            )
        else:
            failures = previous.consecutive_failures + 1
            status = status_for_failures(failures, entry.config.failure_threshold)
            # Once UNHEALTHY, only a success leaves the band, even if a reload
            # raised the threshold mid-episode.
            if previous.status == ModuleStatus.UNHEALTHY:
                status = ModuleStatus.UNHEALTHY
            entry.healthy_since = None
            record = replace(
                previous,
                status=status,
                consecutive_failures=failures,
                consecutive_successes=0,
                total_checks=total,
                failed_checks=previous.failed_checks + 1,
                last_check_time=wall_now,
                last_error=error.message,
                average_latency_ms=average,
                uptime=0.0,
            )
            logger.debug(f"Health check failed for {entry.name}: {error.message}")

        entry.record = record
        snapshot = HealthSnapshot(
            status=record.status,
            consecutive_failures=record.consecutive_failures,
            latency_ms=latency_ms,
            error=record.last_error,
            timestamp=wall_now,
        )
        entry.history.append(snapshot)
        if self.event_store is not None:
            task = asyncio.get_running_loop().create_task(self._persist_event(entry.name, snapshot))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._emit_transition(previous, record)
        return record

    async def _persist_event(self, name: str, snapshot: HealthSnapshot) -> None:
        try:
            await self.event_store.record_health_event(name, snapshot)
        except Exception:
            self._store_errors += 1
            logger.exception(f"Failed to persist health event for {name}")

    async def get_persisted_history(self, name: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Check results recorded by the event store; empty when it is unavailable."""
        if self.event_store is None:
            return []
        try:
            return await self.event_store.get_health_events(name, limit)
        except Exception:
            self._store_errors += 1
            logger.exception(f"Failed to read health events for {name}")
            return []

    def _emit_transition(self, previous: ModuleHealthRecord, current: ModuleHealthRecord) -> None:
        before, after = previous.status, current.status
        if before == after:
            return

        if before == ModuleStatus.HEALTHY:
            kind = SignalType.DEGRADED
            logger.warning(
                f"Module {current.module_name} degraded to {after.value}: {current.last_error}",
                extra={"module_name": current.module_name},
            )
        elif after == ModuleStatus.HEALTHY:
            kind = SignalType.RECOVERED
            logger.info(
                f"Module {current.module_name} recovered from {before.value}",
                extra={"module_name": current.module_name},
            )
        elif after == ModuleStatus.UNHEALTHY:
            kind = SignalType.UNHEALTHY
            logger.error(
                f"Module {current.module_name} is unhealthy after "
                f"{current.consecutive_failures} consecutive failures: {current.last_error}",
                extra={"module_name": current.module_name},
            )
        else:
            return

        self.bus.publish(
            HealthEvent(
                kind=kind,
                module_name=current.module_name,
                previous_status=before,
                current_status=after,
                consecutive_failures=current.consecutive_failures,
                metrics=current,
                error=current.last_error,
            )
        )

    # ------------------------------------------------------------------
    # Read APIs
    # ------------------------------------------------------------------

    def _current(self, entry: _ModuleEntry) -> ModuleHealthRecord:
        record = entry.record
        if record.status == ModuleStatus.HEALTHY and entry.healthy_since is not None:
            return replace(record, uptime=self.timers.time() - entry.healthy_since)
        return record

    def get_module_health(self, name: str) -> Optional[ModuleHealthRecord]:
        entry = self._modules.get(name)
        return self._current(entry) if entry else None

    def get_all_health(self) -> Dict[str, ModuleHealthRecord]:
        return {name: self._current(entry) for name, entry in self._modules.items()}

    def get_overall_health(self) -> Dict[str, Any]:
        counts = {status: 0 for status in ModuleStatus}
        for entry in self._modules.values():
            counts[entry.record.status] += 1
        total = len(self._modules)
        return {
            "healthy": counts[ModuleStatus.HEALTHY],
            "degraded": counts[ModuleStatus.DEGRADED],
            "unhealthy": counts[ModuleStatus.UNHEALTHY],
            "total": total,
            "all_healthy": counts[ModuleStatus.HEALTHY] == total,
        }

    def get_module_health_history(self, name: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[HealthSnapshot]:
        """Most recent ``limit`` history entries of ``name``, oldest first."""
        entry = self._modules.get(name)
        if entry is None or limit <= 0:
            return []
        limit = min(limit, self.history_capacity)
        history = list(entry.history)
        return history[-limit:]

    def get_module_names(self) -> List[str]:
        return list(self._modules)

    def is_module_healthy(self, name: str) -> bool:
        entry = self._modules.get(name)
        return entry is not None and entry.record.status == ModuleStatus.HEALTHY

    def get_monitor_uptime(self) -> float:
        """Seconds since start(), 0 when not running."""
        if not self._running or self._started_at is None:
            return 0.0
        return self.timers.time() - self._started_at

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "modules": len(self._modules),
            "enabled_modules": sum(1 for e in self._modules.values() if e.config.enabled),
            "in_flight": [e.name for e in self._modules.values() if e.in_flight],
            "skipped_ticks": {e.name: e.skipped_ticks for e in self._modules.values()},
            "discarded_checks": self._checks_discarded,
            "history_capacity": self.history_capacity,
            "store_errors": self._store_errors,
        }
