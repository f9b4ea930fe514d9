"""
Auto-healing engine.

Listens for degradation signals and decides whether and when to run a
remediation for the affected module.

Key Features:
- Prioritized remediation handler chain (service restart by default)
- Service restarter registry, one restart callable per module
- Cooldown between attempts and a per-episode attempt cap
- Escalation once the cap is reached or a handler asks for manual intervention
- Cooldown-expiry re-evaluation instead of immediate retries
- Forced remediation that bypasses cooldown, cap and escalation

Architecture:
- Decisions and the in-flight flag are taken synchronously inside the
  signal handler, so two signals can never start overlapping attempts
- Attempts run as tasks bounded by remediation_timeout
- Failures are logged and recorded, never raised out of the engine
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from healing.events import DEGRADATION_SIGNALS, HealthEvent, RemediationEvent, SignalType
from healing.exceptions import ConfigError, RemediationFailure
from healing.signals import SignalBus, Subscription
from healing.timers import LoopTimers, TimerHandle, Timers, WaitTimeout, wait_with_timeout
from healing.types import (
    IncidentSeverity,
    ModuleHealthRecord,
    ModuleStatus,
    RemediationOutcome,
    RemediationRecord,
)
from utils.config_loader import AutoHealingConfig
from utils.logger import HEAL, get_logger
from utils.time import utc_now

logger = get_logger(__name__)

RestartFn = Callable[[], Any]
HealthLookup = Callable[[str], Optional[ModuleHealthRecord]]


class ServiceRestarterRegistry:
    """Maps module names to the callable that restarts them."""

    def __init__(self):
        self._restarters: Dict[str, RestartFn] = {}

    def register(self, name: str, restart_fn: RestartFn) -> None:
        if not callable(restart_fn):
            raise ConfigError("Service restarter must be callable", module_name=name)
        if name in self._restarters:
            logger.info(f"Replacing service restarter for {name}")
        else:
            logger.info(f"Registered service restarter for {name}")
        self._restarters[name] = restart_fn

    def unregister(self, name: str) -> bool:
        return self._restarters.pop(name, None) is not None

    def get(self, name: str) -> Optional[RestartFn]:
        return self._restarters.get(name)

    def names(self) -> List[str]:
        return list(self._restarters)

    def __contains__(self, name: str) -> bool:
        return name in self._restarters

    def __len__(self) -> int:
        return len(self._restarters)


class RemediationHandler(ABC):
    """One corrective action the engine can take. Lower priority runs first."""

    name: str = "handler"
    priority: int = 100

    @abstractmethod
    def can_handle(self, module_name: str, health: Optional[ModuleHealthRecord]) -> bool:
        """Whether this handler applies to the module in its current state."""

    @abstractmethod
    async def execute(self, module_name: str, health: Optional[ModuleHealthRecord]) -> RemediationOutcome:
        """Run the action. May raise; the engine treats that as a failure."""


class ServiceRestartHandler(RemediationHandler):
    """Calls the module's registered restarter."""

    name = "service-restart"
    priority = 1

    def __init__(self, restarters: ServiceRestarterRegistry):
        self.restarters = restarters

    def can_handle(self, module_name: str, health: Optional[ModuleHealthRecord]) -> bool:
        return module_name in self.restarters

    async def execute(self, module_name: str, health: Optional[ModuleHealthRecord]) -> RemediationOutcome:
        restarter = self.restarters.get(module_name)
        if restarter is None:
            return RemediationOutcome(False, f"No restarter registered for {module_name}", module_name, "restart")

        logger.log(HEAL, f"Attempting to restart {module_name}", extra={"module_name": module_name})
        result = restarter()
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, RemediationOutcome):
            return result
        success = bool(result)
        message = f"Successfully restarted {module_name}" if success else f"Failed to restart {module_name}"
        return RemediationOutcome(success, message, module_name, "restart")


class CircuitBreakerHandler(RemediationHandler):
    """
    Pauses health checks of a persistently failing module and resumes them
    after ``reset_after`` seconds.
    """

    name = "circuit-breaker"
    priority = 4

    def __init__(self, scheduler, timers: Timers, failure_threshold: int = 10, reset_after: float = 60.0):
        self.scheduler = scheduler
        self.timers = timers
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self._reset_timers: Dict[str, TimerHandle] = {}

    def can_handle(self, module_name: str, health: Optional[ModuleHealthRecord]) -> bool:
        return (
            health is not None
            and health.status == ModuleStatus.UNHEALTHY
            and health.consecutive_failures >= self.failure_threshold
        )

    async def execute(self, module_name: str, health: Optional[ModuleHealthRecord]) -> RemediationOutcome:
        self.scheduler.disable_module(module_name)
        previous = self._reset_timers.pop(module_name, None)
        if previous is not None:
            previous.cancel()
        self._reset_timers[module_name] = self.timers.call_later(self.reset_after, self._half_open, module_name)
        logger.warning(
            f"Circuit breaker opened for {module_name}, checks resume in {self.reset_after:g}s",
            extra={"module_name": module_name},
        )
        return RemediationOutcome(
            True,
            f"Circuit breaker opened for {module_name}, will retry in {self.reset_after:g}s",
            module_name,
            "circuit-breaker",
        )

    def _half_open(self, module_name: str) -> None:
        self._reset_timers.pop(module_name, None)
        logger.info(f"Circuit breaker half-open for {module_name}", extra={"module_name": module_name})
        self.scheduler.enable_module(module_name)

    def cancel_all(self) -> None:
        for handle in self._reset_timers.values():
            handle.cancel()
        self._reset_timers.clear()


class AutoHealingEngine:
    """
    Drives bounded automatic remediation of degraded modules.
    """

    def __init__(
        self,
        bus: SignalBus,
        timers: Optional[Timers] = None,
        config: Optional[AutoHealingConfig] = None,
        incidents=None,
        health_lookup: Optional[HealthLookup] = None,
    ):
        """
        Args:
            bus: Bus delivering degraded/unhealthy/recovered signals
            timers: Clock and timer source shared with the scheduler
            config: Engine configuration (defaults when omitted)
            incidents: IncidentAggregator notified of attempts and escalations
            health_lookup: Returns a module's current health record by name
        """
        self.bus = bus
        self.timers = timers or LoopTimers()
        self.config = config or AutoHealingConfig()
        self.incidents = incidents
        self.health_lookup = health_lookup
        self.restarters = ServiceRestarterRegistry()

        self._handlers: List[RemediationHandler] = []
        self._records: Dict[str, RemediationRecord] = {}
        self._retry_timers: Dict[str, TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Future] = {}
        self._subscriptions: List[Subscription] = []
        self._running = False
        self._stats = {
            "attempts": 0,
            "successes": 0,
            "failures": 0,
            "forced": 0,
            "escalations": 0,
        }
        self._skip_counts: Dict[str, int] = {}

        self.register_handler(ServiceRestartHandler(self.restarters))

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_service_restarter(self, name: str, restart_fn: RestartFn) -> None:
        """Register (or replace) the restart callable for ``name``."""
        self.restarters.register(name, restart_fn)

    def register_handler(self, handler: RemediationHandler) -> None:
        self._handlers = [h for h in self._handlers if h.name != handler.name]
        self._handlers.append(handler)
        self._handlers.sort(key=lambda h: h.priority)
        logger.info(f"Registered remediation handler {handler.name} (priority {handler.priority})")

    def get_handlers(self) -> List[RemediationHandler]:
        return list(self._handlers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            logger.warning("Auto-healing engine already running")
            return
        self._running = True
        for kind in (*DEGRADATION_SIGNALS, SignalType.RECOVERED):
            self._subscriptions.append(self.bus.subscribe(kind, self.handle_health_event))
        logger.info(
            f"Auto-healing engine started (max_attempts={self.config.max_remediation_attempts}, "
            f"cooldown={self.config.cooldown_between_attempts}s)"
        )

    def stop(self) -> None:
        """Stop evaluating signals. Attempts already running are left to finish."""
        if not self._running:
            return
        self._running = False
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
        for handler in self._handlers:
            if isinstance(handler, CircuitBreakerHandler):
                handler.cancel_all()
        logger.info("Auto-healing engine stopped")

    async def wait_idle(self) -> None:
        """Wait until no remediation attempt is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def handle_health_event(self, event: HealthEvent) -> None:
        if event.kind in DEGRADATION_SIGNALS:
            self.evaluate(event.module_name, event.metrics)
        elif event.kind == SignalType.RECOVERED:
            self._on_recovered(event.module_name)

    def evaluate(self, name: str, health: Optional[ModuleHealthRecord] = None) -> str:
        """
        Decide whether to remediate ``name`` now and start the attempt if so.

        Returns:
            "attempted", or the reason the module was skipped
        """
        if health is None:
            health = self._lookup(name)
        reason = self._skip_reason(name, health)
        if reason is not None:
            self._skip_counts[reason] = self._skip_counts.get(reason, 0) + 1
            logger.debug(f"Skipping remediation for {name}: {reason}", extra={"module_name": name})
            return reason
        if self._begin_attempt(name, health, forced=False) is None:
            return "no_event_loop"
        return "attempted"

    def _skip_reason(self, name: str, health: Optional[ModuleHealthRecord]) -> Optional[str]:
        cfg = self.config
        if not cfg.enabled:
            return "disabled"
        if not cfg.auto_restart_services:
            return "auto_restart_disabled"
        if not self._capable_handlers(name, health):
            return "no_handler"
        record = self._record(name)
        if record.in_flight:
            return "in_flight"
        if record.escalated:
            return "escalated"
        if record.cooldown_until is not None and self.timers.time() < record.cooldown_until:
            return "in_cooldown"
        if record.attempts >= cfg.max_remediation_attempts:
            self._escalate(name, record)
            return "max_attempts"
        return None

    def _on_recovered(self, name: str) -> None:
        record = self._records.get(name)
        if record is not None:
            record.reset_episode()
        handle = self._retry_timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _lookup(self, name: str) -> Optional[ModuleHealthRecord]:
        if self.health_lookup is None:
            return None
        try:
            return self.health_lookup(name)
        except Exception as e:
            logger.debug(f"Health lookup failed for {name}: {e}")
            return None

    def _record(self, name: str) -> RemediationRecord:
        record = self._records.get(name)
        if record is None:
            record = RemediationRecord(module_name=name)
            self._records[name] = record
        return record

    def _capable_handlers(self, name: str, health: Optional[ModuleHealthRecord]) -> List[RemediationHandler]:
        capable = []
        for handler in self._handlers:
            try:
                if handler.can_handle(name, health):
                    capable.append(handler)
            except Exception as e:
                logger.warning(f"Handler {handler.name} failed can_handle for {name}: {e}")
        return capable

    def _begin_attempt(
        self,
        name: str,
        health: Optional[ModuleHealthRecord],
        forced: bool,
    ) -> Optional[asyncio.Future]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Cannot remediate {name}: no running event loop")
            return None

        record = self._record(name)
        record.in_flight = True
        task = loop.create_task(self._run_attempt(name, health, forced))
        self._tasks[name] = task

        def _done(fut: asyncio.Future) -> None:
            if self._tasks.get(name) is fut:
                del self._tasks[name]

        task.add_done_callback(_done)
        return task

    async def _run_attempt(
        self,
        name: str,
        health: Optional[ModuleHealthRecord],
        forced: bool,
    ) -> RemediationOutcome:
        record = self._record(name)
        timeout = self.config.remediation_timeout
        started = self.timers.time()
        cause: Optional[BaseException] = None
        record.last_attempt_time = utc_now()
        logger.log(
            HEAL,
            f"Remediation attempt {record.attempts + 1}/{self.config.max_remediation_attempts} for {name}"
            + (" (forced)" if forced else ""),
            extra={"module_name": name},
        )
        try:
            try:
                outcome = await wait_with_timeout(self.timers, self._execute_handlers(name, health), timeout)
            except WaitTimeout:
                outcome = RemediationOutcome(False, f"Remediation timed out after {timeout:g}s", name)
            except Exception as e:
                cause = e
                logger.error(f"Remediation of {name} raised: {e}", exc_info=True, extra={"module_name": name})
                outcome = RemediationOutcome(False, f"Remediation error: {e}", name)

            duration_ms = (self.timers.time() - started) * 1000.0
            outcome = replace(outcome, module_name=name, duration_ms=duration_ms, forced=forced)
            self._complete_attempt(name, record, outcome, cause)
            return outcome
        finally:
            record.in_flight = False

    async def _execute_handlers(self, name: str, health: Optional[ModuleHealthRecord]) -> RemediationOutcome:
        last: Optional[RemediationOutcome] = None
        for handler in self._capable_handlers(name, health):
            logger.debug(f"Using handler {handler.name} for {name}")
            outcome = await handler.execute(name, health)
            if outcome.action is None:
                outcome = replace(outcome, action=handler.name)
            if outcome.success:
                return outcome
            last = outcome
            if outcome.requires_manual_intervention:
                break
        return last or RemediationOutcome(False, f"No remediation handler for {name}", name)

    def _complete_attempt(
        self,
        name: str,
        record: RemediationRecord,
        outcome: RemediationOutcome,
        cause: Optional[BaseException] = None,
    ) -> None:
        cfg = self.config
        record.attempts += 1
        record.total_attempts += 1
        record.last_outcome = outcome
        record.cooldown_until = self.timers.time() + cfg.cooldown_between_attempts
        self._stats["attempts"] += 1

        if self.incidents is not None:
            self.incidents.record_remediation_attempt(name)

        if outcome.success:
            record.successes += 1
            record.last_failure = None
            record.consecutive_failures = 0
            self._stats["successes"] += 1
            logger.log(HEAL, f"Remediation of {name} succeeded: {outcome.message}", extra={"module_name": name})
        else:
            record.failures += 1
            record.consecutive_failures += 1
            self._stats["failures"] += 1
            record.last_failure = RemediationFailure(outcome.message, name, record.attempts)
            record.last_failure.__cause__ = cause
            logger.warning(
                f"Remediation of {name} failed ({record.attempts}/{cfg.max_remediation_attempts}): {outcome.message}",
                extra={"module_name": name},
            )

        if cfg.notify_on_remediation:
            self.bus.publish(
                RemediationEvent(
                    kind=SignalType.REMEDIATION,
                    module_name=name,
                    success=outcome.success,
                    message=outcome.message,
                    attempts=record.attempts,
                    forced=outcome.forced,
                )
            )

        if not outcome.success:
            if record.attempts >= cfg.max_remediation_attempts or outcome.requires_manual_intervention:
                self._escalate(name, record)
            elif record.consecutive_failures >= cfg.escalation_threshold and self.incidents is not None:
                self.incidents.raise_severity(name, IncidentSeverity.MAJOR)

        self._schedule_retry(name, cfg.cooldown_between_attempts)

    def _escalate(self, name: str, record: RemediationRecord) -> None:
        if record.escalated:
            return
        record.escalated = True
        self._stats["escalations"] += 1
        incident_id = self.incidents.mark_escalated(name) if self.incidents is not None else None
        message = f"Automatic remediation exhausted after {record.attempts} attempts; manual intervention required"
        logger.error(f"Escalating {name}: {message}", extra={"module_name": name, "incident_id": incident_id})
        self.bus.publish(
            RemediationEvent(
                kind=SignalType.ESCALATION,
                module_name=name,
                success=False,
                message=message,
                attempts=record.attempts,
                incident_id=incident_id,
            )
        )

    def _schedule_retry(self, name: str, delay: float) -> None:
        previous = self._retry_timers.pop(name, None)
        if previous is not None:
            previous.cancel()
        if not self._running:
            return
        self._retry_timers[name] = self.timers.call_later(delay, self._on_cooldown_expired, name)

    def _on_cooldown_expired(self, name: str) -> None:
        self._retry_timers.pop(name, None)
        if not self._running:
            return
        record = self._records.get(name)
        if record is not None and record.cooldown_until is not None:
            remaining = record.cooldown_until - self.timers.time()
            if remaining > 0:
                self._schedule_retry(name, remaining)
                return
        health = self._lookup(name)
        if health is None or health.status == ModuleStatus.HEALTHY:
            return
        logger.debug(f"Cooldown expired for {name}, still {health.status.value}; re-evaluating")
        self.evaluate(name, health)

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    async def force_remediation(self, name: str) -> RemediationOutcome:
        """
        Remediate ``name`` now, bypassing cooldown, attempt cap and escalation.

        The attempt is counted and restarts the cooldown.
        """
        health = self._lookup(name)
        if not self._capable_handlers(name, health):
            return RemediationOutcome(
                False, f"No remediation handler registered for {name}", name, forced=True
            )
        record = self._record(name)
        if record.in_flight:
            return RemediationOutcome(
                False, f"Remediation already in progress for {name}", name, forced=True
            )

        record.reset_episode()
        self._stats["forced"] += 1
        logger.log(HEAL, f"Forced remediation requested for {name}", extra={"module_name": name})
        task = self._begin_attempt(name, health, forced=True)
        return await task

    def update_config(self, partial: Mapping[str, Any]) -> AutoHealingConfig:
        """
        Merge ``partial`` into the configuration. Affects subsequent decisions only.

        Raises:
            ConfigError: If the merged configuration is invalid
        """
        values = self.config.model_dump()
        values.update(partial)
        try:
            new_config = AutoHealingConfig(**values)
        except ValidationError as e:
            raise ConfigError.from_validation("Invalid auto-healing configuration", e) from e
        self.config = new_config
        logger.info(f"Auto-healing configuration updated: {dict(partial)}")
        return new_config

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_remediation_record(self, name: str) -> Optional[RemediationRecord]:
        record = self._records.get(name)
        return replace(record) if record is not None else None

    def get_status(self) -> Dict[str, Any]:
        active = self.incidents.get_active_incidents() if self.incidents is not None else []
        return {
            "running": self._running,
            "config": self.config.model_dump(),
            "registered_handlers": [h.name for h in self._handlers],
            "registered_restarters": self.restarters.names(),
            "active_incidents": [incident.to_dict() for incident in active],
            "remediation_stats": {
                **self._stats,
                "skipped": dict(self._skip_counts),
                "in_flight": [name for name, r in self._records.items() if r.in_flight],
                "modules": {name: r.to_dict() for name, r in self._records.items()},
            },
        }
