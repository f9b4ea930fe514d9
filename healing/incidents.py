"""
Incident aggregation.

Correlates degraded and unhealthy critical modules into incidents that open
when the first module fails and resolve once every affected module has
recovered. Durable logging is delegated to an IncidentStore; store failures
are logged and never affect the in-memory incident state.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from healing.events import DEGRADATION_SIGNALS, HealthEvent, IncidentEvent, SignalType
from healing.signals import SignalBus, Subscription
from healing.timers import LoopTimers, Timers
from healing.types import (
    HealthSnapshot,
    Incident,
    IncidentSeverity,
    ModuleStatus,
    generate_incident_id,
)
from utils.logger import get_logger
from utils.time import to_iso, utc_now

logger = get_logger(__name__)

# Failures of critical modules within this many seconds of an open incident's
# start join that incident instead of opening a new one.
CORRELATION_WINDOW = 300.0
RESOLVED_HISTORY = 100
HEALTH_EVENT_CAPACITY = 1000


class IncidentStore(ABC):
    """Durable incident log."""

    @abstractmethod
    async def create_incident(self, incident: Incident) -> str:
        """Persist a newly opened incident and return its store id."""

    @abstractmethod
    async def list_active_incidents(self) -> List[Dict[str, Any]]:
        """Return every persisted incident that is not resolved."""

    @abstractmethod
    async def resolve_incident(self, incident_id: str, resolved_by: str) -> bool:
        """Mark a persisted incident resolved."""


class InMemoryIncidentStore(IncidentStore):
    """IncidentStore kept in process memory."""

    def __init__(self):
        self._incidents: Dict[str, Dict[str, Any]] = {}

    async def create_incident(self, incident: Incident) -> str:
        record = incident.to_dict()
        record["title"] = incident.title
        record["status"] = "active"
        self._incidents[incident.id] = record
        return incident.id

    async def list_active_incidents(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._incidents.values() if r["status"] == "active"]

    async def resolve_incident(self, incident_id: str, resolved_by: str) -> bool:
        record = self._incidents.get(incident_id)
        if record is None:
            return False
        record["status"] = "resolved"
        record["resolved_by"] = resolved_by
        record["resolved_at"] = to_iso(utc_now())
        return True

    def all(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._incidents.values()]


class HealthEventStore(ABC):
    """Durable log of individual health check results."""

    @abstractmethod
    async def record_health_event(self, module_name: str, snapshot: HealthSnapshot) -> None:
        """Persist the result of one health check."""

    @abstractmethod
    async def get_health_events(self, module_name: str, limit: int) -> List[Dict[str, Any]]:
        """Return the most recent ``limit`` persisted results of a module, oldest first."""


class InMemoryHealthEventStore(HealthEventStore):
    """HealthEventStore kept in process memory, bounded per module."""

    def __init__(self, capacity: int = HEALTH_EVENT_CAPACITY):
        self.capacity = capacity
        self._events: Dict[str, Deque[Dict[str, Any]]] = {}

    async def record_health_event(self, module_name: str, snapshot: HealthSnapshot) -> None:
        events = self._events.setdefault(module_name, deque(maxlen=self.capacity))
        entry = snapshot.to_dict()
        entry["module_name"] = module_name
        events.append(entry)

    async def get_health_events(self, module_name: str, limit: int) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return [dict(e) for e in list(self._events.get(module_name, ()))[-limit:]]


class IncidentAggregator:
    """
    Groups concurrently failing critical modules into incidents.
    """

    def __init__(
        self,
        bus: SignalBus,
        timers: Optional[Timers] = None,
        store: Optional[IncidentStore] = None,
        correlation_window: float = CORRELATION_WINDOW,
        resolved_history: int = RESOLVED_HISTORY,
    ):
        self.bus = bus
        self.timers = timers or LoopTimers()
        self.store = store
        self.correlation_window = correlation_window

        self._open: Dict[str, Incident] = {}
        self._module_index: Dict[str, str] = {}
        self._first_failure: Dict[str, Dict[str, float]] = {}
        self._resolved: Deque[Incident] = deque(maxlen=resolved_history)
        self._create_tasks: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Future] = set()
        self._subscriptions: List[Subscription] = []
        self._store_errors = 0

    # ------------------------------------------------------------------
    # Bus wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        if self._subscriptions:
            return
        for kind in (*DEGRADATION_SIGNALS, SignalType.RECOVERED):
            self._subscriptions.append(self.bus.subscribe(kind, self.handle_health_event))

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def handle_health_event(self, event: HealthEvent) -> None:
        if event.kind in DEGRADATION_SIGNALS:
            self._on_failure(event)
        elif event.kind == SignalType.RECOVERED:
            self._on_recovery(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _on_failure(self, event: HealthEvent) -> None:
        if not event.metrics.critical:
            return

        name = event.module_name
        now = self.timers.time()

        incident_id = self._module_index.get(name)
        if incident_id is not None:
            incident = self._open[incident_id]
            incident.affected[name] = event.current_status
            self._refresh_severity(incident)
            self._publish(SignalType.INCIDENT_UPDATED, incident, name)
            return

        incident = self._find_correlated(now)
        if incident is None:
            incident = Incident(
                id=generate_incident_id(),
                severity=IncidentSeverity.MINOR,
                start_time=utc_now(),
                opened_at=now,
            )
            self._open[incident.id] = incident
            self._first_failure[incident.id] = {}
            opened = True
        else:
            opened = False

        incident.affected[name] = event.current_status
        if name not in incident.all_modules:
            incident.all_modules.append(name)
        self._module_index[name] = incident.id
        self._first_failure[incident.id].setdefault(name, now)
        self._refresh_severity(incident)
        self._infer_root_cause(incident)

        if opened:
            logger.warning(
                f"Incident {incident.id} opened for {name} [{incident.severity.value}]",
                extra={"incident_id": incident.id, "module_name": name},
            )
            self._publish(SignalType.INCIDENT_OPENED, incident, name)
            if self.store is not None:
                self._create_tasks[incident.id] = self._spawn(self._persist_create(incident))
        else:
            logger.warning(
                f"Module {name} joined incident {incident.id} [{incident.severity.value}]",
                extra={"incident_id": incident.id, "module_name": name},
            )
            self._publish(SignalType.INCIDENT_UPDATED, incident, name)

    def _on_recovery(self, event: HealthEvent) -> None:
        name = event.module_name
        incident_id = self._module_index.pop(name, None)
        if incident_id is None:
            return
        incident = self._open.get(incident_id)
        if incident is None:
            return

        incident.affected.pop(name, None)
        if incident.affected:
            self._publish(SignalType.INCIDENT_UPDATED, incident, name)
            return

        incident.resolved = True
        incident.end_time = utc_now()
        del self._open[incident_id]
        self._first_failure.pop(incident_id, None)
        self._resolved.append(incident)
        logger.info(
            f"Incident {incident.id} resolved after recovery of {', '.join(incident.all_modules)}",
            extra={"incident_id": incident.id},
        )
        self._publish(SignalType.INCIDENT_RESOLVED, incident, name)
        if self.store is not None:
            self._spawn(self._persist_resolve(incident))

    def _find_correlated(self, now: float) -> Optional[Incident]:
        for incident in reversed(list(self._open.values())):
            if now - incident.opened_at <= self.correlation_window:
                return incident
        return None

    def _refresh_severity(self, incident: Incident) -> None:
        severity = IncidentSeverity.for_module_count(len(incident.affected))
        if any(status == ModuleStatus.UNHEALTHY for status in incident.affected.values()):
            severity = severity.bumped()
        # Severity never drops while the incident is open
        if severity.rank > incident.severity.rank:
            incident.severity = severity

    def _infer_root_cause(self, incident: Incident) -> None:
        try:
            first_failures = self._first_failure.get(incident.id, {})
            if len(first_failures) < 2:
                return
            ordered = sorted(first_failures.items(), key=lambda item: item[1])
            earliest, runner_up = ordered[0], ordered[1]
            if earliest[1] < runner_up[1]:
                incident.suspected_root_cause = earliest[0]
        except Exception as e:
            logger.debug(f"Root cause inference failed for incident {incident.id}: {e}")

    def _publish(self, kind: SignalType, incident: Incident, module_name: Optional[str]) -> None:
        self.bus.publish(IncidentEvent(kind=kind, incident=incident.snapshot(), module_name=module_name))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> Optional[asyncio.Future]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("Incident store write skipped: no running event loop")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _persist_create(self, incident: Incident) -> None:
        try:
            incident.store_id = await self.store.create_incident(incident.snapshot())
        except Exception:
            self._store_errors += 1
            logger.exception(f"Failed to persist incident {incident.id}")

    async def _persist_resolve(self, incident: Incident) -> None:
        pending = self._create_tasks.pop(incident.id, None)
        if pending is not None:
            await pending
        try:
            await self.store.resolve_incident(incident.store_id or incident.id, "auto-healing")
        except Exception:
            self._store_errors += 1
            logger.exception(f"Failed to persist resolution of incident {incident.id}")

    async def flush(self) -> None:
        """Wait for every pending store write."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def list_persisted_active(self) -> List[Dict[str, Any]]:
        """Active incidents as recorded by the store; empty when it is unavailable."""
        if self.store is None:
            return []
        try:
            return await self.store.list_active_incidents()
        except Exception:
            self._store_errors += 1
            logger.exception("Failed to list active incidents from store")
            return []

    # ------------------------------------------------------------------
    # Hooks used by the auto-healing engine
    # ------------------------------------------------------------------

    def incident_for_module(self, name: str) -> Optional[Incident]:
        incident_id = self._module_index.get(name)
        return self._open[incident_id].snapshot() if incident_id else None

    def record_remediation_attempt(self, name: str) -> None:
        incident_id = self._module_index.get(name)
        if incident_id:
            self._open[incident_id].remediation_attempts += 1

    def mark_escalated(self, name: str) -> Optional[str]:
        incident_id = self._module_index.get(name)
        if incident_id is None:
            return None
        incident = self._open[incident_id]
        if not incident.escalated:
            incident.escalated = True
            self._publish(SignalType.INCIDENT_UPDATED, incident, name)
        return incident_id

    def raise_severity(self, name: str, floor: IncidentSeverity) -> None:
        incident_id = self._module_index.get(name)
        if incident_id is None:
            return
        incident = self._open[incident_id]
        if floor.rank > incident.severity.rank:
            incident.severity = floor
            logger.warning(
                f"Incident {incident.id} raised to {floor.value}",
                extra={"incident_id": incident.id, "module_name": name},
            )
            self._publish(SignalType.INCIDENT_UPDATED, incident, name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_incidents(self) -> List[Incident]:
        return [incident.snapshot() for incident in self._open.values()]

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        incident = self._open.get(incident_id)
        if incident is not None:
            return incident.snapshot()
        for incident in self._resolved:
            if incident.id == incident_id:
                return incident.snapshot()
        return None

    def get_incident_history(self, limit: int = 50) -> List[Incident]:
        """Most recently resolved incidents, oldest first."""
        if limit <= 0:
            return []
        return [incident.snapshot() for incident in list(self._resolved)[-limit:]]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active": len(self._open),
            "resolved": len(self._resolved),
            "tracked_modules": len(self._module_index),
            "pending_writes": len(self._tasks),
            "store_errors": self._store_errors,
        }
