"""
Shared test fixtures for the self-healing health monitor.

All scheduling in tests runs on VirtualTimers, so thresholds, timeouts and
cooldowns are exercised by advancing a virtual clock instead of sleeping.
"""

import asyncio
from typing import Any, List, Optional

import pytest

from healing.events import HealthEvent, SignalType
from healing.scheduler import HealthCheckScheduler
from healing.signals import SignalBus
from healing.timers import VirtualTimers
from healing.types import ModuleHealthRecord, ModuleStatus, ProbeResult


class SignalRecorder:
    """Subscribes to every signal kind and keeps what it receives."""

    def __init__(self, bus: SignalBus):
        self.events: List[Any] = []
        self.subscriptions = [bus.subscribe(kind, self.events.append) for kind in SignalType]

    def of(self, kind: SignalType) -> List[Any]:
        return [e for e in self.events if e.kind == kind]

    def kinds(self) -> List[SignalType]:
        return [e.kind for e in self.events]

    def close(self) -> None:
        for subscription in self.subscriptions:
            subscription.unsubscribe()


class ControllableProbe:
    """
    Probe whose outcome is set by the test.

    With ``blocking`` set, each call waits on ``gate`` before answering.
    """

    def __init__(self, healthy: bool = True, message: Optional[str] = None):
        self.healthy = healthy
        self.message = message
        self.error: Optional[BaseException] = None
        self.calls = 0
        self.blocking = False
        self.gate = asyncio.Event()

    async def __call__(self) -> ProbeResult:
        self.calls += 1
        if self.blocking:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ProbeResult(healthy=self.healthy, message=self.message)


def make_health_event(
    kind: SignalType,
    module_name: str,
    current: ModuleStatus,
    previous: Optional[ModuleStatus] = None,
    failures: int = 1,
    critical: bool = True,
) -> HealthEvent:
    """Build a transition signal as the scheduler would publish it."""
    if previous is None:
        previous = ModuleStatus.HEALTHY if kind != SignalType.RECOVERED else ModuleStatus.UNHEALTHY
    if current == ModuleStatus.HEALTHY:
        failures = 0
    record = ModuleHealthRecord(
        module_name=module_name,
        status=current,
        consecutive_failures=failures,
        last_error=None if current == ModuleStatus.HEALTHY else "probe failed",
        metadata={"critical": critical},
    )
    return HealthEvent(
        kind=kind,
        module_name=module_name,
        previous_status=previous,
        current_status=current,
        consecutive_failures=failures,
        metrics=record,
        error=record.last_error,
    )


@pytest.fixture
def timers():
    """Virtual clock starting at 0."""
    return VirtualTimers()


@pytest.fixture
def bus():
    """Fresh signal bus."""
    return SignalBus()


@pytest.fixture
def recorder(bus):
    """Recorder attached to the bus fixture."""
    rec = SignalRecorder(bus)
    yield rec
    rec.close()


@pytest.fixture
def scheduler(bus, timers):
    """Scheduler on the virtual clock; stopped after the test."""
    sched = HealthCheckScheduler(bus, timers)
    yield sched
    sched.stop()


@pytest.fixture
def probe():
    """Controllable async probe, healthy by default."""
    return ControllableProbe()


@pytest.fixture
def probe_factory():
    """Builds additional controllable probes."""
    return ControllableProbe


@pytest.fixture
def make_event():
    """Builds health transition signals."""
    return make_health_event
