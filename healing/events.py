"""
Signal definitions published on the SignalBus.

Health transition signals come from the scheduler, remediation and
escalation signals from the auto-healing engine, and incident lifecycle
signals from the incident aggregator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from healing.types import Incident, ModuleHealthRecord, ModuleStatus
from utils.time import to_iso, utc_now


class SignalType(Enum):
    """Kinds of signals carried by the bus."""

    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    RECOVERED = "recovered"
    REMEDIATION = "remediation"
    ESCALATION = "escalation"
    INCIDENT_OPENED = "incident_opened"
    INCIDENT_UPDATED = "incident_updated"
    INCIDENT_RESOLVED = "incident_resolved"


# Signals that mean a module got worse.
DEGRADATION_SIGNALS = (SignalType.DEGRADED, SignalType.UNHEALTHY)


@dataclass(frozen=True)
class HealthEvent:
    """A module crossed a health band boundary."""

    kind: SignalType
    module_name: str
    previous_status: ModuleStatus
    current_status: ModuleStatus
    consecutive_failures: int
    metrics: ModuleHealthRecord
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "module_name": self.module_name,
            "previous_status": self.previous_status.value,
            "current_status": self.current_status.value,
            "consecutive_failures": self.consecutive_failures,
            "error": self.error,
            "timestamp": to_iso(self.timestamp),
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class RemediationEvent:
    """A remediation attempt finished, or a module was escalated."""

    kind: SignalType
    module_name: str
    success: bool
    message: str
    attempts: int
    forced: bool = False
    incident_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "module_name": self.module_name,
            "success": self.success,
            "message": self.message,
            "attempts": self.attempts,
            "forced": self.forced,
            "incident_id": self.incident_id,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass(frozen=True)
class IncidentEvent:
    """An incident was opened, changed, or resolved."""

    kind: SignalType
    incident: Incident
    module_name: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "module_name": self.module_name,
            "incident": self.incident.to_dict(),
            "timestamp": to_iso(self.timestamp),
        }
