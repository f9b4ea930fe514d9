"""
Core data types for the self-healing health monitor.

Holds the health status enum and threshold rule, the module configuration
model, probe results, per-module health records and history snapshots,
remediation bookkeeping and incidents.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from healing.exceptions import ConfigError, RemediationFailure
from utils.time import now_ms, to_iso

# A probe takes no arguments and returns (or resolves to) a ProbeResult,
# a mapping with the same keys, or a bare bool.
Probe = Callable[[], Any]


class ModuleStatus(Enum):
    """Health band of a monitored module."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def status_for_failures(consecutive_failures: int, failure_threshold: int) -> ModuleStatus:
    """Map a failure streak to a health band for the given threshold."""
    if consecutive_failures <= 0:
        return ModuleStatus.HEALTHY
    if consecutive_failures < failure_threshold:
        return ModuleStatus.DEGRADED
    return ModuleStatus.UNHEALTHY


class ModuleConfig(BaseModel):
    """Per-module check configuration."""

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    check_interval: float = Field(default=30.0, gt=0)
    timeout: float = Field(default=5.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1)
    enabled: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def critical(self) -> bool:
        return bool(self.metadata.get("critical", False))

    @classmethod
    def build(
        cls,
        module_name: Optional[str] = None,
        base: Optional[Mapping[str, Any]] = None,
        **overrides: Any,
    ) -> "ModuleConfig":
        """Validate and build a config, raising ConfigError on invalid values."""
        values: Dict[str, Any] = dict(base or {})
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError.from_validation("Invalid module configuration", e, module_name) from e


@dataclass(frozen=True)
class ProbeResult:
    """Outcome reported by a probe."""

    healthy: bool
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def coerce(cls, value: Any) -> "ProbeResult":
        """Normalize whatever a probe returned into a ProbeResult."""
        if isinstance(value, ProbeResult):
            return value
        if isinstance(value, Mapping):
            latency = value.get("latency_ms", value.get("latencyMs", value.get("latency")))
            return cls(
                healthy=bool(value.get("healthy", False)),
                latency_ms=float(latency) if latency is not None else None,
                message=value.get("message"),
                metadata=value.get("metadata"),
            )
        if isinstance(value, bool):
            return cls(healthy=value)
        raise TypeError(f"Unsupported probe result type: {type(value).__name__}")


@dataclass(frozen=True)
class ModuleHealthRecord:
    """
    Current health of one module.

    Records are immutable and replaced as a whole on every completed check,
    so readers never observe a partially updated record.
    """

    module_name: str
    status: ModuleStatus = ModuleStatus.HEALTHY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    last_check_time: Optional[datetime] = None
    last_healthy_time: Optional[datetime] = None
    last_error: Optional[str] = None
    average_latency_ms: float = 0.0
    uptime: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def critical(self) -> bool:
        return bool(self.metadata.get("critical", False))

    @property
    def checked(self) -> bool:
        return self.last_check_time is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_name": self.module_name,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "total_checks": self.total_checks,
            "successful_checks": self.successful_checks,
            "failed_checks": self.failed_checks,
            "last_check_time": to_iso(self.last_check_time),
            "last_healthy_time": to_iso(self.last_healthy_time),
            "last_error": self.last_error,
            "average_latency_ms": round(self.average_latency_ms, 3),
            "uptime": round(self.uptime, 3),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class HealthSnapshot:
    """One entry of a module's health history."""

    status: ModuleStatus
    consecutive_failures: int
    latency_ms: float
    error: Optional[str]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "latency_ms": round(self.latency_ms, 3),
            "error": self.error,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass(frozen=True)
class RemediationOutcome:
    """Result of a single remediation attempt."""

    success: bool
    message: str
    module_name: Optional[str] = None
    action: Optional[str] = None
    duration_ms: float = 0.0
    forced: bool = False
    requires_manual_intervention: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "module_name": self.module_name,
            "action": self.action,
            "duration_ms": round(self.duration_ms, 3),
            "forced": self.forced,
            "requires_manual_intervention": self.requires_manual_intervention,
        }


@dataclass
class RemediationRecord:
    """Remediation bookkeeping for one module, owned by the auto-healing engine."""

    module_name: str
    attempts: int = 0
    total_attempts: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_attempt_time: Optional[datetime] = None
    last_outcome: Optional[RemediationOutcome] = None
    last_failure: Optional[RemediationFailure] = None
    cooldown_until: Optional[float] = None
    in_flight: bool = False
    escalated: bool = False

    def reset_episode(self) -> None:
        """Start a fresh failure episode (after recovery or a forced attempt)."""
        self.attempts = 0
        self.consecutive_failures = 0
        self.escalated = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_name": self.module_name,
            "attempts": self.attempts,
            "total_attempts": self.total_attempts,
            "successes": self.successes,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_attempt_time": to_iso(self.last_attempt_time),
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
            "last_failure": str(self.last_failure) if self.last_failure else None,
            "cooldown_until": self.cooldown_until,
            "in_flight": self.in_flight,
            "escalated": self.escalated,
        }


class IncidentSeverity(Enum):
    """Incident severity levels, ordered from least to most severe."""

    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def bumped(self, levels: int = 1) -> "IncidentSeverity":
        return _SEVERITY_ORDER[min(self.rank + levels, len(_SEVERITY_ORDER) - 1)]

    @classmethod
    def for_module_count(cls, count: int) -> "IncidentSeverity":
        if count >= 4:
            return cls.CRITICAL
        if count == 3:
            return cls.MAJOR
        if count == 2:
            return cls.MODERATE
        return cls.MINOR


_SEVERITY_ORDER: List[IncidentSeverity] = [
    IncidentSeverity.MINOR,
    IncidentSeverity.MODERATE,
    IncidentSeverity.MAJOR,
    IncidentSeverity.CRITICAL,
]


def generate_incident_id() -> str:
    return f"INC-{now_ms()}-{uuid.uuid4().hex[:6]}"


@dataclass
class Incident:
    """
    A group of correlated module failures.

    ``affected`` maps every currently failing module to its latest status. It
    is non-empty while the incident is open and empty once resolved.
    """

    id: str
    severity: IncidentSeverity
    start_time: datetime
    affected: Dict[str, ModuleStatus] = field(default_factory=dict)
    all_modules: List[str] = field(default_factory=list)
    opened_at: float = 0.0
    end_time: Optional[datetime] = None
    remediation_attempts: int = 0
    suspected_root_cause: Optional[str] = None
    escalated: bool = False
    resolved: bool = False
    store_id: Optional[str] = None

    @property
    def affected_modules(self) -> List[str]:
        return list(self.affected)

    @property
    def title(self) -> str:
        return f"Module health issue: {', '.join(self.all_modules)}"

    def snapshot(self) -> "Incident":
        """Return a detached copy safe to hand to subscribers."""
        return replace(self, affected=dict(self.affected), all_modules=list(self.all_modules))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "affected_modules": {k: v.value for k, v in self.affected.items()},
            "all_modules": list(self.all_modules),
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "remediation_attempts": self.remediation_attempts,
            "suspected_root_cause": self.suspected_root_cause,
            "escalated": self.escalated,
            "resolved": self.resolved,
            "store_id": self.store_id,
        }
