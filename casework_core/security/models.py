"""
Security Models
===============
Access events, threshold violations, anomaly indicators and risk results.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from casework_core.audit.models import AuditLogEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventKind(str, Enum):
    """Counter families kept by the access pattern tracker."""
    REQUEST = "request"           # Every sensitive access
    EXPORT = "export"
    CLIENT_VIEW = "client_view"
    DOWNLOAD = "download"
    FAILED_LOGIN = "failed_login"
    OFF_HOURS = "off_hours"


class ThresholdType(str, Enum):
    EXCESSIVE_EXPORTS = "EXCESSIVE_EXPORTS"
    EXCESSIVE_CLIENT_VIEWS = "EXCESSIVE_CLIENT_VIEWS"
    EXCESSIVE_FAILED_LOGINS = "EXCESSIVE_FAILED_LOGINS"
    BULK_DOWNLOAD = "BULK_DOWNLOAD"


class AnomalyType(str, Enum):
    OFF_HOURS_ACCESS = "OFF_HOURS_ACCESS"
    GEOGRAPHIC_ANOMALY = "GEOGRAPHIC_ANOMALY"
    UNUSUAL_ACCESS_PATTERN = "UNUSUAL_ACCESS_PATTERN"
    RAPID_FIRE_REQUESTS = "RAPID_FIRE_REQUESTS"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def multiplier(self) -> float:
        return SEVERITY_MULTIPLIERS[self]


SEVERITY_MULTIPLIERS = {
    Severity.LOW: 0.7,
    Severity.MEDIUM: 1.0,
    Severity.HIGH: 1.2,
    Severity.CRITICAL: 1.5,
}


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def requires_alert(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)


@dataclass
class AccessEvent:
    """One sensitive access to evaluate."""
    user_id: str
    org_id: str
    action: str
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    success: bool = True
    country: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if isinstance(self.action, Enum):
            self.action = self.action.value
        if isinstance(self.resource, Enum):
            self.resource = self.resource.value

    @classmethod
    def from_audit_entry(cls, entry: AuditLogEntry) -> "AccessEvent":
        """Build an event from a recorded entry; the entry id is the event id."""
        return cls(
            user_id=entry.user_id or "",
            org_id=entry.org_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            ip_address=entry.ip_address,
            timestamp=entry.timestamp,
            success=bool(entry.details.get("success", True)),
            event_id=entry.id,
        )


@dataclass
class ThresholdViolation:
    """A configured limit exceeded within its window."""
    threshold_type: ThresholdType
    observed_count: int
    limit: int
    window_start: datetime
    window_end: datetime
    severity: Severity
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold_type": self.threshold_type.value,
            "observed_count": self.observed_count,
            "limit": self.limit,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "severity": self.severity.value,
            "description": self.description,
        }


@dataclass
class AnomalyIndicator:
    """A behavioral heuristic that fired, weighted by confidence (0-1)."""
    anomaly_type: AnomalyType
    description: str
    confidence: float
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anomaly_type": self.anomaly_type.value,
            "description": self.description,
            "confidence": round(self.confidence, 3),
            "severity": self.severity.value,
            "details": self.details,
        }


@dataclass
class SecurityRiskResult:
    """Derived judgment about one access event."""
    event_id: str
    user_id: str
    org_id: str
    risk_score: int                       # 0-100
    risk_level: RiskLevel
    violations: List[ThresholdViolation] = field(default_factory=list)
    anomalies: List[AnomalyIndicator] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=_utcnow)
    alert_requested: bool = False
    error: Optional[str] = None           # Set when scoring failed open

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "org_id": self.org_id,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level.value,
            "violations": [v.to_dict() for v in self.violations],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "evaluated_at": self.evaluated_at.isoformat(),
            "alert_requested": self.alert_requested,
            "error": self.error,
        }


@dataclass
class BlockDecision:
    """Outcome of the inline pre-check."""
    blocked: bool
    risk_score: int = 0
    reason: Optional[str] = None
    violations: List[ThresholdViolation] = field(default_factory=list)


@dataclass
class UserAccessPattern:
    """Derived behavioral baseline for one user in one organization."""
    user_id: str
    org_id: str
    avg_daily_exports: float
    avg_daily_client_views: float
    off_hours_accesses_30d: int
    known_countries: Set[str] = field(default_factory=set)
    computed_at: datetime = field(default_factory=_utcnow)


class LockoutState(str, Enum):
    OPEN = "OPEN"
    LOCKED = "LOCKED"


@dataclass
class FailedLoginRecord:
    """Failed-login bookkeeping for one user."""
    user_id: str
    attempt_count: int
    first_failure_at: datetime
    last_failure_at: datetime
    org_id: Optional[str] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "org_id": self.org_id,
            "attempt_count": self.attempt_count,
            "first_failure_at": self.first_failure_at.isoformat(),
            "last_failure_at": self.last_failure_at.isoformat(),
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedLoginRecord":
        locked_until = data.get("locked_until")
        return cls(
            user_id=data["user_id"],
            org_id=data.get("org_id"),
            attempt_count=int(data["attempt_count"]),
            first_failure_at=datetime.fromisoformat(data["first_failure_at"]),
            last_failure_at=datetime.fromisoformat(data["last_failure_at"]),
            locked_until=datetime.fromisoformat(locked_until) if locked_until else None,
        )


@dataclass
class LockoutStatus:
    """Read-only view of a user's lockout state."""
    user_id: str
    state: LockoutState
    failed_attempts: int
    remaining_attempts: int
    locked_until: Optional[datetime] = None
    minutes_remaining: Optional[int] = None
    degraded: bool = False                # Served from last known state

    @property
    def is_locked(self) -> bool:
        return self.state == LockoutState.LOCKED
