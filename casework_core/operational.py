"""
Operational Error Channel
=========================
Escalation path for failures that must not reach end users but must never be
swallowed: audit write failures, chain integrity breaks, risk evaluation
failures and alert hand-off failures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import structlog

from casework_core import metrics

logger = structlog.get_logger(__name__)


class IncidentKind(str, Enum):
    """Kinds of operational incidents."""
    AUDIT_WRITE_FAILURE = "audit_write_failure"
    CHAIN_INTEGRITY_FAILURE = "chain_integrity_failure"
    RISK_EVALUATION_FAILURE = "risk_evaluation_failure"
    ALERT_DISPATCH_FAILURE = "alert_dispatch_failure"


class IncidentSeverity(str, Enum):
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class OperationalIncident:
    """A failure escalated to operators."""
    kind: IncidentKind
    severity: IncidentSeverity
    message: str
    org_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "org_id": self.org_id,
            "context": self.context,
            "error": self.error,
            "occurred_at": self.occurred_at.isoformat(),
        }


class OperationalAlertChannel(Protocol):
    """Anything that can receive operational incidents."""

    def report(self, incident: OperationalIncident) -> None:
        ...


class LoggingOperationalChannel:
    """
    Default channel: structured log line plus a Prometheus counter.

    Log shippers route ``operational_incident`` events to on-call tooling.
    """

    def report(self, incident: OperationalIncident) -> None:
        metrics.OPERATIONAL_INCIDENTS.labels(
            kind=incident.kind.value, severity=incident.severity.value
        ).inc()
        log = logger.critical if incident.severity == IncidentSeverity.CRITICAL else logger.error
        log(
            "operational_incident",
            kind=incident.kind.value,
            severity=incident.severity.value,
            incident_message=incident.message,
            org_id=incident.org_id,
            error=incident.error,
            **incident.context,
        )


class RecordingOperationalChannel(LoggingOperationalChannel):
    """Logs like the default channel and keeps incidents for inspection."""

    def __init__(self):
        self.incidents: List[OperationalIncident] = []

    def report(self, incident: OperationalIncident) -> None:
        super().report(incident)
        self.incidents.append(incident)

    def of_kind(self, kind: IncidentKind) -> List[OperationalIncident]:
        return [i for i in self.incidents if i.kind == kind]
