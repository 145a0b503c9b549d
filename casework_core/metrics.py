"""
Prometheus Metrics
===================
Counters for the audit chain, risk engine and lockout tracker.
"""

from prometheus_client import Counter, Histogram


class MetricNames:
    """Standard metric names."""
    AUDIT_ENTRIES_WRITTEN = "casework_audit_entries_written_total"
    AUDIT_WRITE_FAILURES = "casework_audit_write_failures_total"
    AUDIT_WRITE_LATENCY = "casework_audit_write_duration_seconds"
    CHAIN_VERIFICATIONS = "casework_audit_chain_verifications_total"
    OPERATIONAL_INCIDENTS = "casework_operational_incidents_total"
    RISK_EVALUATIONS = "casework_risk_evaluations_total"
    RISK_EVALUATION_FAILURES = "casework_risk_evaluation_failures_total"
    SECURITY_ALERTS_REQUESTED = "casework_security_alerts_requested_total"
    ACCOUNT_LOCKOUTS = "casework_account_lockouts_total"
    ACCOUNT_UNLOCKS = "casework_account_unlocks_total"


AUDIT_ENTRIES_WRITTEN = Counter(
    MetricNames.AUDIT_ENTRIES_WRITTEN,
    "Audit log entries appended to an organization chain",
    ["action"],
)

AUDIT_WRITE_FAILURES = Counter(
    MetricNames.AUDIT_WRITE_FAILURES,
    "Audit writes that failed after retries or were rejected",
    ["reason"],
)

AUDIT_WRITE_LATENCY = Histogram(
    MetricNames.AUDIT_WRITE_LATENCY,
    "Time spent appending one audit entry, including retries",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

CHAIN_VERIFICATIONS = Counter(
    MetricNames.CHAIN_VERIFICATIONS,
    "Audit chain verifications by outcome",
    ["status"],
)

OPERATIONAL_INCIDENTS = Counter(
    MetricNames.OPERATIONAL_INCIDENTS,
    "Incidents escalated to the operational error channel",
    ["kind", "severity"],
)

RISK_EVALUATIONS = Counter(
    MetricNames.RISK_EVALUATIONS,
    "Risk evaluations by resulting level",
    ["level"],
)

RISK_EVALUATION_FAILURES = Counter(
    MetricNames.RISK_EVALUATION_FAILURES,
    "Risk evaluations that failed open",
)

SECURITY_ALERTS_REQUESTED = Counter(
    MetricNames.SECURITY_ALERTS_REQUESTED,
    "Security alerts handed to the alert dispatcher",
    ["alert_type"],
)

ACCOUNT_LOCKOUTS = Counter(
    MetricNames.ACCOUNT_LOCKOUTS,
    "Accounts locked after repeated failed logins",
)

ACCOUNT_UNLOCKS = Counter(
    MetricNames.ACCOUNT_UNLOCKS,
    "Accounts unlocked by an administrator",
)
