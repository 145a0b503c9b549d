"""
Compliance Reports
==================
Typed reports over an organization's audit trail, each sealed with a
SHA-256 hash of its canonical payload so later edits are detectable.

Usage:
    reporter = ComplianceReporter(store)
    report = await reporter.generate("org-1", ReportType.DATA_ACCESS, start, end)
    assert verify_report(report)
"""

import hashlib
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import structlog

from .actions import AuditAction, AuditResource
from .export import iter_entries
from .hashing import canonical_json, format_timestamp
from .models import AuditQuery, SortOrder, VerificationStatus, as_utc
from .store import AuditStore
from .verifier import ChainVerifier

logger = structlog.get_logger(__name__)

REPORT_VERSION = "1.0"
DEFAULT_RETENTION_YEARS = 7

DATA_ACCESS_ACTIONS = frozenset({
    AuditAction.VIEW.value,
    AuditAction.DOWNLOAD.value,
    AuditAction.EXPORT.value,
})


class ReportType(str, Enum):
    ACTIVITY_SUMMARY = "ACTIVITY_SUMMARY"
    DATA_ACCESS = "DATA_ACCESS"
    USER_ACTIVITY = "USER_ACTIVITY"
    FILE_AUDIT = "FILE_AUDIT"
    CHAIN_INTEGRITY = "CHAIN_INTEGRITY"


def compute_report_hash(data: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


@dataclass
class ComplianceReport:
    """A generated report and the hash sealing its payload."""
    id: str
    org_id: str
    report_type: ReportType
    start: Optional[datetime]
    end: Optional[datetime]
    generated_by: Optional[str]
    data: Dict[str, Any]
    hash: str
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "report_type": self.report_type.value,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "generated_by": self.generated_by,
            "generated_at": self.generated_at.isoformat(),
            "data": self.data,
            "hash": self.hash,
        }


def verify_report(report: ComplianceReport) -> bool:
    """Check that a report's payload still matches its hash."""
    valid = compute_report_hash(report.data) == report.hash
    if not valid:
        logger.warning("Compliance report modified", report_id=report.id, org_id=report.org_id)
    return valid


@dataclass
class RetentionCheck:
    """Result of a retention compliance check."""
    org_id: str
    compliant: bool
    issues: List[str]
    retention_years: int
    oldest_entry_at: Optional[datetime]
    chain_status: VerificationStatus


class ComplianceReporter:
    """Builds typed compliance reports from a store and its verifier."""

    def __init__(self, store: AuditStore, verifier: Optional[ChainVerifier] = None):
        self.store = store
        self.verifier = verifier or ChainVerifier(store)

    async def generate(
        self,
        org_id: str,
        report_type: ReportType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        generated_by: Optional[str] = None,
    ) -> ComplianceReport:
        """
        Generate and seal one report.

        Args:
            org_id: Organization reported on
            report_type: Which report to build
            start: Inclusive lower bound (ignored by CHAIN_INTEGRITY)
            end: Inclusive upper bound (ignored by CHAIN_INTEGRITY)
            generated_by: User requesting the report

        Returns:
            ComplianceReport with its payload hash
        """
        report_type = ReportType(report_type)
        start, end = as_utc(start), as_utc(end)
        builders = {
            ReportType.ACTIVITY_SUMMARY: self._activity_summary,
            ReportType.DATA_ACCESS: self._data_access,
            ReportType.USER_ACTIVITY: self._user_activity,
            ReportType.FILE_AUDIT: self._file_audit,
            ReportType.CHAIN_INTEGRITY: self._chain_integrity,
        }
        summary, details = await builders[report_type](org_id, start, end)
        data = {
            "summary": summary,
            "details": details,
            "metadata": {
                "report_version": REPORT_VERSION,
                "filters": {
                    "start": format_timestamp(start) if start else None,
                    "end": format_timestamp(end) if end else None,
                },
            },
        }
        report = ComplianceReport(
            id=str(uuid.uuid4()),
            org_id=org_id,
            report_type=report_type,
            start=start,
            end=end,
            generated_by=generated_by,
            data=data,
            hash=compute_report_hash(data),
        )
        logger.info(
            "Compliance report generated",
            report_id=report.id,
            org_id=org_id,
            report_type=report_type.value,
            detail_rows=len(details),
            hash=report.hash[:16],
        )
        return report

    async def _activity_summary(self, org_id, start, end):
        stats = await self.store.stats(org_id, start=start, end=end)
        daily: Counter = Counter()
        users: Set[str] = set()
        async for entry in iter_entries(self.store, org_id, start, end):
            daily[entry.timestamp.astimezone(timezone.utc).date().isoformat()] += 1
            if entry.user_id is not None:
                users.add(entry.user_id)
        summary = {
            "total_events": stats.total_entries,
            "unique_users": len(users),
            "action_breakdown": stats.by_action,
            "resource_breakdown": stats.by_resource,
        }
        details = [{"date": day, "count": count} for day, count in sorted(daily.items())]
        return summary, details

    async def _data_access(self, org_id, start, end):
        details = []
        users: Set[str] = set()
        resources: Set[str] = set()
        async for entry in iter_entries(self.store, org_id, start, end):
            if entry.action not in DATA_ACCESS_ACTIONS:
                continue
            if entry.user_id is not None:
                users.add(entry.user_id)
            resources.add(f"{entry.resource}:{entry.resource_id}")
            details.append({
                "timestamp": format_timestamp(entry.timestamp),
                "user_id": entry.user_id,
                "action": entry.action,
                "resource": entry.resource,
                "resource_id": entry.resource_id,
                "resource_name": entry.resource_name,
            })
        summary = {
            "total_access_events": len(details),
            "unique_users": len(users),
            "resources_accessed": len(resources),
        }
        return summary, details

    async def _user_activity(self, org_id, start, end):
        per_user: Dict[str, Counter] = defaultdict(Counter)
        total = 0
        async for entry in iter_entries(self.store, org_id, start, end):
            total += 1
            if entry.user_id is not None:
                per_user[entry.user_id][entry.action] += 1
        details = sorted(
            (
                {"user_id": user_id, "action_count": sum(actions.values()), "by_action": dict(actions)}
                for user_id, actions in per_user.items()
            ),
            key=lambda row: (-row["action_count"], row["user_id"]),
        )
        summary = {
            "total_users": len(per_user),
            "total_actions": total,
            "average_actions_per_user": round(total / len(per_user)) if per_user else 0,
        }
        return summary, details

    async def _file_audit(self, org_id, start, end):
        details = []
        by_action: Counter = Counter()
        async for entry in iter_entries(
            self.store, org_id, start, end, resource=AuditResource.FILE.value
        ):
            by_action[entry.action] += 1
            details.append({
                "timestamp": format_timestamp(entry.timestamp),
                "action": entry.action,
                "file_id": entry.resource_id,
                "file_name": entry.resource_name,
                "user_id": entry.user_id,
            })
        summary = {"total_file_events": len(details), "by_action": dict(by_action)}
        return summary, details

    async def _chain_integrity(self, org_id, start, end):
        result = await self.verifier.verify(org_id, collect_all=True)
        summary = {
            "status": result.status.value,
            "chain_valid": result.valid,
            "entries_checked": result.entries_checked,
            "broken_at_entry_id": result.broken_at_entry_id,
        }
        details = [
            {"entry_id": b.entry_id, "sequence": b.sequence, "reason": b.reason}
            for b in result.breaks
        ]
        return summary, details

    async def check_retention_compliance(
        self,
        org_id: str,
        retention_years: int = DEFAULT_RETENTION_YEARS,
        now: Optional[datetime] = None,
    ) -> RetentionCheck:
        """
        Check that the trail is intact and covers the retention period.

        The chain must start at sequence 1 and verify end to end; a chain whose
        first stored entry is younger than the retention period is reported
        with its start date but is not an issue on its own.
        """
        now = as_utc(now) or datetime.now(timezone.utc)
        issues: List[str] = []

        oldest_page = await self.store.query(
            AuditQuery(org_id=org_id, limit=1, order=SortOrder.OLDEST_FIRST)
        )
        oldest = oldest_page.entries[0] if oldest_page.entries else None
        if oldest is not None and oldest.sequence != 1:
            issues.append(
                f"Entries before sequence {oldest.sequence} are missing from the trail"
            )

        result = await self.verifier.verify(org_id)
        if result.status == VerificationStatus.COMPROMISED:
            first = result.breaks[0]
            issues.append(
                f"Hash chain integrity issue detected at sequence {first.sequence}"
            )
        elif result.status == VerificationStatus.UNABLE_TO_VERIFY:
            issues.append(f"Hash chain could not be verified: {result.error}")

        retention_start = now - timedelta(days=365 * retention_years)
        check = RetentionCheck(
            org_id=org_id,
            compliant=not issues,
            issues=issues,
            retention_years=retention_years,
            oldest_entry_at=oldest.timestamp if oldest else None,
            chain_status=result.status,
        )
        logger.info(
            "Retention compliance checked",
            org_id=org_id,
            compliant=check.compliant,
            issue_count=len(issues),
            covers_retention=bool(oldest and oldest.timestamp <= retention_start),
        )
        return check
