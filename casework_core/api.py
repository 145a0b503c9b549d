"""
Audit API Router
================
Operator and dashboard surface over the audit trail: filtered listing,
chain verification, statistics, integrity proofs, compliance export and
compliance reports.

Hashes leave this router in display form only; entry details are shown to
viewers the ``viewer_can_see_details`` hook authorizes.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from casework_core.audit.actions import AuditAction
from casework_core.audit.exceptions import EntryNotFoundError, InvalidAuditEntryError
from casework_core.audit.export import export_for_compliance
from casework_core.audit.hashing import generate_integrity_proof, verify_integrity_proof
from casework_core.audit.models import AuditQuery, SortOrder, display_hash
from casework_core.audit.reports import ComplianceReporter, ReportType
from casework_core.audit.store import AuditStore
from casework_core.audit.verifier import ChainVerifier

logger = structlog.get_logger(__name__)


class AuditEntryModel(BaseModel):
    id: str
    org_id: str
    sequence: int
    user_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
    previous_hash: str
    hash: str


class AuditEntriesResponse(BaseModel):
    entries: List[AuditEntryModel]
    next_cursor: Optional[str] = None


class VerificationResponse(BaseModel):
    status: str
    valid: bool
    broken_at_entry_id: Optional[str] = None
    entries_checked: int
    error: Optional[str] = None


class UserActivity(BaseModel):
    user_id: str
    count: int


class AuditStatsResponse(BaseModel):
    total_entries: int
    by_action: Dict[str, int]
    by_resource: Dict[str, int]
    top_users: List[UserActivity]


class IntegrityProofResponse(BaseModel):
    entry_id: str
    hash: str
    proof: str
    valid: bool


class ComplianceExportResponse(BaseModel):
    org_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    entry_count: int
    entries: List[AuditEntryModel]
    export_hash: str
    exported_at: datetime


class ComplianceReportResponse(BaseModel):
    id: str
    org_id: str
    report_type: ReportType
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    generated_by: Optional[str] = None
    generated_at: datetime
    summary: Dict[str, Any]
    details: Optional[List[Dict[str, Any]]] = None
    hash: str


class RetentionCheckResponse(BaseModel):
    compliant: bool
    issues: List[str]
    retention_years: int
    oldest_entry_at: Optional[datetime] = None
    chain_status: str


def _deny_details(request: Request) -> bool:
    return False


def create_audit_router(
    store: AuditStore,
    verifier: Optional[ChainVerifier] = None,
    viewer_can_see_details: Callable[[Request], bool] = _deny_details,
) -> APIRouter:
    """
    Create the audit router.

    Args:
        store: Audit store to read from
        verifier: Chain verifier (defaults to one over ``store``)
        viewer_can_see_details: Decides per request whether entry details are shown

    Returns:
        FastAPI router with /audit/{org_id}/... endpoints
    """
    router = APIRouter(prefix="/audit", tags=["Audit"])
    verifier = verifier or ChainVerifier(store)
    reporter = ComplianceReporter(store, verifier)

    @router.get("/{org_id}/entries", response_model=AuditEntriesResponse)
    async def list_entries(
        request: Request,
        org_id: str,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = Query(50, ge=1, le=500),
        cursor: Optional[str] = None,
        order: SortOrder = SortOrder.NEWEST_FIRST,
    ) -> AuditEntriesResponse:
        """List an organization's entries, newest first by default."""
        include_details = viewer_can_see_details(request)
        try:
            page = await store.query(AuditQuery(
                org_id=org_id,
                user_id=user_id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                start=start,
                end=end,
                limit=limit,
                cursor=cursor,
                order=order,
            ))
        except InvalidAuditEntryError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return AuditEntriesResponse(
            entries=[AuditEntryModel(**e.to_display(include_details)) for e in page.entries],
            next_cursor=page.next_cursor,
        )

    @router.get("/{org_id}/verify", response_model=VerificationResponse)
    async def verify_chain(org_id: str, collect_all: bool = False) -> VerificationResponse:
        """Verify the organization's chain end to end."""
        result = await verifier.verify(org_id, collect_all=collect_all)
        return VerificationResponse(
            status=result.status.value,
            valid=result.valid,
            broken_at_entry_id=result.broken_at_entry_id,
            entries_checked=result.entries_checked,
            error=result.error,
        )

    @router.get("/{org_id}/stats", response_model=AuditStatsResponse)
    async def audit_stats(
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditStatsResponse:
        stats = await store.stats(org_id, start=start, end=end)
        return AuditStatsResponse(
            total_entries=stats.total_entries,
            by_action=stats.by_action,
            by_resource=stats.by_resource,
            top_users=[UserActivity(user_id=u, count=c) for u, c in stats.top_users],
        )

    @router.get("/{org_id}/entries/{entry_id}/proof", response_model=IntegrityProofResponse)
    async def integrity_proof(org_id: str, entry_id: str) -> IntegrityProofResponse:
        """Self-contained proof bundle for one entry."""
        try:
            entry = await store.require(org_id, entry_id)
        except EntryNotFoundError:
            raise HTTPException(status_code=404, detail="Audit entry not found")
        proof = generate_integrity_proof(entry)
        return IntegrityProofResponse(
            entry_id=entry.id,
            hash=display_hash(entry.hash),
            proof=proof,
            valid=verify_integrity_proof(proof),
        )

    @router.get("/{org_id}/export", response_model=ComplianceExportResponse)
    async def compliance_export(
        request: Request,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ComplianceExportResponse:
        include_details = viewer_can_see_details(request)
        export = await export_for_compliance(store, org_id, start=start, end=end)
        logger.info("Compliance export served", org_id=org_id, entry_count=len(export.entries))
        return ComplianceExportResponse(
            org_id=export.org_id,
            start=export.start,
            end=export.end,
            entry_count=len(export.entries),
            entries=[AuditEntryModel(**e.to_display(include_details)) for e in export.entries],
            export_hash=export.export_hash,
            exported_at=export.exported_at,
        )

    @router.get("/{org_id}/reports/{report_type}", response_model=ComplianceReportResponse)
    async def compliance_report(
        request: Request,
        org_id: str,
        report_type: ReportType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        generated_by: Optional[str] = None,
    ) -> ComplianceReportResponse:
        """Hash-sealed compliance report; detail rows only for authorized viewers."""
        report = await reporter.generate(org_id, report_type, start, end, generated_by=generated_by)
        return ComplianceReportResponse(
            id=report.id,
            org_id=report.org_id,
            report_type=report.report_type,
            start=report.start,
            end=report.end,
            generated_by=report.generated_by,
            generated_at=report.generated_at,
            summary=report.data["summary"],
            details=report.data["details"] if viewer_can_see_details(request) else None,
            hash=report.hash,
        )

    @router.get("/{org_id}/retention", response_model=RetentionCheckResponse)
    async def retention_compliance(org_id: str, retention_years: int = Query(7, ge=1)) -> RetentionCheckResponse:
        check = await reporter.check_retention_compliance(org_id, retention_years=retention_years)
        return RetentionCheckResponse(
            compliant=check.compliant,
            issues=check.issues,
            retention_years=check.retention_years,
            oldest_entry_at=check.oldest_entry_at,
            chain_status=check.chain_status.value,
        )

    return router
