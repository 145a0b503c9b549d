"""
Compliance Export
=================
Date-bounded export of an organization's entries with a digest over the
exported entry hashes, for handing to auditors.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from .models import AuditLogEntry, AuditQuery, SortOrder, as_utc
from .store import AuditStore

logger = structlog.get_logger(__name__)


def compute_export_hash(entries: List[AuditLogEntry]) -> str:
    """SHA-256 over the concatenated entry hashes, oldest first."""
    digest = hashlib.sha256()
    for entry in entries:
        digest.update(entry.hash.encode("ascii"))
    return digest.hexdigest()


@dataclass
class ComplianceExport:
    org_id: str
    start: Optional[datetime]
    end: Optional[datetime]
    entries: List[AuditLogEntry]
    export_hash: str
    exported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "entry_count": len(self.entries),
            "entries": [e.to_dict() for e in self.entries],
            "export_hash": self.export_hash,
            "exported_at": self.exported_at.isoformat(),
        }


async def iter_entries(
    store: AuditStore,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page_size: int = 500,
    **filters: Any,
) -> AsyncIterator[AuditLogEntry]:
    """Page through entries in ``[start, end]`` oldest-first."""
    cursor: Optional[str] = None
    while True:
        page = await store.query(AuditQuery(
            org_id=org_id,
            start=start,
            end=end,
            limit=page_size,
            cursor=cursor,
            order=SortOrder.OLDEST_FIRST,
            **filters,
        ))
        for entry in page.entries:
            yield entry
        if not page.next_cursor:
            return
        cursor = page.next_cursor


async def export_for_compliance(
    store: AuditStore,
    org_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page_size: int = 500,
) -> ComplianceExport:
    """Collect entries in ``[start, end]`` oldest-first and seal them with a digest."""
    entries = [e async for e in iter_entries(store, org_id, start, end, page_size)]

    export = ComplianceExport(
        org_id=org_id,
        start=as_utc(start),
        end=as_utc(end),
        entries=entries,
        export_hash=compute_export_hash(entries),
    )
    logger.info(
        "Compliance export created",
        org_id=org_id,
        entry_count=len(entries),
        export_hash=export.export_hash[:16],
    )
    return export


def verify_export(export: ComplianceExport) -> bool:
    """Check that an export's entries still match its digest."""
    return compute_export_hash(export.entries) == export.export_hash
