"""
Audit Logging Module
====================
Append-only, tamper-evident audit trail with one hash chain per organization.
"""

from .actions import AuditAction, AuditResource
from .exceptions import (
    AuditError,
    InvalidAuditEntryError,
    AuditStoreError,
    ChainConflictError,
    AuditWriteError,
    EntryNotFoundError,
)
from .models import (
    AuditLogEntry,
    AuditLogInput,
    AuditQuery,
    AuditPage,
    AuditStats,
    SortOrder,
    ChainBreak,
    ChainVerification,
    VerificationCheckpoint,
    VerificationStatus,
    display_hash,
)
from .hashing import (
    GENESIS_HASH,
    canonicalize,
    compute_entry_hash,
    compute_hash,
    hash_entry,
    normalize_details,
    generate_integrity_proof,
    verify_integrity_proof,
)
from .store import AuditStore, InMemoryAuditStore
from .logger import AuditLogger
from .verifier import ChainVerifier, verify_entries
from .export import ComplianceExport, export_for_compliance, verify_export
from .reports import (
    ComplianceReport,
    ComplianceReporter,
    ReportType,
    RetentionCheck,
    verify_report,
)

__all__ = [
    # Actions
    "AuditAction",
    "AuditResource",
    # Exceptions
    "AuditError",
    "InvalidAuditEntryError",
    "AuditStoreError",
    "ChainConflictError",
    "AuditWriteError",
    "EntryNotFoundError",
    # Models
    "AuditLogEntry",
    "AuditLogInput",
    "AuditQuery",
    "AuditPage",
    "AuditStats",
    "SortOrder",
    "ChainBreak",
    "ChainVerification",
    "VerificationCheckpoint",
    "VerificationStatus",
    "display_hash",
    # Hashing
    "GENESIS_HASH",
    "canonicalize",
    "compute_entry_hash",
    "compute_hash",
    "hash_entry",
    "normalize_details",
    "generate_integrity_proof",
    "verify_integrity_proof",
    # Stores
    "AuditStore",
    "InMemoryAuditStore",
    # Logger
    "AuditLogger",
    # Verification
    "ChainVerifier",
    "verify_entries",
    # Export
    "ComplianceExport",
    "export_for_compliance",
    "verify_export",
    # Reports
    "ComplianceReport",
    "ComplianceReporter",
    "ReportType",
    "RetentionCheck",
    "verify_report",
]
