"""
Casework Core Library
=====================
Tamper-evident audit trail and access-risk engine for multi-tenant casework
services handling protected health information.
"""

__version__ = "0.1.0"

# Config & logging
from casework_core.config import CoreSettings, get_settings
from casework_core.logging_config import setup_logging, bind_request_context

# Database
from casework_core.database import create_async_engine, get_session, close_engine

# Errors
from casework_core.exceptions import CaseworkCoreError
from casework_core.operational import (
    IncidentKind,
    IncidentSeverity,
    OperationalIncident,
    LoggingOperationalChannel,
)

# Audit
from casework_core.audit import (
    AuditAction,
    AuditResource,
    AuditLogEntry,
    AuditLogInput,
    AuditQuery,
    AuditLogger,
    InMemoryAuditStore,
    ChainVerifier,
    ChainVerification,
    VerificationStatus,
    GENESIS_HASH,
    compute_entry_hash,
    export_for_compliance,
)
from casework_core.audit.sql_store import SQLAlchemyAuditStore

# Security
from casework_core.security import (
    AccessEvent,
    OrgSecurityConfig,
    RiskEngine,
    RiskLevel,
    SecurityRiskResult,
    InMemoryAccessPatternTracker,
    RedisAccessPatternTracker,
    LoginLockoutTracker,
    InMemoryLockoutStore,
    RedisLockoutStore,
    ActionBlockedError,
)

# Guard & API
from casework_core.guard import AccessContext, SensitiveOperationGuard
from casework_core.api import create_audit_router

# Retry
from casework_core.retry import retry_with_backoff, RetryExhausted

__all__ = [
    # Config & logging
    "CoreSettings",
    "get_settings",
    "setup_logging",
    "bind_request_context",
    # Database
    "create_async_engine",
    "get_session",
    "close_engine",
    # Errors
    "CaseworkCoreError",
    "IncidentKind",
    "IncidentSeverity",
    "OperationalIncident",
    "LoggingOperationalChannel",
    # Audit
    "AuditAction",
    "AuditResource",
    "AuditLogEntry",
    "AuditLogInput",
    "AuditQuery",
    "AuditLogger",
    "InMemoryAuditStore",
    "SQLAlchemyAuditStore",
    "ChainVerifier",
    "ChainVerification",
    "VerificationStatus",
    "GENESIS_HASH",
    "compute_entry_hash",
    "export_for_compliance",
    # Security
    "AccessEvent",
    "OrgSecurityConfig",
    "RiskEngine",
    "RiskLevel",
    "SecurityRiskResult",
    "InMemoryAccessPatternTracker",
    "RedisAccessPatternTracker",
    "LoginLockoutTracker",
    "InMemoryLockoutStore",
    "RedisLockoutStore",
    "ActionBlockedError",
    # Guard & API
    "AccessContext",
    "SensitiveOperationGuard",
    "create_audit_router",
    # Retry
    "retry_with_backoff",
    "RetryExhausted",
]
