"""
Audit Logger
=============
High-level audit logging interface with per-organization hash chains.

Appends for one organization are serialized by an asyncio lock so that two
concurrent writers never read the same chain head. Across processes the
store's conditional append catches the same race, which is retried.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from casework_core import metrics
from casework_core.config import get_settings
from casework_core.operational import (
    IncidentKind,
    IncidentSeverity,
    LoggingOperationalChannel,
    OperationalAlertChannel,
    OperationalIncident,
)
from casework_core.retry import RetryExhausted, retry_with_backoff

from .actions import AuditAction, AuditResource
from .exceptions import AuditStoreError, AuditWriteError, InvalidAuditEntryError
from .hashing import GENESIS_HASH, compute_entry_hash, normalize_details
from .models import AuditLogEntry, AuditLogInput
from .store import AuditStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _text_field(name: str, value: Any) -> Optional[str]:
    """Identifier fields are hashed and stored as text."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, uuid.UUID)):
        raise InvalidAuditEntryError(f"{name} must be a string, got {type(value).__name__}")
    return str(value)


class AuditLogger:
    """
    Records audit entries into an organization's hash chain.

    ``record`` is fire-and-forget from the business operation's point of
    view: failures are retried, then escalated to the operational channel and
    reported to the caller as ``None`` (or raised when ``raise_on_failure``).
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        error_channel: Optional[OperationalAlertChannel] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_details_bytes: Optional[int] = None,
        raise_on_failure: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        settings = get_settings()
        self.store = store
        self.error_channel = error_channel or LoggingOperationalChannel()
        self.max_attempts = max_attempts or settings.audit_write_max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.audit_write_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.audit_write_max_delay
        self.max_details_bytes = max_details_bytes or settings.audit_max_details_bytes
        self.raise_on_failure = raise_on_failure
        self._clock = clock
        self._org_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, org_id: str) -> asyncio.Lock:
        lock = self._org_locks.get(org_id)
        if lock is None:
            lock = self._org_locks.setdefault(org_id, asyncio.Lock())
        return lock

    def _validate(self, data: AuditLogInput) -> AuditLogInput:
        if not data.org_id:
            raise InvalidAuditEntryError("org_id is required")
        try:
            action = AuditAction(
                data.action.value if isinstance(data.action, Enum) else data.action
            )
        except ValueError as e:
            raise InvalidAuditEntryError(f"Unknown audit action: {data.action!r}") from e
        resource = data.resource.value if isinstance(data.resource, Enum) else data.resource
        if not resource or not isinstance(resource, str):
            raise InvalidAuditEntryError("resource is required")

        return AuditLogInput(
            org_id=_text_field("org_id", data.org_id),
            action=action.value,
            resource=resource,
            resource_id=_text_field("resource_id", data.resource_id),
            user_id=_text_field("user_id", data.user_id),
            resource_name=_text_field("resource_name", data.resource_name),
            details=normalize_details(data.details, self.max_details_bytes),
            ip_address=_text_field("ip_address", data.ip_address),
            user_agent=_text_field("user_agent", data.user_agent),
        )

    async def _append(self, data: AuditLogInput) -> AuditLogEntry:
        head = await self.store.latest(data.org_id)
        previous_hash = head.hash if head else GENESIS_HASH
        sequence = head.sequence + 1 if head else 1

        # Timestamps never go backwards within a chain, even if clocks skew
        timestamp = self._clock()
        if head and head.timestamp > timestamp:
            timestamp = head.timestamp

        entry_hash = compute_entry_hash(
            data.org_id,
            data.user_id,
            data.action,
            data.resource,
            data.resource_id,
            data.details,
            timestamp,
            previous_hash,
        )

        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            org_id=data.org_id,
            sequence=sequence,
            user_id=data.user_id,
            action=data.action,
            resource=data.resource,
            resource_id=data.resource_id,
            resource_name=data.resource_name,
            details=data.details or {},
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            timestamp=timestamp,
            previous_hash=previous_hash,
            hash=entry_hash,
        )
        return await self.store.append(entry)

    async def record(self, data: AuditLogInput) -> Optional[AuditLogEntry]:
        """
        Append an entry to the organization's chain.

        Args:
            data: Caller-supplied entry fields

        Returns:
            The stored AuditLogEntry, or None if recording failed

        Raises:
            InvalidAuditEntryError: Bad input, only with raise_on_failure
            AuditWriteError: Storage kept failing, only with raise_on_failure
        """
        try:
            data = self._validate(data)
        except InvalidAuditEntryError as e:
            metrics.AUDIT_WRITE_FAILURES.labels(reason="invalid_entry").inc()
            self._escalate(data, "Audit entry rejected", e)
            if self.raise_on_failure:
                raise
            return None

        started = time.perf_counter()
        try:
            async with self._lock_for(data.org_id):
                entry = await retry_with_backoff(
                    self._append,
                    data,
                    max_attempts=self.max_attempts,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    retryable_exceptions={AuditStoreError},
                )
        except RetryExhausted as e:
            metrics.AUDIT_WRITE_FAILURES.labels(reason="store_unavailable").inc()
            cause = e.last_exception or e
            self._escalate(data, "Audit entry could not be written", cause)
            if self.raise_on_failure:
                raise AuditWriteError(str(e)) from cause
            return None
        finally:
            metrics.AUDIT_WRITE_LATENCY.observe(time.perf_counter() - started)

        metrics.AUDIT_ENTRIES_WRITTEN.labels(action=entry.action).inc()
        logger.info(
            "Audit entry recorded",
            entry_id=entry.id,
            org_id=entry.org_id,
            sequence=entry.sequence,
            action=entry.action,
            resource=entry.resource,
        )
        return entry

    def _escalate(self, data: AuditLogInput, message: str, error: BaseException) -> None:
        action = data.action.value if isinstance(data.action, Enum) else data.action
        resource = data.resource.value if isinstance(data.resource, Enum) else data.resource
        self.error_channel.report(OperationalIncident(
            kind=IncidentKind.AUDIT_WRITE_FAILURE,
            severity=IncidentSeverity.ERROR,
            message=message,
            org_id=data.org_id,
            context={
                "action": action,
                "resource": resource,
                "resource_id": data.resource_id,
                "user_id": data.user_id,
            },
            error=f"{type(error).__name__}: {error}",
        ))

    async def log(
        self,
        org_id: str,
        action: AuditAction,
        resource: str,
        resource_id: Optional[str] = None,
        user_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Keyword form of ``record``."""
        return await self.record(AuditLogInput(
            org_id=org_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            user_id=user_id,
            resource_name=resource_name,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    # Convenience recorders for common call sites

    async def user_login(
        self,
        org_id: str,
        user_id: str,
        success: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        return await self.log(
            org_id, AuditAction.LOGIN, AuditResource.USER, user_id,
            user_id=user_id,
            details={"success": success},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def user_logout(self, org_id: str, user_id: str) -> Optional[AuditLogEntry]:
        return await self.log(
            org_id, AuditAction.LOGOUT, AuditResource.USER, user_id, user_id=user_id
        )

    async def data_exported(
        self,
        org_id: str,
        user_id: str,
        resource: str,
        resource_id: str,
        export_format: str,
        record_count: Optional[int] = None,
    ) -> Optional[AuditLogEntry]:
        details: Dict[str, Any] = {"format": export_format}
        if record_count is not None:
            details["record_count"] = record_count
        return await self.log(
            org_id, AuditAction.EXPORT, resource, resource_id,
            user_id=user_id, details=details,
        )

    async def file_downloaded(
        self, org_id: str, user_id: str, file_id: str, file_name: str
    ) -> Optional[AuditLogEntry]:
        return await self.log(
            org_id, AuditAction.DOWNLOAD, AuditResource.FILE, file_id,
            user_id=user_id, resource_name=file_name,
        )

    async def resource_viewed(
        self,
        org_id: str,
        user_id: str,
        resource: str,
        resource_id: str,
        ip_address: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        return await self.log(
            org_id, AuditAction.VIEW, resource, resource_id,
            user_id=user_id, ip_address=ip_address,
        )

    async def security_event(
        self,
        org_id: str,
        event: str,
        user_id: Optional[str] = None,
        resource: str = AuditResource.SECURITY,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        """Record a security decision (risk result, lockout, unlock)."""
        return await self.log(
            org_id, AuditAction.SECURITY, resource, resource_id,
            user_id=user_id,
            details={"event": event, **(details or {})},
        )

    async def correction(
        self,
        original: AuditLogEntry,
        user_id: str,
        reason: str,
        corrected_fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        """
        Record a correction of an earlier entry.

        Entries are never edited; the correction references the original.
        """
        return await self.log(
            original.org_id, AuditAction.UPDATE, original.resource, original.resource_id,
            user_id=user_id,
            details={
                "corrects_entry_id": original.id,
                "reason": reason,
                "corrected_fields": corrected_fields or {},
            },
        )
