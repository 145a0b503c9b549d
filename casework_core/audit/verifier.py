"""
Chain Verifier
==============
Walks an organization's chain oldest-first, recomputing every hash from the
entry's own fields and checking each link against its predecessor.

The walk is streamed in chunks, bounded by an optional timeout, and can be
resumed from a checkpoint. A storage error or timeout yields
UNABLE_TO_VERIFY, which is never reported as a broken chain.
"""

import asyncio
from typing import Iterable, List, Optional

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

from .exceptions import AuditStoreError
from .hashing import GENESIS_HASH, hash_entry
from .models import (
    AuditLogEntry,
    ChainBreak,
    ChainVerification,
    VerificationCheckpoint,
    VerificationStatus,
)
from .store import AuditStore

logger = structlog.get_logger(__name__)


class _ChainWalk:
    """Incremental verification state shared by the sync and async walks."""

    def __init__(self, org_id: str, checkpoint: Optional[VerificationCheckpoint], collect_all: bool):
        self.org_id = org_id
        self.collect_all = collect_all
        self.expected_previous = checkpoint.hash if checkpoint else GENESIS_HASH
        self.checkpoint = checkpoint
        self.entries_checked = 0
        self.breaks: List[ChainBreak] = []

    @property
    def done(self) -> bool:
        return bool(self.breaks) and not self.collect_all

    def feed(self, entries: Iterable[AuditLogEntry]) -> None:
        for entry in entries:
            self.entries_checked += 1

            if entry.previous_hash != self.expected_previous:
                self._break(entry, "linkage_mismatch")
            elif hash_entry(entry) != entry.hash:
                self._break(entry, "hash_mismatch")
            elif not self.breaks:
                self.checkpoint = VerificationCheckpoint(entry.sequence, entry.hash)

            if self.done:
                return
            # The next entry must reference what this one recorded
            self.expected_previous = entry.hash

    def _break(self, entry: AuditLogEntry, reason: str) -> None:
        logger.warning(
            "Audit chain integrity violation",
            org_id=self.org_id,
            entry_id=entry.id,
            sequence=entry.sequence,
            reason=reason,
            stored_hash=entry.hash[:16],
        )
        self.breaks.append(ChainBreak(entry.id, entry.sequence, reason))

    def result(self) -> ChainVerification:
        status = VerificationStatus.COMPROMISED if self.breaks else VerificationStatus.VALID
        return ChainVerification(
            org_id=self.org_id,
            status=status,
            entries_checked=self.entries_checked,
            breaks=list(self.breaks),
            checkpoint=self.checkpoint,
        )


def verify_entries(
    entries: List[AuditLogEntry],
    collect_all: bool = False,
) -> ChainVerification:
    """
    Verify a small, already-loaded chain (oldest first).

    Args:
        entries: Entries of one organization in insertion order
        collect_all: Report every break instead of stopping at the first

    Returns:
        ChainVerification with VALID or COMPROMISED status
    """
    org_id = entries[0].org_id if entries else ""
    walk = _ChainWalk(org_id, None, collect_all)
    walk.feed(entries)
    return walk.result()


class ChainVerifier:
    """Streams and verifies organization chains from an AuditStore."""

    def __init__(
        self,
        store: AuditStore,
        *,
        chunk_size: Optional[int] = None,
        timeout: Optional[float] = None,
        error_channel: Optional[OperationalAlertChannel] = None,
    ):
        settings = get_settings()
        self.store = store
        self.chunk_size = chunk_size or settings.audit_verify_chunk_size
        self.timeout = timeout if timeout is not None else settings.audit_verify_timeout_seconds
        self.error_channel = error_channel or LoggingOperationalChannel()

    async def verify(
        self,
        org_id: str,
        *,
        collect_all: bool = False,
        checkpoint: Optional[VerificationCheckpoint] = None,
        timeout: Optional[float] = None,
    ) -> ChainVerification:
        """
        Verify an organization's chain.

        Args:
            org_id: Organization whose chain is walked
            collect_all: Report every break instead of stopping at the first
            checkpoint: Resume after a previously verified entry
            timeout: Seconds before giving up with UNABLE_TO_VERIFY

        Returns:
            ChainVerification; ``valid`` is True only for an intact chain
        """
        walk = _ChainWalk(org_id, checkpoint, collect_all)
        limit = timeout if timeout is not None else self.timeout

        error: Optional[str] = None
        try:
            await asyncio.wait_for(self._walk(walk, checkpoint), timeout=limit)
        except asyncio.TimeoutError:
            error = f"Verification timed out after {limit}s"
        except AuditStoreError as e:
            error = str(e)

        # A break already found stays a break even if the walk was cut short
        if error is not None and not walk.breaks:
            return self._unable(walk, error)

        result = walk.result()
        result.error = error
        metrics.CHAIN_VERIFICATIONS.labels(status=result.status.value).inc()

        if result.status == VerificationStatus.COMPROMISED:
            first = result.breaks[0]
            self.error_channel.report(OperationalIncident(
                kind=IncidentKind.CHAIN_INTEGRITY_FAILURE,
                severity=IncidentSeverity.CRITICAL,
                message="Audit chain integrity compromised",
                org_id=org_id,
                context={
                    "broken_at_entry_id": first.entry_id,
                    "broken_at_sequence": first.sequence,
                    "reason": first.reason,
                    "break_count": len(result.breaks),
                },
            ))
        else:
            logger.info(
                "Audit chain verified",
                org_id=org_id,
                entries_checked=result.entries_checked,
            )
        return result

    async def _walk(self, walk: _ChainWalk, checkpoint: Optional[VerificationCheckpoint]) -> None:
        after = checkpoint.sequence if checkpoint else 0
        async for chunk in self.store.iter_chain(walk.org_id, after, self.chunk_size):
            walk.feed(chunk)
            if walk.done:
                return
            # Yield to the loop between chunks so long walks stay cancellable
            await asyncio.sleep(0)

    def _unable(self, walk: _ChainWalk, error: str) -> ChainVerification:
        metrics.CHAIN_VERIFICATIONS.labels(status=VerificationStatus.UNABLE_TO_VERIFY.value).inc()
        logger.error(
            "Audit chain could not be verified",
            org_id=walk.org_id,
            entries_checked=walk.entries_checked,
            error=error,
        )
        return ChainVerification(
            org_id=walk.org_id,
            status=VerificationStatus.UNABLE_TO_VERIFY,
            entries_checked=walk.entries_checked,
            checkpoint=walk.checkpoint,
            error=error,
        )
