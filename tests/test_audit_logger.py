"""
Unit Tests for the Audit Logger
===============================
Chain construction, concurrency, retry and failure escalation.
"""

import asyncio

import pytest

from casework_core.audit import (
    AuditAction,
    AuditLogger,
    AuditLogInput,
    AuditQuery,
    AuditResource,
    GENESIS_HASH,
    InMemoryAuditStore,
)
from casework_core.audit.exceptions import (
    AuditStoreError,
    AuditWriteError,
    ChainConflictError,
    InvalidAuditEntryError,
)
from casework_core.audit.hashing import hash_entry
from casework_core.audit.verifier import verify_entries
from casework_core.operational import IncidentKind, IncidentSeverity, RecordingOperationalChannel


class FlakyStore(InMemoryAuditStore):
    """Fails the first ``failures`` appends with ``error``."""

    def __init__(self, failures: int, error: Exception):
        super().__init__()
        self.failures = failures
        self.error = error
        self.append_calls = 0

    async def append(self, entry):
        self.append_calls += 1
        if self.append_calls <= self.failures:
            raise self.error
        return await super().append(entry)


class TestChainConstruction:
    """Tests for how entries link into a chain."""

    @pytest.mark.asyncio
    async def test_first_entry_links_to_genesis(self, audit_logger):
        """Should start a new organization's chain at the genesis value."""
        entry = await audit_logger.log("org-1", AuditAction.LOGIN, AuditResource.USER, "u1", user_id="u1")

        assert entry is not None
        assert entry.sequence == 1
        assert entry.previous_hash == GENESIS_HASH
        assert entry.hash == hash_entry(entry)

    @pytest.mark.asyncio
    async def test_entries_link_to_predecessor(self, audit_logger):
        """Should reference the previous entry's hash."""
        first = await audit_logger.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1", user_id="u1")
        second = await audit_logger.log("org-1", AuditAction.UPDATE, AuditResource.CLIENT, "c1", user_id="u1")

        assert second.previous_hash == first.hash
        assert second.sequence == 2

    @pytest.mark.asyncio
    async def test_org_chains_are_independent(self, audit_logger, store):
        """Should keep a separate chain per organization."""
        a1 = await audit_logger.log("org-a", AuditAction.VIEW, AuditResource.CLIENT, "c1")
        b1 = await audit_logger.log("org-b", AuditAction.VIEW, AuditResource.CLIENT, "c1")
        a2 = await audit_logger.log("org-a", AuditAction.VIEW, AuditResource.CLIENT, "c2")

        assert b1.previous_hash == GENESIS_HASH
        assert a2.previous_hash == a1.hash
        assert await store.count(AuditQuery(org_id="org-b")) == 1

    @pytest.mark.asyncio
    async def test_timestamps_never_go_backwards(self, store, channel, clock):
        """Should clamp a skewed clock to the chain head's timestamp."""
        audit = AuditLogger(store, error_channel=channel, base_delay=0.001, clock=clock)
        first = await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")
        clock.advance(seconds=-30)
        second = await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")

        assert second.timestamp == first.timestamp

    @pytest.mark.asyncio
    async def test_entry_fields_stored(self, audit_logger):
        """Should store every supplied field on the entry."""
        entry = await audit_logger.record(AuditLogInput(
            org_id="org-1",
            action="EXPORT",
            resource="REPORT",
            resource_id="r-7",
            user_id="u1",
            resource_name="Quarterly caseload",
            details={"format": "csv"},
            ip_address="10.1.2.3",
            user_agent="pytest",
        ))

        assert entry.action == "EXPORT"
        assert entry.resource_name == "Quarterly caseload"
        assert entry.details == {"format": "csv"}
        assert entry.ip_address == "10.1.2.3"


class TestConcurrentAppends:
    """Tests for appends racing on one organization."""

    @pytest.mark.asyncio
    async def test_concurrent_records_never_fork(self, audit_logger, store):
        """Should produce one linear chain from concurrent writers."""
        results = await asyncio.gather(*[
            audit_logger.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, f"c{i}", user_id="u1")
            for i in range(25)
        ])

        assert all(r is not None for r in results)
        chain = store._chains["org-1"]
        assert [e.sequence for e in chain] == list(range(1, 26))
        assert len({e.previous_hash for e in chain}) == 25
        assert verify_entries(chain).valid

    @pytest.mark.asyncio
    async def test_store_rejects_stale_append(self, audit_logger, store):
        """Should refuse an entry whose previous hash is no longer the head."""
        first = await audit_logger.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")
        await audit_logger.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c2")

        import dataclasses
        stale = dataclasses.replace(first, id="stale", sequence=2)
        with pytest.raises(ChainConflictError):
            await store.append(stale)

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, channel):
        """Should retry after losing the head race."""
        store = FlakyStore(1, ChainConflictError("org-1", GENESIS_HASH))
        audit = AuditLogger(store, error_channel=channel, base_delay=0.001)

        entry = await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")

        assert entry is not None
        assert store.append_calls == 2
        assert channel.incidents == []


class TestFailureHandling:
    """Tests for retry, escalation and raise_on_failure."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, channel):
        """Should succeed once the store recovers before attempts run out."""
        store = FlakyStore(2, AuditStoreError("connection reset"))
        audit = AuditLogger(store, error_channel=channel, max_attempts=3, base_delay=0.001)

        entry = await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")

        assert entry is not None
        assert store.append_calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_escalate(self, channel):
        """Should report an operational incident and return None."""
        store = FlakyStore(10, AuditStoreError("database down"))
        audit = AuditLogger(store, error_channel=channel, max_attempts=3, base_delay=0.001)

        entry = await audit.log("org-1", AuditAction.EXPORT, AuditResource.REPORT, "r1", user_id="u1")

        assert entry is None
        incidents = channel.of_kind(IncidentKind.AUDIT_WRITE_FAILURE)
        assert len(incidents) == 1
        assert incidents[0].severity == IncidentSeverity.ERROR
        assert incidents[0].org_id == "org-1"
        assert incidents[0].context["action"] == "EXPORT"
        assert "database down" in incidents[0].error

    @pytest.mark.asyncio
    async def test_raise_on_failure(self):
        """Should raise AuditWriteError when configured to."""
        store = FlakyStore(10, AuditStoreError("database down"))
        audit = AuditLogger(
            store,
            error_channel=RecordingOperationalChannel(),
            max_attempts=2,
            base_delay=0.001,
            raise_on_failure=True,
        )

        with pytest.raises(AuditWriteError):
            await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1")

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, audit_logger, channel, store):
        """Should reject an unknown action without touching the chain."""
        entry = await audit_logger.record(AuditLogInput(org_id="org-1", action="TELEPORT", resource="CLIENT"))

        assert entry is None
        assert store._chains == {}
        assert len(channel.of_kind(IncidentKind.AUDIT_WRITE_FAILURE)) == 1

    @pytest.mark.asyncio
    async def test_invalid_details_raise_when_configured(self, store):
        """Should surface invalid details with raise_on_failure."""
        audit = AuditLogger(store, error_channel=RecordingOperationalChannel(), raise_on_failure=True)

        with pytest.raises(InvalidAuditEntryError):
            await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, details={"x": float("inf")})

    @pytest.mark.asyncio
    async def test_missing_org_rejected(self, audit_logger):
        """Should refuse entries without an organization."""
        assert await audit_logger.log("", AuditAction.VIEW, AuditResource.CLIENT) is None

    @pytest.mark.asyncio
    async def test_non_text_identifier_rejected(self, store):
        """Should refuse identifiers that are not text or numbers."""
        audit = AuditLogger(store, error_channel=RecordingOperationalChannel(), raise_on_failure=True)

        with pytest.raises(InvalidAuditEntryError):
            await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, {"id": 1})
        assert store._chains == {}


class TestConvenienceRecorders:
    """Tests for the helper recorders."""

    @pytest.mark.asyncio
    async def test_failed_login(self, audit_logger):
        """Should record the login outcome in details."""
        entry = await audit_logger.user_login("org-1", "u1", success=False, ip_address="10.0.0.5")

        assert entry.action == "LOGIN"
        assert entry.resource == "USER"
        assert entry.details == {"success": False}

    @pytest.mark.asyncio
    async def test_data_exported(self, audit_logger):
        """Should record export format and size."""
        entry = await audit_logger.data_exported("org-1", "u1", "REPORT", "r1", "csv", record_count=120)

        assert entry.details == {"format": "csv", "record_count": 120}

    @pytest.mark.asyncio
    async def test_security_event(self, audit_logger):
        """Should record the event name alongside details."""
        entry = await audit_logger.security_event("org-1", "account_locked", user_id="u1", details={"attempts": 5})

        assert entry.action == "SECURITY"
        assert entry.details == {"event": "account_locked", "attempts": 5}

    @pytest.mark.asyncio
    async def test_correction_references_original(self, audit_logger, store):
        """Should append a new entry instead of editing the original."""
        original = await audit_logger.resource_viewed("org-1", "u1", "CLIENT", "c1")
        fix = await audit_logger.correction(original, "admin-1", "Wrong client recorded", {"resource_id": "c2"})

        assert fix.details["corrects_entry_id"] == original.id
        assert fix.previous_hash == original.hash
        assert store._chains["org-1"][0] == original
