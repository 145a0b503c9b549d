"""
Unit Tests for Chain Verification
=================================
Tamper detection, checkpoints, timeouts and compliance export.
"""

import asyncio
import dataclasses

import pytest

from casework_core.audit import (
    AuditAction,
    AuditResource,
    ChainVerifier,
    InMemoryAuditStore,
    VerificationStatus,
)
from casework_core.audit.exceptions import AuditStoreError, EntryNotFoundError
from casework_core.audit.export import export_for_compliance, verify_export
from casework_core.audit.models import AuditQuery, VerificationCheckpoint
from casework_core.operational import IncidentKind, IncidentSeverity


async def _fill(audit_logger, org_id="org-1", count=10):
    entries = []
    for i in range(count):
        entries.append(await audit_logger.log(
            org_id, AuditAction.VIEW, AuditResource.CLIENT, f"c{i}", user_id="u1",
            details={"index": i},
        ))
    return entries


class BrokenStore(InMemoryAuditStore):
    """Store whose chain reads fail after ``good_chunks`` chunks."""

    def __init__(self, good_chunks: int = 0):
        super().__init__()
        self.good_chunks = good_chunks

    async def iter_chain(self, org_id, after_sequence=0, chunk_size=500):
        served = 0
        async for chunk in super().iter_chain(org_id, after_sequence, chunk_size):
            if served >= self.good_chunks:
                raise AuditStoreError("replica unavailable")
            served += 1
            yield chunk


class SlowStore(InMemoryAuditStore):
    async def iter_chain(self, org_id, after_sequence=0, chunk_size=500):
        async for chunk in super().iter_chain(org_id, after_sequence, chunk_size):
            await asyncio.sleep(0.05)
            yield chunk


class TestChainVerifier:
    """Tests for full-chain verification."""

    @pytest.mark.asyncio
    async def test_intact_chain_is_valid(self, audit_logger, store, channel):
        """Should report VALID for an untouched chain."""
        await _fill(audit_logger)
        result = await ChainVerifier(store, error_channel=channel, chunk_size=3).verify("org-1")

        assert result.status == VerificationStatus.VALID
        assert result.valid is True
        assert result.entries_checked == 10
        assert result.broken_at_entry_id is None
        assert channel.of_kind(IncidentKind.CHAIN_INTEGRITY_FAILURE) == []

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, store, channel):
        """Should treat an organization without entries as valid."""
        result = await ChainVerifier(store, error_channel=channel).verify("org-empty")

        assert result.valid is True
        assert result.entries_checked == 0

    @pytest.mark.asyncio
    async def test_modified_entry_detected(self, audit_logger, store, channel):
        """Should identify the first modified entry."""
        entries = await _fill(audit_logger)
        store._chains["org-1"][4] = dataclasses.replace(entries[4], details={"index": 99})

        result = await ChainVerifier(store, error_channel=channel).verify("org-1")

        assert result.status == VerificationStatus.COMPROMISED
        assert result.broken_at_entry_id == entries[4].id
        assert result.breaks[0].reason == "hash_mismatch"
        assert result.entries_checked == 5

    @pytest.mark.asyncio
    async def test_rehashed_entry_breaks_linkage(self, audit_logger, store, channel):
        """Should catch a modified entry whose own hash was recomputed."""
        from casework_core.audit.hashing import hash_entry

        entries = await _fill(audit_logger)
        forged = dataclasses.replace(entries[2], user_id="someone-else")
        forged = dataclasses.replace(forged, hash=hash_entry(forged))
        store._chains["org-1"][2] = forged

        result = await ChainVerifier(store, error_channel=channel).verify("org-1")

        assert result.status == VerificationStatus.COMPROMISED
        assert result.broken_at_entry_id == entries[3].id
        assert result.breaks[0].reason == "linkage_mismatch"

    @pytest.mark.asyncio
    async def test_collect_all_reports_every_break(self, audit_logger, store, channel):
        """Should keep walking when asked to collect every break."""
        entries = await _fill(audit_logger)
        store._chains["org-1"][1] = dataclasses.replace(entries[1], resource_id="x")
        store._chains["org-1"][7] = dataclasses.replace(entries[7], resource_id="y")

        result = await ChainVerifier(store, error_channel=channel, chunk_size=4).verify(
            "org-1", collect_all=True
        )

        assert [b.entry_id for b in result.breaks] == [entries[1].id, entries[7].id]
        assert result.entries_checked == 10

    @pytest.mark.asyncio
    async def test_compromised_chain_raises_incident(self, audit_logger, store, channel):
        """Should escalate a compromised chain as a critical incident."""
        entries = await _fill(audit_logger, count=3)
        store._chains["org-1"][0] = dataclasses.replace(entries[0], action="DELETE")

        await ChainVerifier(store, error_channel=channel).verify("org-1")

        incidents = channel.of_kind(IncidentKind.CHAIN_INTEGRITY_FAILURE)
        assert len(incidents) == 1
        assert incidents[0].severity == IncidentSeverity.CRITICAL
        assert incidents[0].context["broken_at_entry_id"] == entries[0].id

    @pytest.mark.asyncio
    async def test_other_org_unaffected(self, audit_logger, store, channel):
        """Should not report another organization's tampering."""
        entries = await _fill(audit_logger, org_id="org-1", count=3)
        await _fill(audit_logger, org_id="org-2", count=3)
        store._chains["org-1"][1] = dataclasses.replace(entries[1], resource_id="x")

        result = await ChainVerifier(store, error_channel=channel).verify("org-2")

        assert result.valid is True

    @pytest.mark.asyncio
    async def test_checkpoint_resume(self, audit_logger, store, channel):
        """Should verify only entries after a checkpoint."""
        await _fill(audit_logger, count=6)
        verifier = ChainVerifier(store, error_channel=channel)
        first = await verifier.verify("org-1")

        await _fill(audit_logger, count=4)
        resumed = await verifier.verify("org-1", checkpoint=first.checkpoint)

        assert first.checkpoint == VerificationCheckpoint(6, store._chains["org-1"][5].hash)
        assert resumed.valid is True
        assert resumed.entries_checked == 4
        assert resumed.checkpoint.sequence == 10


class TestInMemoryStore:
    """Tests for entry lookup and isolation of stored entries."""

    @pytest.mark.asyncio
    async def test_require_missing_entry(self, audit_logger, store):
        """Should raise for an entry id the organization does not have."""
        entries = await _fill(audit_logger, count=2)

        assert (await store.require("org-1", entries[1].id)).id == entries[1].id
        with pytest.raises(EntryNotFoundError):
            await store.require("org-1", "missing")
        with pytest.raises(EntryNotFoundError):
            await store.require("org-2", entries[1].id)

    @pytest.mark.asyncio
    async def test_returned_details_are_detached(self, audit_logger, store, channel):
        """Should not let callers alter stored details through returned entries."""
        entries = await _fill(audit_logger, count=3)
        entries[0].details["index"] = 99
        fetched = await store.get("org-1", entries[1].id)
        fetched.details["index"] = 99
        page = await store.query(AuditQuery(org_id="org-1"))
        for entry in page.entries:
            entry.details["injected"] = True

        result = await ChainVerifier(store, error_channel=channel).verify("org-1")

        assert result.status == VerificationStatus.VALID
        assert (await store.get("org-1", entries[1].id)).details == {"index": 1}

class TestUnableToVerify:
    """Tests for verification that cannot complete."""

    @pytest.mark.asyncio
    async def test_store_error_is_not_compromise(self, audit_logger, channel):
        """Should report UNABLE_TO_VERIFY when the store fails."""
        from casework_core.audit import AuditLogger

        store = BrokenStore(good_chunks=1)
        audit = AuditLogger(store, error_channel=channel, base_delay=0.001)
        await _fill(audit, count=6)

        result = await ChainVerifier(store, error_channel=channel, chunk_size=2).verify("org-1")

        assert result.status == VerificationStatus.UNABLE_TO_VERIFY
        assert result.valid is False
        assert result.broken_at_entry_id is None
        assert "replica unavailable" in result.error
        assert channel.of_kind(IncidentKind.CHAIN_INTEGRITY_FAILURE) == []

    @pytest.mark.asyncio
    async def test_timeout(self, channel):
        """Should give up with UNABLE_TO_VERIFY after the timeout."""
        from casework_core.audit import AuditLogger

        store = SlowStore()
        audit = AuditLogger(store, error_channel=channel, base_delay=0.001)
        await _fill(audit, count=10)

        result = await ChainVerifier(store, error_channel=channel, chunk_size=1).verify(
            "org-1", timeout=0.12
        )

        assert result.status == VerificationStatus.UNABLE_TO_VERIFY
        assert "timed out" in result.error
        assert 0 < result.entries_checked < 10


class TestComplianceExport:
    """Tests for date-bounded compliance exports."""

    @pytest.mark.asyncio
    async def test_export_contains_whole_range_oldest_first(self, audit_logger, store):
        """Should page through the full chain oldest-first."""
        entries = await _fill(audit_logger, count=7)

        export = await export_for_compliance(store, "org-1", page_size=3)

        assert [e.id for e in export.entries] == [e.id for e in entries]
        assert verify_export(export) is True

    @pytest.mark.asyncio
    async def test_export_digest_detects_removal(self, audit_logger, store):
        """Should fail verification when an entry is dropped from the export."""
        await _fill(audit_logger, count=4)
        export = await export_for_compliance(store, "org-1")
        export.entries.pop(1)

        assert verify_export(export) is False
