"""
Unit Tests for Compliance Reports
=================================
Typed reports, report sealing and the retention check.
"""

import dataclasses
from datetime import timedelta

import pytest
import pytest_asyncio

from casework_core.audit import (
    AuditAction,
    AuditLogger,
    AuditResource,
    ChainVerifier,
    ComplianceReporter,
    ReportType,
    VerificationStatus,
    verify_report,
)


@pytest_asyncio.fixture
async def two_days(store, channel, clock):
    """Three entries on each of two consecutive days."""
    audit = AuditLogger(store, error_channel=channel, base_delay=0.001, clock=clock)
    recorded = [
        await audit.log("org-1", AuditAction.UPLOAD, AuditResource.FILE, "f1",
                        user_id="u1", resource_name="intake.pdf"),
        await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1", user_id="u1"),
        await audit.file_downloaded("org-1", "u2", "f1", "intake.pdf"),
    ]
    clock.advance(days=1)
    recorded += [
        await audit.log("org-1", AuditAction.VIEW, AuditResource.CLIENT, "c1", user_id="u1"),
        await audit.data_exported("org-1", "u2", "REPORT", "r1", "csv"),
        await audit.log("org-1", AuditAction.UPDATE, AuditResource.CLIENT, "c2", user_id="u1"),
    ]
    return recorded


@pytest.fixture
def reporter(store, channel):
    return ComplianceReporter(store, ChainVerifier(store, error_channel=channel))


class TestReportTypes:
    """Tests for each report type."""

    @pytest.mark.asyncio
    async def test_activity_summary(self, reporter, two_days, business_noon):
        """Should count events per action, resource and day."""
        report = await reporter.generate("org-1", ReportType.ACTIVITY_SUMMARY, generated_by="auditor")
        summary = report.data["summary"]

        assert summary["total_events"] == 6
        assert summary["unique_users"] == 2
        assert summary["action_breakdown"] == {
            "UPLOAD": 1, "VIEW": 2, "DOWNLOAD": 1, "EXPORT": 1, "UPDATE": 1,
        }
        assert summary["resource_breakdown"] == {"FILE": 2, "CLIENT": 3, "REPORT": 1}
        assert report.data["details"] == [
            {"date": business_noon.date().isoformat(), "count": 3},
            {"date": (business_noon + timedelta(days=1)).date().isoformat(), "count": 3},
        ]
        assert report.generated_by == "auditor"
        assert report.data["metadata"]["report_version"] == "1.0"

    @pytest.mark.asyncio
    async def test_date_bounds_limit_report(self, reporter, two_days, business_noon):
        """Should only cover entries inside the requested range."""
        second_day = (business_noon + timedelta(days=1)).replace(hour=0, tzinfo=None)

        report = await reporter.generate("org-1", ReportType.ACTIVITY_SUMMARY, start=second_day)

        assert report.data["summary"]["total_events"] == 3
        assert report.start.tzinfo is not None
        assert report.data["metadata"]["filters"]["start"].startswith(second_day.date().isoformat())

    @pytest.mark.asyncio
    async def test_data_access(self, reporter, two_days):
        """Should list view, download and export events only."""
        report = await reporter.generate("org-1", ReportType.DATA_ACCESS)

        assert report.data["summary"] == {
            "total_access_events": 4,
            "unique_users": 2,
            "resources_accessed": 3,
        }
        assert [row["action"] for row in report.data["details"]] == [
            "VIEW", "DOWNLOAD", "VIEW", "EXPORT",
        ]

    @pytest.mark.asyncio
    async def test_user_activity(self, reporter, two_days):
        """Should rank users by number of actions."""
        report = await reporter.generate("org-1", ReportType.USER_ACTIVITY)

        assert report.data["summary"] == {
            "total_users": 2,
            "total_actions": 6,
            "average_actions_per_user": 3,
        }
        top = report.data["details"][0]
        assert top["user_id"] == "u1"
        assert top["by_action"] == {"UPLOAD": 1, "VIEW": 2, "UPDATE": 1}

    @pytest.mark.asyncio
    async def test_file_audit(self, reporter, two_days):
        """Should cover file events only."""
        report = await reporter.generate("org-1", ReportType.FILE_AUDIT)

        assert report.data["summary"] == {
            "total_file_events": 2,
            "by_action": {"UPLOAD": 1, "DOWNLOAD": 1},
        }
        assert {row["file_name"] for row in report.data["details"]} == {"intake.pdf"}

    @pytest.mark.asyncio
    async def test_chain_integrity_lists_every_break(self, reporter, two_days, store):
        """Should report each tampered entry of a compromised chain."""
        store._chains["org-1"][1] = dataclasses.replace(two_days[1], user_id="u9")
        store._chains["org-1"][4] = dataclasses.replace(two_days[4], resource_id="r2")

        report = await reporter.generate("org-1", ReportType.CHAIN_INTEGRITY)

        assert report.data["summary"]["status"] == "compromised"
        assert report.data["summary"]["chain_valid"] is False
        assert report.data["summary"]["broken_at_entry_id"] == two_days[1].id
        assert [row["sequence"] for row in report.data["details"]] == [2, 5]

    @pytest.mark.asyncio
    async def test_empty_organization(self, reporter):
        """Should produce an empty but sealed report."""
        report = await reporter.generate("org-empty", ReportType.USER_ACTIVITY)

        assert report.data["summary"]["average_actions_per_user"] == 0
        assert report.data["details"] == []
        assert verify_report(report) is True


class TestReportSeal:
    """Tests for report hashing."""

    @pytest.mark.asyncio
    async def test_untouched_report_verifies(self, reporter, two_days):
        """Should verify a report as generated."""
        report = await reporter.generate("org-1", ReportType.DATA_ACCESS)

        assert len(report.hash) == 64
        assert verify_report(report) is True
        assert report.to_dict()["report_type"] == "DATA_ACCESS"

    @pytest.mark.asyncio
    async def test_edited_report_detected(self, reporter, two_days):
        """Should fail verification once the payload is edited."""
        report = await reporter.generate("org-1", ReportType.DATA_ACCESS)
        report.data["details"].pop()

        assert verify_report(report) is False


class TestRetentionCheck:
    """Tests for retention compliance."""

    @pytest.mark.asyncio
    async def test_intact_trail_is_compliant(self, reporter, two_days):
        """Should pass an intact chain starting at sequence 1."""
        check = await reporter.check_retention_compliance("org-1")

        assert check.compliant is True
        assert check.issues == []
        assert check.retention_years == 7
        assert check.oldest_entry_at == two_days[0].timestamp
        assert check.chain_status == VerificationStatus.VALID

    @pytest.mark.asyncio
    async def test_tampered_chain_not_compliant(self, reporter, two_days, store):
        """Should name the sequence where the chain breaks."""
        store._chains["org-1"][2] = dataclasses.replace(two_days[2], user_id="u9")

        check = await reporter.check_retention_compliance("org-1")

        assert check.compliant is False
        assert check.chain_status == VerificationStatus.COMPROMISED
        assert check.issues == ["Hash chain integrity issue detected at sequence 3"]

    @pytest.mark.asyncio
    async def test_missing_head_of_trail(self, reporter, two_days, store):
        """Should flag a trail whose earliest entries were removed."""
        del store._chains["org-1"][0]

        check = await reporter.check_retention_compliance("org-1")

        assert check.compliant is False
        assert check.issues[0] == "Entries before sequence 2 are missing from the trail"
