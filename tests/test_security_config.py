"""
Unit Tests for Organization Security Configuration
==================================================
"""

from datetime import datetime, timezone

import pytest

from casework_core.security import OrgSecurityConfig, RiskLevel
from casework_core.security.config import BusinessHours, RiskBands, ThresholdRule
from casework_core.security.exceptions import InvalidSecurityConfigError
from casework_core.security.models import AnomalyType, Severity, ThresholdType


class TestDefaults:
    """Tests for the built-in configuration."""

    def test_default_thresholds(self):
        """Should ship the documented default limits."""
        config = OrgSecurityConfig()
        exports = config.threshold(ThresholdType.EXCESSIVE_EXPORTS)
        logins = config.threshold(ThresholdType.EXCESSIVE_FAILED_LOGINS)

        assert (exports.limit, exports.window_seconds) == (10, 3600)
        assert (logins.limit, logins.window_seconds) == (5, 900)
        assert config.lockout.max_attempts == 5

    def test_risk_bands(self):
        """Should map scores onto levels at the band edges."""
        bands = RiskBands()
        assert bands.level_for(29) == RiskLevel.LOW
        assert bands.level_for(30) == RiskLevel.MEDIUM
        assert bands.level_for(60) == RiskLevel.HIGH
        assert bands.level_for(85) == RiskLevel.CRITICAL

    def test_severity_escalates_at_twice_limit(self):
        """Should escalate severity once the count doubles the limit."""
        rule = ThresholdRule(ThresholdType.EXCESSIVE_CLIENT_VIEWS, limit=100, window_seconds=3600)
        assert rule.severity_for(101) == Severity.MEDIUM
        assert rule.severity_for(200) == Severity.HIGH

    def test_describe_window(self):
        """Should describe windows in human units."""
        assert ThresholdRule(ThresholdType.EXCESSIVE_EXPORTS, 10, 3600).describe_window() == "hour"
        assert ThresholdRule(ThresholdType.BULK_DOWNLOAD, 20, 300).describe_window() == "5 minutes"


class TestBusinessHours:
    """Tests for business-hours evaluation."""

    def test_inside_and_outside(self):
        """Should honor the configured hours in UTC."""
        hours = BusinessHours(start_hour=8, end_hour=18)
        assert hours.contains(datetime(2025, 3, 3, 9, tzinfo=timezone.utc))
        assert not hours.contains(datetime(2025, 3, 3, 18, tzinfo=timezone.utc))

    def test_time_zone_applied(self):
        """Should evaluate hours in the organization's time zone."""
        hours = BusinessHours(start_hour=8, end_hour=18, timezone_name="America/New_York")
        # 13:00 UTC is 08:00 in New York during daylight saving
        assert hours.contains(datetime(2025, 7, 1, 13, tzinfo=timezone.utc))
        assert not hours.contains(datetime(2025, 7, 1, 11, tzinfo=timezone.utc))

    def test_overnight_shift_wraps(self):
        """Should wrap past midnight when the end is before the start."""
        hours = BusinessHours(start_hour=20, end_hour=4)
        assert hours.contains(datetime(2025, 3, 3, 23, tzinfo=timezone.utc))
        assert hours.contains(datetime(2025, 3, 3, 2, tzinfo=timezone.utc))
        assert not hours.contains(datetime(2025, 3, 3, 12, tzinfo=timezone.utc))

    def test_weekdays_only(self):
        """Should treat excluded days as off hours."""
        hours = BusinessHours(days=frozenset(range(5)))
        saturday_noon = datetime(2025, 3, 8, 12, tzinfo=timezone.utc)
        assert not hours.contains(saturday_noon)

    def test_unknown_time_zone(self):
        """Should reject an unknown time zone."""
        with pytest.raises(InvalidSecurityConfigError):
            BusinessHours(timezone_name="Mars/Olympus_Mons")


class TestFromDict:
    """Tests for parsing organization settings."""

    def test_empty_settings_use_defaults(self):
        """Should return the defaults for missing settings."""
        assert OrgSecurityConfig.from_dict(None) == OrgSecurityConfig()

    def test_threshold_override(self):
        """Should override one rule and keep the others."""
        config = OrgSecurityConfig.from_dict({
            "thresholds": {"EXCESSIVE_EXPORTS": {"limit": 3, "block_on_violation": True}},
        })
        exports = config.threshold(ThresholdType.EXCESSIVE_EXPORTS)

        assert exports.limit == 3
        assert exports.window_seconds == 3600
        assert exports.block_on_violation is True
        assert config.threshold(ThresholdType.BULK_DOWNLOAD).limit == 20

    def test_disable_threshold(self):
        """Should drop a rule marked disabled."""
        config = OrgSecurityConfig.from_dict({"thresholds": {"BULK_DOWNLOAD": {"enabled": False}}})
        assert config.threshold(ThresholdType.BULK_DOWNLOAD) is None

    def test_full_settings(self):
        """Should parse every section."""
        config = OrgSecurityConfig.from_dict({
            "business_hours": {"start": "07:30", "end": "19:00", "timezone": "UTC", "days": [0, 1, 2, 3, 4]},
            "risk_bands": {"medium": 20, "high": 50, "critical": 80},
            "risk_weights": {"anomalies": {"GEOGRAPHIC_ANOMALY": 40}},
            "anomaly": {"enabled": ["RAPID_FIRE_REQUESTS"], "rapid_fire_per_second": 5},
            "lockout": {"max_attempts": 3, "window_minutes": 10, "lockout_minutes": 60},
            "alert_recipients": ["security@example.org"],
            "high_risk_countries": ["kp"],
        })

        assert config.business_hours.start_hour == 7
        assert config.business_hours.days == frozenset(range(5))
        assert config.risk_bands.critical == 80
        assert config.risk_weights.for_anomaly(AnomalyType.GEOGRAPHIC_ANOMALY) == 40
        assert config.risk_weights.for_anomaly(AnomalyType.OFF_HOURS_ACCESS) == 15
        assert config.anomaly.is_enabled(AnomalyType.RAPID_FIRE_REQUESTS)
        assert not config.anomaly.is_enabled(AnomalyType.OFF_HOURS_ACCESS)
        assert config.lockout.lockout_seconds == 3600
        assert config.alert_recipients == ("security@example.org",)
        assert config.high_risk_countries == frozenset({"KP"})

    @pytest.mark.parametrize("settings", [
        {"thresholds": {"UNKNOWN_RULE": {"limit": 1}}},
        {"thresholds": {"EXCESSIVE_EXPORTS": {"limit": 0}}},
        {"risk_bands": {"medium": 70, "high": 60}},
        {"business_hours": {"start": "late"}},
        {"lockout": {"max_attempts": "many"}},
        {"risk_weights": {"thresholds": {"BULK_DOWNLOAD": -5}}},
    ])
    def test_invalid_settings(self, settings):
        """Should reject malformed settings with one error type."""
        with pytest.raises(InvalidSecurityConfigError):
            OrgSecurityConfig.from_dict(settings)
