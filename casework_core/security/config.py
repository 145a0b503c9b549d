"""
Organization Security Configuration
===================================
Per-organization thresholds, business hours, risk bands, weights and lockout
policy, parsed from organization settings.

A config object is immutable; the risk engine reads one per evaluation, so a
settings change takes effect on the next event.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import InvalidSecurityConfigError
from .models import AnomalyType, EventKind, RiskLevel, Severity, ThresholdType

# Counter family each threshold reads
THRESHOLD_EVENT_KINDS: Dict[ThresholdType, EventKind] = {
    ThresholdType.EXCESSIVE_EXPORTS: EventKind.EXPORT,
    ThresholdType.EXCESSIVE_CLIENT_VIEWS: EventKind.CLIENT_VIEW,
    ThresholdType.EXCESSIVE_FAILED_LOGINS: EventKind.FAILED_LOGIN,
    ThresholdType.BULK_DOWNLOAD: EventKind.DOWNLOAD,
}

# (severity over the limit, severity at twice the limit)
THRESHOLD_SEVERITIES: Dict[ThresholdType, Tuple[Severity, Severity]] = {
    ThresholdType.EXCESSIVE_EXPORTS: (Severity.HIGH, Severity.CRITICAL),
    ThresholdType.EXCESSIVE_CLIENT_VIEWS: (Severity.MEDIUM, Severity.HIGH),
    ThresholdType.EXCESSIVE_FAILED_LOGINS: (Severity.HIGH, Severity.CRITICAL),
    ThresholdType.BULK_DOWNLOAD: (Severity.HIGH, Severity.CRITICAL),
}


@dataclass(frozen=True)
class ThresholdRule:
    """A count limit over a sliding window for one event kind."""
    threshold_type: ThresholdType
    limit: int
    window_seconds: int
    block_on_violation: bool = False
    fail_closed: bool = False

    def __post_init__(self):
        if self.limit < 1:
            raise InvalidSecurityConfigError(
                f"{self.threshold_type.value}: limit must be positive"
            )
        if self.window_seconds < 1:
            raise InvalidSecurityConfigError(
                f"{self.threshold_type.value}: window_seconds must be positive"
            )

    @property
    def event_kind(self) -> EventKind:
        return THRESHOLD_EVENT_KINDS[self.threshold_type]

    def severity_for(self, count: int) -> Severity:
        base, escalated = THRESHOLD_SEVERITIES[self.threshold_type]
        return escalated if count >= 2 * self.limit else base

    def describe_window(self) -> str:
        seconds = self.window_seconds
        if seconds % 3600 == 0:
            hours = seconds // 3600
            return "hour" if hours == 1 else f"{hours} hours"
        if seconds % 60 == 0:
            return f"{seconds // 60} minutes"
        return f"{seconds} seconds"


def _resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidSecurityConfigError(f"Unknown time zone: {name!r}") from e


@dataclass(frozen=True)
class BusinessHours:
    """
    Working hours in the organization's time zone.

    ``start_hour``/``end_hour`` are whole hours; an end before the start wraps
    past midnight. ``days`` uses Monday=0.
    """
    start_hour: int = 6
    end_hour: int = 22
    timezone_name: str = "UTC"
    days: FrozenSet[int] = frozenset(range(7))

    def __post_init__(self):
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 24:
                raise InvalidSecurityConfigError(f"Invalid business hour: {hour}")
        if not self.days or not all(0 <= d <= 6 for d in self.days):
            raise InvalidSecurityConfigError("Business days must be within 0-6")
        _resolve_timezone(self.timezone_name)

    @property
    def tz(self) -> tzinfo:
        return _resolve_timezone(self.timezone_name)

    def local_time(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz)

    def contains(self, moment: datetime) -> bool:
        """True when ``moment`` falls inside business hours."""
        local = self.local_time(moment)
        if local.weekday() not in self.days:
            return False
        hour = local.hour
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour


@dataclass(frozen=True)
class RiskBands:
    """Lower score bounds of each risk level above LOW."""
    medium: int = 30
    high: int = 60
    critical: int = 85

    def __post_init__(self):
        if not 0 < self.medium < self.high < self.critical <= 100:
            raise InvalidSecurityConfigError(
                "Risk bands must satisfy 0 < medium < high < critical <= 100"
            )

    def level_for(self, score: int) -> RiskLevel:
        if score >= self.critical:
            return RiskLevel.CRITICAL
        if score >= self.high:
            return RiskLevel.HIGH
        if score >= self.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


DEFAULT_THRESHOLD_WEIGHTS: Dict[ThresholdType, int] = {
    ThresholdType.EXCESSIVE_EXPORTS: 25,
    ThresholdType.EXCESSIVE_CLIENT_VIEWS: 20,
    ThresholdType.EXCESSIVE_FAILED_LOGINS: 30,
    ThresholdType.BULK_DOWNLOAD: 25,
}

DEFAULT_ANOMALY_WEIGHTS: Dict[AnomalyType, int] = {
    AnomalyType.OFF_HOURS_ACCESS: 15,
    AnomalyType.GEOGRAPHIC_ANOMALY: 25,
    AnomalyType.UNUSUAL_ACCESS_PATTERN: 20,
    AnomalyType.RAPID_FIRE_REQUESTS: 30,
}


@dataclass(frozen=True)
class RiskWeights:
    thresholds: Mapping[ThresholdType, int] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLD_WEIGHTS)
    )
    anomalies: Mapping[AnomalyType, int] = field(
        default_factory=lambda: dict(DEFAULT_ANOMALY_WEIGHTS)
    )

    def for_threshold(self, threshold_type: ThresholdType) -> int:
        return self.thresholds.get(threshold_type, 0)

    def for_anomaly(self, anomaly_type: AnomalyType) -> int:
        return self.anomalies.get(anomaly_type, 0)


@dataclass(frozen=True)
class AnomalySettings:
    """Knobs of the behavioral heuristics."""
    enabled: FrozenSet[AnomalyType] = frozenset(AnomalyType)
    baseline_days: int = 30
    off_hours_suppress_after: int = 10    # Regular night workers are not flagged
    unusual_export_ratio: float = 3.0
    unusual_export_high_ratio: float = 5.0
    unusual_view_ratio: float = 5.0
    unusual_view_high_ratio: float = 10.0
    rapid_fire_per_second: int = 10
    rapid_fire_critical_per_second: int = 50

    def __post_init__(self):
        if self.baseline_days < 1:
            raise InvalidSecurityConfigError("baseline_days must be positive")
        if self.rapid_fire_per_second < 1:
            raise InvalidSecurityConfigError("rapid_fire_per_second must be positive")

    def is_enabled(self, anomaly_type: AnomalyType) -> bool:
        return anomaly_type in self.enabled


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    window_seconds: int = 15 * 60
    lockout_seconds: int = 30 * 60

    def __post_init__(self):
        if self.max_attempts < 1 or self.window_seconds < 1 or self.lockout_seconds < 1:
            raise InvalidSecurityConfigError("Lockout policy values must be positive")

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(seconds=self.lockout_seconds)


DEFAULT_THRESHOLDS: Tuple[ThresholdRule, ...] = (
    ThresholdRule(ThresholdType.EXCESSIVE_EXPORTS, limit=10, window_seconds=3600),
    ThresholdRule(ThresholdType.EXCESSIVE_CLIENT_VIEWS, limit=100, window_seconds=3600),
    ThresholdRule(ThresholdType.EXCESSIVE_FAILED_LOGINS, limit=5, window_seconds=15 * 60),
    ThresholdRule(ThresholdType.BULK_DOWNLOAD, limit=20, window_seconds=5 * 60),
)


@dataclass(frozen=True)
class OrgSecurityConfig:
    """Security settings of one organization."""
    thresholds: Tuple[ThresholdRule, ...] = DEFAULT_THRESHOLDS
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    risk_bands: RiskBands = field(default_factory=RiskBands)
    risk_weights: RiskWeights = field(default_factory=RiskWeights)
    anomaly: AnomalySettings = field(default_factory=AnomalySettings)
    lockout: LockoutPolicy = field(default_factory=LockoutPolicy)
    alert_recipients: Tuple[str, ...] = ()
    high_risk_countries: FrozenSet[str] = frozenset()

    def threshold(self, threshold_type: ThresholdType) -> Optional[ThresholdRule]:
        for rule in self.thresholds:
            if rule.threshold_type == threshold_type:
                return rule
        return None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "OrgSecurityConfig":
        """
        Parse organization settings, filling gaps with defaults.

        Expected shape (every key optional)::

            {
                "thresholds": {"EXCESSIVE_EXPORTS": {"limit": 10, "window_seconds": 3600,
                               "block_on_violation": false, "fail_closed": false,
                               "enabled": true}},
                "business_hours": {"start": 6, "end": 22, "timezone": "UTC",
                                   "days": [0, 1, 2, 3, 4, 5, 6]},
                "risk_bands": {"medium": 30, "high": 60, "critical": 85},
                "risk_weights": {"thresholds": {...}, "anomalies": {...}},
                "anomaly": {"enabled": [...], "off_hours_suppress_after": 10, ...},
                "lockout": {"max_attempts": 5, "window_minutes": 15, "lockout_minutes": 30},
                "alert_recipients": ["security@example.org"],
                "high_risk_countries": ["XX"],
            }

        Raises:
            InvalidSecurityConfigError: Unknown names or out-of-range values
        """
        if not data:
            return cls()
        try:
            return cls(
                thresholds=_parse_thresholds(data.get("thresholds") or {}),
                business_hours=_parse_business_hours(data.get("business_hours") or {}),
                risk_bands=RiskBands(**_pick(data.get("risk_bands") or {}, ("medium", "high", "critical"), int)),
                risk_weights=_parse_weights(data.get("risk_weights") or {}),
                anomaly=_parse_anomaly(data.get("anomaly") or {}),
                lockout=_parse_lockout(data.get("lockout") or {}),
                alert_recipients=tuple(str(r) for r in data.get("alert_recipients") or ()),
                high_risk_countries=frozenset(
                    str(c).upper() for c in data.get("high_risk_countries") or ()
                ),
            )
        except InvalidSecurityConfigError:
            raise
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise InvalidSecurityConfigError(f"Invalid security settings: {e}") from e


def _pick(data: Mapping[str, Any], keys, cast) -> Dict[str, Any]:
    return {key: cast(data[key]) for key in keys if key in data}


def _enum_key(enum_cls, name: str):
    try:
        return enum_cls(name)
    except ValueError as e:
        raise InvalidSecurityConfigError(f"Unknown {enum_cls.__name__}: {name!r}") from e


def _parse_thresholds(data: Mapping[str, Any]) -> Tuple[ThresholdRule, ...]:
    overrides = {_enum_key(ThresholdType, name): settings for name, settings in data.items()}
    rules = []
    for default in DEFAULT_THRESHOLDS:
        settings = overrides.get(default.threshold_type)
        if settings is None:
            rules.append(default)
            continue
        if not settings.get("enabled", True):
            continue
        rules.append(ThresholdRule(
            threshold_type=default.threshold_type,
            limit=int(settings.get("limit", default.limit)),
            window_seconds=int(settings.get("window_seconds", default.window_seconds)),
            block_on_violation=bool(settings.get("block_on_violation", False)),
            fail_closed=bool(settings.get("fail_closed", False)),
        ))
    return tuple(rules)


def _parse_business_hours(data: Mapping[str, Any]) -> BusinessHours:
    defaults = BusinessHours()
    start = data.get("start", defaults.start_hour)
    end = data.get("end", defaults.end_hour)
    # "HH:MM" strings are accepted, minutes are ignored
    if isinstance(start, str):
        start = time.fromisoformat(start).hour
    if isinstance(end, str):
        end = 24 if end == "24:00" else time.fromisoformat(end).hour
    return BusinessHours(
        start_hour=int(start),
        end_hour=int(end),
        timezone_name=str(data.get("timezone", defaults.timezone_name)),
        days=frozenset(int(d) for d in data.get("days", defaults.days)),
    )


def _parse_weights(data: Mapping[str, Any]) -> RiskWeights:
    thresholds = dict(DEFAULT_THRESHOLD_WEIGHTS)
    for name, weight in (data.get("thresholds") or {}).items():
        thresholds[_enum_key(ThresholdType, name)] = int(weight)
    anomalies = dict(DEFAULT_ANOMALY_WEIGHTS)
    for name, weight in (data.get("anomalies") or {}).items():
        anomalies[_enum_key(AnomalyType, name)] = int(weight)
    if any(w < 0 for w in list(thresholds.values()) + list(anomalies.values())):
        raise InvalidSecurityConfigError("Risk weights must not be negative")
    return RiskWeights(thresholds=thresholds, anomalies=anomalies)


def _parse_anomaly(data: Mapping[str, Any]) -> AnomalySettings:
    kwargs: Dict[str, Any] = {}
    if "enabled" in data:
        kwargs["enabled"] = frozenset(_enum_key(AnomalyType, n) for n in data["enabled"])
    kwargs.update(_pick(data, (
        "baseline_days", "off_hours_suppress_after",
        "rapid_fire_per_second", "rapid_fire_critical_per_second",
    ), int))
    kwargs.update(_pick(data, (
        "unusual_export_ratio", "unusual_export_high_ratio",
        "unusual_view_ratio", "unusual_view_high_ratio",
    ), float))
    return AnomalySettings(**kwargs)


def _parse_lockout(data: Mapping[str, Any]) -> LockoutPolicy:
    defaults = LockoutPolicy()
    window = data.get("window_minutes")
    duration = data.get("lockout_minutes")
    return LockoutPolicy(
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        window_seconds=int(window * 60) if window is not None else defaults.window_seconds,
        lockout_seconds=int(duration * 60) if duration is not None else defaults.lockout_seconds,
    )


DEFAULT_SECURITY_CONFIG = OrgSecurityConfig()
