"""
Access-Risk Module
==================
Threshold and anomaly scoring of sensitive access, login lockout and
security alert hand-off.
"""

from .exceptions import (
    SecurityError,
    InvalidSecurityConfigError,
    EvaluationError,
    PatternStoreError,
    LockoutStoreError,
    LockoutStateUnavailableError,
    ActionBlockedError,
)
from .models import (
    AccessEvent,
    AnomalyIndicator,
    AnomalyType,
    BlockDecision,
    EventKind,
    FailedLoginRecord,
    LockoutState,
    LockoutStatus,
    RiskLevel,
    SecurityRiskResult,
    Severity,
    ThresholdType,
    ThresholdViolation,
    UserAccessPattern,
)
from .config import (
    AnomalySettings,
    BusinessHours,
    LockoutPolicy,
    OrgSecurityConfig,
    RiskBands,
    RiskWeights,
    ThresholdRule,
    DEFAULT_SECURITY_CONFIG,
)
from .geo import (
    CountryResolver,
    NullCountryResolver,
    StaticCountryResolver,
    is_private_ip,
    mask_ip,
)
from .patterns import (
    AccessPatternTracker,
    InMemoryAccessPatternTracker,
    RedisAccessPatternTracker,
)
from .alerts import (
    AlertDispatcher,
    AlertGate,
    EventIdCache,
    LoggingAlertDispatcher,
    RecordingAlertDispatcher,
    RedisEventIdCache,
    SecurityAlert,
    build_security_alert,
)
from .risk_engine import RiskEngine, compute_risk_score
from .lockout import (
    InMemoryLockoutStore,
    LockoutStore,
    LoginLockoutTracker,
    RedisLockoutStore,
)

__all__ = [
    # Exceptions
    "SecurityError",
    "InvalidSecurityConfigError",
    "EvaluationError",
    "PatternStoreError",
    "LockoutStoreError",
    "LockoutStateUnavailableError",
    "ActionBlockedError",
    # Models
    "AccessEvent",
    "AnomalyIndicator",
    "AnomalyType",
    "BlockDecision",
    "EventKind",
    "FailedLoginRecord",
    "LockoutState",
    "LockoutStatus",
    "RiskLevel",
    "SecurityRiskResult",
    "Severity",
    "ThresholdType",
    "ThresholdViolation",
    "UserAccessPattern",
    # Config
    "AnomalySettings",
    "BusinessHours",
    "LockoutPolicy",
    "OrgSecurityConfig",
    "RiskBands",
    "RiskWeights",
    "ThresholdRule",
    "DEFAULT_SECURITY_CONFIG",
    # Geo
    "CountryResolver",
    "NullCountryResolver",
    "StaticCountryResolver",
    "is_private_ip",
    "mask_ip",
    # Tracking
    "AccessPatternTracker",
    "InMemoryAccessPatternTracker",
    "RedisAccessPatternTracker",
    # Alerts
    "AlertDispatcher",
    "AlertGate",
    "EventIdCache",
    "LoggingAlertDispatcher",
    "RecordingAlertDispatcher",
    "RedisEventIdCache",
    "SecurityAlert",
    "build_security_alert",
    # Engine
    "RiskEngine",
    "compute_risk_score",
    # Lockout
    "InMemoryLockoutStore",
    "LockoutStore",
    "LoginLockoutTracker",
    "RedisLockoutStore",
]
