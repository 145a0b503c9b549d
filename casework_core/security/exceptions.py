"""
Security Exceptions
===================
Errors raised by the risk engine, pattern tracker and lockout tracker.
"""

from typing import Optional

from casework_core.exceptions import CaseworkCoreError


class SecurityError(CaseworkCoreError):
    """Base class for security engine errors."""
    pass


class InvalidSecurityConfigError(SecurityError):
    """Organization security settings failed validation."""
    pass


class EvaluationError(SecurityError):
    """Risk evaluation could not reach a result."""
    pass


class PatternStoreError(SecurityError):
    """The access pattern counter store failed."""
    pass


class EventIdStoreError(SecurityError):
    """The shared event id cache failed."""
    pass


class LockoutStoreError(SecurityError):
    """The lockout state store failed."""
    pass


class LockoutStateUnavailableError(SecurityError):
    """Lockout state unreadable and no last known state to fall back on."""

    def __init__(self, user_id: str, message: Optional[str] = None):
        super().__init__(message or f"Lockout state unavailable for user {user_id}")
        self.user_id = user_id


class ActionBlockedError(SecurityError):
    """A sensitive operation was blocked by the risk pre-check."""

    def __init__(self, reason: str, risk_score: int = 0):
        super().__init__(reason)
        self.reason = reason
        self.risk_score = risk_score
