"""
Audit Exceptions
================
Errors raised by the audit chain, its stores and its logger.
"""

from casework_core.exceptions import CaseworkCoreError


class AuditError(CaseworkCoreError):
    """Base class for audit errors."""
    pass


class InvalidAuditEntryError(AuditError):
    """Entry input rejected before hashing (bad action, details, size)."""
    pass


class AuditStoreError(AuditError):
    """Storage failure while reading or appending. Retryable."""
    pass


class ChainConflictError(AuditStoreError):
    """Conditional append lost the race for the chain head. Retryable."""

    def __init__(self, org_id: str, expected_previous_hash: str, message: str = ""):
        super().__init__(
            message or f"Chain head for org {org_id} moved before append"
        )
        self.org_id = org_id
        self.expected_previous_hash = expected_previous_hash


class AuditWriteError(AuditError):
    """Raised by AuditLogger only when raise_on_failure is enabled."""
    pass


class EntryNotFoundError(AuditError):
    """No entry with the given id exists in the organization's chain."""
    pass
