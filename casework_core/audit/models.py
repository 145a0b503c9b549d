"""
Audit Models
=============
Data models for audit log entries, queries and verification results.
"""

import base64
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, asdict, field
from enum import Enum

from .exceptions import InvalidAuditEntryError

DISPLAY_HASH_LENGTH = 16
MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def display_hash(value: Optional[str], length: int = DISPLAY_HASH_LENGTH) -> Optional[str]:
    """Shorten a hash for human spot-checking."""
    if value is None or len(value) <= length:
        return value
    return value[:length] + "..."


@dataclass(frozen=True)
class AuditLogEntry:
    """An audit log entry linked into its organization's hash chain."""
    id: str
    org_id: str
    sequence: int
    user_id: Optional[str]
    action: str
    resource: str
    resource_id: Optional[str]
    resource_name: Optional[str]
    details: Dict[str, Any]
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: datetime
    previous_hash: str
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        """Full internal form, including complete hashes."""
        d = asdict(self)
        d['timestamp'] = self.timestamp.isoformat()
        return d

    def to_display(self, include_details: bool = False) -> Dict[str, Any]:
        """
        Externally exposed form.

        Hashes are truncated; details are only included for viewers
        authorized to see them.
        """
        d = self.to_dict()
        d['hash'] = display_hash(self.hash)
        d['previous_hash'] = display_hash(self.previous_hash)
        if not include_details:
            d.pop('details')
        return d


@dataclass
class AuditLogInput:
    """Caller-supplied fields of an entry; the logger assigns the rest."""
    org_id: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_name: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SortOrder(str, Enum):
    NEWEST_FIRST = "newest_first"
    OLDEST_FIRST = "oldest_first"


def encode_cursor(sequence: int) -> str:
    return base64.urlsafe_b64encode(f"seq:{sequence}".encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> int:
    """Decode an opaque page cursor back to a chain sequence number."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        prefix, _, value = raw.partition(":")
        if prefix != "seq":
            raise ValueError(raw)
        return int(value)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidAuditEntryError(f"Invalid page cursor: {cursor!r}") from e


@dataclass
class AuditQuery:
    """Filters and paging for listing an organization's entries."""
    org_id: str
    user_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = DEFAULT_PAGE_SIZE
    cursor: Optional[str] = None
    order: SortOrder = SortOrder.NEWEST_FIRST

    def __post_init__(self):
        if isinstance(self.action, Enum):
            self.action = self.action.value
        if isinstance(self.resource, Enum):
            self.resource = self.resource.value
        self.start = as_utc(self.start)
        self.end = as_utc(self.end)
        self.limit = max(1, min(self.limit, MAX_PAGE_SIZE))

    @property
    def cursor_sequence(self) -> Optional[int]:
        return decode_cursor(self.cursor) if self.cursor else None

    def matches(self, entry: AuditLogEntry) -> bool:
        """Filter predicate, excluding the cursor."""
        if entry.org_id != self.org_id:
            return False
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.action is not None and entry.action != self.action:
            return False
        if self.resource is not None and entry.resource != self.resource:
            return False
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        return True


@dataclass
class AuditPage:
    """One page of entries plus the cursor for the next page."""
    entries: List[AuditLogEntry]
    next_cursor: Optional[str] = None


@dataclass
class AuditStats:
    """Aggregate counts for an organization's audit activity."""
    total_entries: int
    by_action: Dict[str, int] = field(default_factory=dict)
    by_resource: Dict[str, int] = field(default_factory=dict)
    top_users: List[Tuple[str, int]] = field(default_factory=list)


class VerificationStatus(str, Enum):
    VALID = "valid"
    COMPROMISED = "compromised"
    UNABLE_TO_VERIFY = "unable_to_verify"


@dataclass(frozen=True)
class ChainBreak:
    entry_id: str
    sequence: int
    reason: str  # "hash_mismatch" or "linkage_mismatch"


@dataclass(frozen=True)
class VerificationCheckpoint:
    """Resume point: the last entry verified so far."""
    sequence: int
    hash: str


@dataclass
class ChainVerification:
    """Outcome of walking an organization's chain."""
    org_id: str
    status: VerificationStatus
    entries_checked: int = 0
    breaks: List[ChainBreak] = field(default_factory=list)
    checkpoint: Optional[VerificationCheckpoint] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == VerificationStatus.VALID

    @property
    def broken_at_entry_id(self) -> Optional[str]:
        return self.breaks[0].entry_id if self.breaks else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "status": self.status.value,
            "valid": self.valid,
            "broken_at_entry_id": self.broken_at_entry_id,
            "entries_checked": self.entries_checked,
            "breaks": [asdict(b) for b in self.breaks],
            "error": self.error,
        }
