"""
Audit Store
===========
Append-only persistence interface for audit entries plus an in-memory
implementation for development and tests.

Every store offers a conditional append: an entry is written only if its
``previous_hash`` still names the current head of its organization's chain.
"""

import copy
import dataclasses
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

import structlog

from .exceptions import ChainConflictError, EntryNotFoundError
from .hashing import GENESIS_HASH
from .models import (
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    AuditStats,
    SortOrder,
    encode_cursor,
)

logger = structlog.get_logger(__name__)

TOP_USERS_LIMIT = 10


class AuditStore(ABC):
    """Append-only audit entry persistence, scoped per organization."""

    @abstractmethod
    async def latest(self, org_id: str) -> Optional[AuditLogEntry]:
        """Head of the organization's chain, or None for an empty chain."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """
        Append ``entry`` if it extends the current head.

        Raises:
            ChainConflictError: Another entry already extends the head
            AuditStoreError: Storage failure
        """

    @abstractmethod
    async def get(self, org_id: str, entry_id: str) -> Optional[AuditLogEntry]:
        """Fetch one entry of an organization."""

    async def require(self, org_id: str, entry_id: str) -> AuditLogEntry:
        """
        Fetch one entry of an organization or fail.

        Raises:
            EntryNotFoundError: No such entry in the organization's chain
        """
        entry = await self.get(org_id, entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Audit entry {entry_id} not found for org {org_id}")
        return entry

    @abstractmethod
    def iter_chain(
        self,
        org_id: str,
        after_sequence: int = 0,
        chunk_size: int = 500,
    ) -> AsyncIterator[List[AuditLogEntry]]:
        """Yield the chain oldest-first in chunks of at most ``chunk_size``."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> AuditPage:
        """List entries matching ``query``, one page at a time."""

    @abstractmethod
    async def count(self, query: AuditQuery) -> int:
        """Number of entries matching ``query`` filters (cursor ignored)."""

    @abstractmethod
    async def stats(
        self,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditStats:
        """Aggregate counts by action, resource and user."""


def check_extends_head(entry: AuditLogEntry, head: Optional[AuditLogEntry]) -> None:
    """Raise ChainConflictError unless ``entry`` is the next link after ``head``."""
    expected_hash = head.hash if head else GENESIS_HASH
    expected_sequence = head.sequence + 1 if head else 1
    if entry.previous_hash != expected_hash or entry.sequence != expected_sequence:
        raise ChainConflictError(entry.org_id, entry.previous_hash)


def paginate(entries: List[AuditLogEntry], query: AuditQuery) -> AuditPage:
    """
    Apply filters, cursor and limit to an oldest-first list of entries.

    The cursor is the sequence of the last entry on the previous page.
    """
    after = query.cursor_sequence
    newest_first = query.order == SortOrder.NEWEST_FIRST
    ordered = reversed(entries) if newest_first else iter(entries)

    page: List[AuditLogEntry] = []
    has_more = False
    for entry in ordered:
        if after is not None:
            if newest_first and entry.sequence >= after:
                continue
            if not newest_first and entry.sequence <= after:
                continue
        if not query.matches(entry):
            continue
        if len(page) == query.limit:
            has_more = True
            break
        page.append(entry)

    next_cursor = encode_cursor(page[-1].sequence) if page and has_more else None
    return AuditPage(entries=page, next_cursor=next_cursor)


def build_stats(entries: List[AuditLogEntry]) -> AuditStats:
    by_action = Counter(e.action for e in entries)
    by_resource = Counter(e.resource for e in entries)
    by_user = Counter(e.user_id for e in entries if e.user_id is not None)
    return AuditStats(
        total_entries=len(entries),
        by_action=dict(by_action),
        by_resource=dict(by_resource),
        top_users=by_user.most_common(TOP_USERS_LIMIT),
    )


def _detached(entry: AuditLogEntry) -> AuditLogEntry:
    return dataclasses.replace(entry, details=copy.deepcopy(entry.details))


class InMemoryAuditStore(AuditStore):
    """
    In-memory audit store.

    For development and testing only. Chains live in one list per
    organization; appends are serialized by a lock, reads work on snapshots.
    Entries are copied in and out so callers cannot alter stored details.
    """

    def __init__(self):
        self._chains: Dict[str, List[AuditLogEntry]] = {}
        self._lock = threading.Lock()

    def _snapshot(self, org_id: str) -> List[AuditLogEntry]:
        return list(self._chains.get(org_id, ()))

    async def latest(self, org_id: str) -> Optional[AuditLogEntry]:
        chain = self._chains.get(org_id)
        return _detached(chain[-1]) if chain else None

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            chain = self._chains.setdefault(entry.org_id, [])
            check_extends_head(entry, chain[-1] if chain else None)
            chain.append(_detached(entry))
        return entry

    async def get(self, org_id: str, entry_id: str) -> Optional[AuditLogEntry]:
        for entry in self._snapshot(org_id):
            if entry.id == entry_id:
                return _detached(entry)
        return None

    async def iter_chain(
        self,
        org_id: str,
        after_sequence: int = 0,
        chunk_size: int = 500,
    ) -> AsyncIterator[List[AuditLogEntry]]:
        # Sequences are 1-based and contiguous, so list index == sequence - 1
        position = after_sequence
        while True:
            chunk = self._chains.get(org_id, [])[position:position + chunk_size]
            if not chunk:
                return
            yield [_detached(e) for e in chunk]
            position += len(chunk)

    async def query(self, query: AuditQuery) -> AuditPage:
        page = paginate(self._snapshot(query.org_id), query)
        page.entries = [_detached(e) for e in page.entries]
        return page

    async def count(self, query: AuditQuery) -> int:
        return sum(1 for e in self._snapshot(query.org_id) if query.matches(e))

    async def stats(
        self,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditStats:
        window = AuditQuery(org_id=org_id, start=start, end=end)
        return build_stats([e for e in self._snapshot(org_id) if window.matches(e)])
