"""
SQL Audit Store
===============
SQLAlchemy-backed audit store for any async dialect.

Unique constraints on ``(org_id, sequence)`` and ``(org_id, previous_hash)``
turn the append into a storage-level conditional write: when two service
instances race for the same chain head, exactly one insert succeeds and the
other surfaces as ChainConflictError.
"""

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from casework_core.database import Base

from .exceptions import AuditStoreError, ChainConflictError
from .models import (
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    AuditStats,
    SortOrder,
    encode_cursor,
)
from .store import AuditStore, TOP_USERS_LIMIT, check_extends_head

logger = structlog.get_logger(__name__)


class AuditLogRow(Base):
    """Persistent form of an AuditLogEntry. Rows are never updated."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        UniqueConstraint("org_id", "sequence", name="uq_audit_logs_org_sequence"),
        UniqueConstraint("org_id", "previous_hash", name="uq_audit_logs_org_previous_hash"),
        Index("ix_audit_logs_org_timestamp", "org_id", "timestamp"),
        Index("ix_audit_logs_org_user", "org_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    resource: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resource_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogRow":
        return cls(
            id=entry.id,
            org_id=entry.org_id,
            sequence=entry.sequence,
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            resource_name=entry.resource_name,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp,
            previous_hash=entry.previous_hash,
            hash=entry.hash,
        )

    def to_entry(self) -> AuditLogEntry:
        timestamp = self.timestamp
        # Some dialects (SQLite) drop tzinfo; stored values are always UTC
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return AuditLogEntry(
            id=self.id,
            org_id=self.org_id,
            sequence=self.sequence,
            user_id=self.user_id,
            action=self.action,
            resource=self.resource,
            resource_id=self.resource_id,
            resource_name=self.resource_name,
            details=dict(self.details or {}),
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            timestamp=timestamp,
            previous_hash=self.previous_hash,
            hash=self.hash,
        )


def _filters(query: AuditQuery) -> list:
    clauses = [AuditLogRow.org_id == query.org_id]
    if query.user_id is not None:
        clauses.append(AuditLogRow.user_id == query.user_id)
    if query.action is not None:
        clauses.append(AuditLogRow.action == query.action)
    if query.resource is not None:
        clauses.append(AuditLogRow.resource == query.resource)
    if query.resource_id is not None:
        clauses.append(AuditLogRow.resource_id == query.resource_id)
    if query.start is not None:
        clauses.append(AuditLogRow.timestamp >= query.start)
    if query.end is not None:
        clauses.append(AuditLogRow.timestamp <= query.end)
    return clauses


class SQLAlchemyAuditStore(AuditStore):
    """Audit store on an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def latest(self, org_id: str) -> Optional[AuditLogEntry]:
        try:
            async with self.session_factory() as session:
                return await self._head(session, org_id)
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to read chain head for org {org_id}: {e}") from e

    async def _head(self, session: AsyncSession, org_id: str) -> Optional[AuditLogEntry]:
        result = await session.execute(
            select(AuditLogRow)
            .where(AuditLogRow.org_id == org_id)
            .order_by(AuditLogRow.sequence.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return row.to_entry() if row else None

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    check_extends_head(entry, await self._head(session, entry.org_id))
                    session.add(AuditLogRow.from_entry(entry))
        except IntegrityError as e:
            logger.warning(
                "Audit append lost chain head race",
                org_id=entry.org_id,
                sequence=entry.sequence,
            )
            raise ChainConflictError(entry.org_id, entry.previous_hash) from e
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to append audit entry {entry.id}: {e}") from e
        return entry

    async def get(self, org_id: str, entry_id: str) -> Optional[AuditLogEntry]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AuditLogRow).where(
                        AuditLogRow.org_id == org_id, AuditLogRow.id == entry_id
                    )
                )
                row = result.scalar_one_or_none()
                return row.to_entry() if row else None
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to read audit entry {entry_id}: {e}") from e

    async def iter_chain(
        self,
        org_id: str,
        after_sequence: int = 0,
        chunk_size: int = 500,
    ) -> AsyncIterator[List[AuditLogEntry]]:
        # One short session per chunk; no transaction spans the whole walk
        position = after_sequence
        while True:
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(AuditLogRow)
                        .where(
                            AuditLogRow.org_id == org_id,
                            AuditLogRow.sequence > position,
                        )
                        .order_by(AuditLogRow.sequence.asc())
                        .limit(chunk_size)
                    )
                    chunk = [row.to_entry() for row in result.scalars()]
            except SQLAlchemyError as e:
                raise AuditStoreError(f"Failed to read chain for org {org_id}: {e}") from e
            if not chunk:
                return
            yield chunk
            position = chunk[-1].sequence

    async def query(self, query: AuditQuery) -> AuditPage:
        clauses = _filters(query)
        after = query.cursor_sequence
        newest_first = query.order == SortOrder.NEWEST_FIRST
        if after is not None:
            clauses.append(
                AuditLogRow.sequence < after if newest_first else AuditLogRow.sequence > after
            )
        ordering = AuditLogRow.sequence.desc() if newest_first else AuditLogRow.sequence.asc()

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AuditLogRow)
                    .where(*clauses)
                    .order_by(ordering)
                    .limit(query.limit + 1)
                )
                rows = list(result.scalars())
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to query audit log: {e}") from e

        has_more = len(rows) > query.limit
        entries = [row.to_entry() for row in rows[:query.limit]]
        next_cursor = encode_cursor(entries[-1].sequence) if has_more else None
        return AuditPage(entries=entries, next_cursor=next_cursor)

    async def count(self, query: AuditQuery) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.count()).select_from(AuditLogRow).where(*_filters(query))
                )
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to count audit log: {e}") from e

    async def stats(
        self,
        org_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AuditStats:
        clauses = _filters(AuditQuery(org_id=org_id, start=start, end=end))
        try:
            async with self.session_factory() as session:
                total = await session.execute(
                    select(func.count()).select_from(AuditLogRow).where(*clauses)
                )
                actions = await session.execute(
                    select(AuditLogRow.action, func.count())
                    .where(*clauses)
                    .group_by(AuditLogRow.action)
                )
                resources = await session.execute(
                    select(AuditLogRow.resource, func.count())
                    .where(*clauses)
                    .group_by(AuditLogRow.resource)
                )
                user_count = func.count().label("n")
                users = await session.execute(
                    select(AuditLogRow.user_id, user_count)
                    .where(*clauses, AuditLogRow.user_id.is_not(None))
                    .group_by(AuditLogRow.user_id)
                    .order_by(user_count.desc())
                    .limit(TOP_USERS_LIMIT)
                )
                return AuditStats(
                    total_entries=int(total.scalar_one()),
                    by_action={action: n for action, n in actions.all()},
                    by_resource={resource: n for resource, n in resources.all()},
                    top_users=[(user_id, n) for user_id, n in users.all()],
                )
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to compute audit stats: {e}") from e
