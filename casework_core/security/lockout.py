"""
Login Lockout
=============
Per-user lockout after repeated failed logins.

State machine::

    OPEN --(max_attempts failures within the window)--> LOCKED
    LOCKED --(lockout duration elapsed | admin unlock)--> OPEN

Failures while locked do not extend the lock. A failure after an expired
lock or outside the window starts a new count at 1.

The last known state is kept per user only for window + lockout duration,
the same TTL the store applies.

Lockout state never fails open: if the store is unreadable, the last known
state is served (flagged ``degraded``); with no known state the check raises
LockoutStateUnavailableError rather than reporting the account unlocked.
"""

import json
import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from redis.exceptions import RedisError, WatchError

from casework_core import metrics
from casework_core.audit.actions import AuditResource
from casework_core.operational import (
    IncidentKind,
    IncidentSeverity,
    LoggingOperationalChannel,
    OperationalAlertChannel,
    OperationalIncident,
)

from .config import LockoutPolicy
from .exceptions import LockoutStateUnavailableError, LockoutStoreError
from .models import EventKind, FailedLoginRecord, LockoutState, LockoutStatus

logger = structlog.get_logger(__name__)

Mutation = Callable[[Optional[FailedLoginRecord]], Optional[FailedLoginRecord]]

_UNKNOWN = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockoutStore(ABC):
    """Persistence for failed-login records."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[FailedLoginRecord]:
        ...

    @abstractmethod
    async def update(
        self, user_id: str, mutate: Mutation, ttl_seconds: int
    ) -> Optional[FailedLoginRecord]:
        """Atomically replace a record with ``mutate(current)``; None deletes it."""

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def list_records(self, org_id: str) -> List[FailedLoginRecord]:
        ...


class InMemoryLockoutStore(LockoutStore):
    """Single-process store for development and testing."""

    def __init__(self):
        self._records: Dict[str, FailedLoginRecord] = {}
        self._lock = threading.Lock()

    async def get(self, user_id):
        with self._lock:
            return self._records.get(user_id)

    async def update(self, user_id, mutate, ttl_seconds):
        with self._lock:
            record = mutate(self._records.get(user_id))
            if record is None:
                self._records.pop(user_id, None)
            else:
                self._records[user_id] = record
            return record

    async def delete(self, user_id):
        with self._lock:
            self._records.pop(user_id, None)

    async def list_records(self, org_id):
        with self._lock:
            return [r for r in self._records.values() if r.org_id == org_id]


class RedisLockoutStore(LockoutStore):
    """
    Redis-backed store shared across instances.

    One JSON document per user with a TTL; read-modify-write runs in an
    optimistic WATCH/MULTI transaction, retried when another writer wins.
    """

    def __init__(self, redis_client, prefix: str = "casework:lockout", max_retries: int = 10):
        self.redis = redis_client
        self.prefix = prefix
        self.max_retries = max_retries

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    def _org_key(self, org_id: str) -> str:
        return f"{self.prefix}:org:{org_id}"

    @staticmethod
    def _decode(raw) -> Optional[FailedLoginRecord]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return FailedLoginRecord.from_dict(json.loads(raw))

    async def get(self, user_id):
        try:
            return self._decode(await self.redis.get(self._key(user_id)))
        except RedisError as e:
            raise LockoutStoreError(f"Failed to read lockout state: {e}") from e

    async def update(self, user_id, mutate, ttl_seconds):
        key = self._key(user_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(self.max_retries):
                    try:
                        await pipe.watch(key)
                        record = mutate(self._decode(await pipe.get(key)))
                        pipe.multi()
                        if record is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, json.dumps(record.to_dict()), ex=ttl_seconds)
                            if record.org_id:
                                pipe.sadd(self._org_key(record.org_id), user_id)
                        await pipe.execute()
                        return record
                    except WatchError:
                        logger.debug("Lockout update raced, retrying", user_id=user_id)
                        continue
        except RedisError as e:
            raise LockoutStoreError(f"Failed to update lockout state: {e}") from e
        raise LockoutStoreError(f"Lockout update for {user_id} kept conflicting")

    async def delete(self, user_id):
        try:
            await self.redis.delete(self._key(user_id))
        except RedisError as e:
            raise LockoutStoreError(f"Failed to clear lockout state: {e}") from e

    async def list_records(self, org_id):
        try:
            members = await self.redis.smembers(self._org_key(org_id))
            user_ids = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
            if not user_ids:
                return []
            raws = await self.redis.mget([self._key(u) for u in user_ids])
        except RedisError as e:
            raise LockoutStoreError(f"Failed to list lockout state: {e}") from e
        records = [self._decode(raw) for raw in raws]
        return [r for r in records if r is not None and r.org_id == org_id]


class LoginLockoutTracker:
    """
    Failed-login bookkeeping and lockout decisions.

    Usage:
        tracker = LoginLockoutTracker(InMemoryLockoutStore())
        status = await tracker.check_login_lockout(user_id)
        if status.is_locked:
            reject()
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        policy: Optional[LockoutPolicy] = None,
        pattern_tracker=None,
        audit_logger=None,
        error_channel: Optional[OperationalAlertChannel] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.policy = policy or LockoutPolicy()
        self.pattern_tracker = pattern_tracker
        self.audit_logger = audit_logger
        self.error_channel = error_channel or LoggingOperationalChannel()
        self._clock = clock
        # user_id -> (last record read or written, when); None record when known clean
        self._last_known: Dict[str, Tuple[Optional[FailedLoginRecord], datetime]] = {}

    @property
    def _ttl_seconds(self) -> int:
        return self.policy.window_seconds + self.policy.lockout_seconds

    def _remember(self, user_id: str, record: Optional[FailedLoginRecord], now: datetime) -> None:
        self._cleanup(now)
        self._last_known[user_id] = (record, now)

    def _recall(self, user_id: str, now: datetime):
        """Last known record, or _UNKNOWN when never seen or expired."""
        known = self._last_known.get(user_id)
        if known is None or (now - known[1]).total_seconds() > self._ttl_seconds:
            return _UNKNOWN
        return known[0]

    def _cleanup(self, now: datetime) -> None:
        """Drop last known state older than the store TTL."""
        expired = [
            user_id for user_id, (_, seen_at) in self._last_known.items()
            if (now - seen_at).total_seconds() > self._ttl_seconds
        ]
        for user_id in expired:
            del self._last_known[user_id]

    def _is_stale(self, record: FailedLoginRecord, now: datetime) -> bool:
        """Counting restarts after an expired lock or once the window has passed."""
        if record.locked_until is not None:
            return record.locked_until <= now
        return now - record.first_failure_at > self.policy.window

    def _status(
        self,
        user_id: str,
        record: Optional[FailedLoginRecord],
        now: datetime,
        degraded: bool = False,
    ) -> LockoutStatus:
        max_attempts = self.policy.max_attempts
        if record is not None and record.is_locked(now):
            return LockoutStatus(
                user_id=user_id,
                state=LockoutState.LOCKED,
                failed_attempts=record.attempt_count,
                remaining_attempts=0,
                locked_until=record.locked_until,
                minutes_remaining=math.ceil((record.locked_until - now).total_seconds() / 60),
                degraded=degraded,
            )
        attempts = 0 if record is None or self._is_stale(record, now) else record.attempt_count
        return LockoutStatus(
            user_id=user_id,
            state=LockoutState.OPEN,
            failed_attempts=attempts,
            remaining_attempts=max(0, max_attempts - attempts),
            degraded=degraded,
        )

    def _apply_failure(
        self,
        record: Optional[FailedLoginRecord],
        user_id: str,
        org_id: Optional[str],
        now: datetime,
    ) -> FailedLoginRecord:
        if record is not None and record.is_locked(now):
            return record

        if record is None or self._is_stale(record, now):
            record = FailedLoginRecord(
                user_id=user_id,
                org_id=org_id,
                attempt_count=1,
                first_failure_at=now,
                last_failure_at=now,
            )
        else:
            record = FailedLoginRecord(
                user_id=user_id,
                org_id=org_id or record.org_id,
                attempt_count=record.attempt_count + 1,
                first_failure_at=record.first_failure_at,
                last_failure_at=now,
            )

        if record.attempt_count >= self.policy.max_attempts:
            record.locked_until = now + self.policy.lockout_duration
        return record

    async def record_failed_login(
        self, user_id: str, org_id: Optional[str] = None
    ) -> LockoutStatus:
        """
        Record a failed login attempt.

        Args:
            user_id: Account that failed to authenticate
            org_id: Organization of the account, used for audit and counters

        Returns:
            LockoutStatus after the attempt

        Raises:
            LockoutStateUnavailableError: Store down and no known state
        """
        now = self._clock()
        previous: List[Optional[FailedLoginRecord]] = []

        def mutate(current: Optional[FailedLoginRecord]) -> FailedLoginRecord:
            previous[:] = [current]
            return self._apply_failure(current, user_id, org_id, now)

        degraded = False
        try:
            record = await self.store.update(user_id, mutate, self._ttl_seconds)
        except LockoutStoreError as e:
            cached = self._recall(user_id, now)
            if cached is _UNKNOWN:
                logger.error("Lockout state unavailable", user_id=user_id, error=str(e))
                raise LockoutStateUnavailableError(user_id) from e
            logger.error(
                "Lockout store failed; applying attempt to last known state",
                user_id=user_id,
                error=str(e),
            )
            previous[:] = [cached]
            record = self._apply_failure(cached, user_id, org_id, now)
            degraded = True

        self._remember(user_id, record, now)
        before = previous[0] if previous else None
        newly_locked = record.is_locked(now) and not (before is not None and before.is_locked(now))

        await self._feed_pattern_tracker(user_id, org_id or record.org_id, now)
        if newly_locked:
            await self._on_locked(record)

        status = self._status(user_id, record, now, degraded=degraded)
        logger.info(
            "Failed login recorded",
            user_id=user_id,
            org_id=record.org_id,
            failed_attempts=status.failed_attempts,
            locked=status.is_locked,
        )
        return status

    async def _feed_pattern_tracker(self, user_id: str, org_id: Optional[str], now: datetime) -> None:
        if self.pattern_tracker is None or not org_id:
            return
        try:
            await self.pattern_tracker.record_event(user_id, org_id, EventKind.FAILED_LOGIN, now)
        except Exception as e:
            logger.warning("Failed login not counted", user_id=user_id, org_id=org_id, error=str(e))

    async def _on_locked(self, record: FailedLoginRecord) -> None:
        metrics.ACCOUNT_LOCKOUTS.inc()
        logger.warning(
            "Account locked",
            user_id=record.user_id,
            org_id=record.org_id,
            failed_attempts=record.attempt_count,
            locked_until=record.locked_until.isoformat(),
        )
        if self.audit_logger is None:
            return
        if not record.org_id:
            self._report_unaudited("account_locked", record.user_id)
            return
        await self.audit_logger.security_event(
            record.org_id,
            "account_locked",
            user_id=record.user_id,
            resource=AuditResource.USER,
            resource_id=record.user_id,
            details={
                "failed_attempts": record.attempt_count,
                "locked_until": record.locked_until,
            },
        )

    def _report_unaudited(self, event: str, user_id: str, **context) -> None:
        self.error_channel.report(OperationalIncident(
            kind=IncidentKind.AUDIT_WRITE_FAILURE,
            severity=IncidentSeverity.ERROR,
            message=f"Lockout audit entry has no organization: {event}",
            context={"lockout_event": event, "user_id": user_id, **context},
            error="org_id unknown",
        ))

    async def clear_failed_logins(self, user_id: str) -> None:
        """Reset after a successful login."""
        await self.store.delete(user_id)
        self._remember(user_id, None, self._clock())

    async def check_login_lockout(self, user_id: str) -> LockoutStatus:
        """
        Read-only lockout check, run before credential comparison.

        Raises:
            LockoutStateUnavailableError: Store down and no known state
        """
        now = self._clock()
        try:
            record = await self.store.get(user_id)
        except LockoutStoreError as e:
            cached = self._recall(user_id, now)
            if cached is _UNKNOWN:
                logger.error("Lockout state unavailable", user_id=user_id, error=str(e))
                raise LockoutStateUnavailableError(user_id) from e
            logger.warning("Serving last known lockout state", user_id=user_id, error=str(e))
            return self._status(user_id, cached, now, degraded=True)

        self._remember(user_id, record, now)
        return self._status(user_id, record, now)

    async def is_account_locked(self, user_id: str) -> bool:
        return (await self.check_login_lockout(user_id)).is_locked

    async def unlock_account(
        self,
        user_id: str,
        unlocked_by: str,
        org_id: Optional[str] = None,
    ) -> LockoutStatus:
        """
        Administrator override: clear lockout state regardless of the timer.

        Records a SECURITY audit entry on the USER resource naming the admin.
        """
        now = self._clock()
        record = await self.store.get(user_id)
        await self.store.delete(user_id)
        self._remember(user_id, None, now)
        metrics.ACCOUNT_UNLOCKS.inc()

        org_id = org_id or (record.org_id if record else None)
        logger.info("Account unlocked", user_id=user_id, org_id=org_id, unlocked_by=unlocked_by)
        if self.audit_logger is not None and not org_id:
            self._report_unaudited("account_unlocked", user_id, unlocked_by=unlocked_by)
        elif self.audit_logger is not None:
            await self.audit_logger.security_event(
                org_id,
                "account_unlocked",
                user_id=unlocked_by,
                resource=AuditResource.USER,
                resource_id=user_id,
                details={
                    "unlocked_by": unlocked_by,
                    "unlocked_user_id": user_id,
                    "was_locked": bool(record and record.is_locked(now)),
                },
            )
        return self._status(user_id, None, now)

    async def list_locked_accounts(self, org_id: str) -> List[FailedLoginRecord]:
        """Accounts of an organization that are locked right now."""
        now = self._clock()
        records = await self.store.list_records(org_id)
        return sorted(
            (r for r in records if r.is_locked(now)),
            key=lambda r: r.locked_until,
        )
