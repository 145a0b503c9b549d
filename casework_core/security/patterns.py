"""
Access Pattern Tracker
======================
Per-user, per-organization event counters over sliding windows.

Counts are kept in time buckets at several granularities. A window query
reads the finest granularity whose retention covers the window and sums the
buckets that start inside it, so resolution is one bucket of that
granularity and an increment never rescans history.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog
from redis.exceptions import RedisError

from casework_core.audit.actions import AuditAction, AuditResource

from .config import DEFAULT_SECURITY_CONFIG, OrgSecurityConfig
from .exceptions import PatternStoreError
from .geo import LOCAL_COUNTRY
from .models import AccessEvent, EventKind, UserAccessPattern

logger = structlog.get_logger(__name__)

DAY_SECONDS = 86400
COUNTRY_RETENTION_SECONDS = 90 * DAY_SECONDS


@dataclass(frozen=True)
class Granularity:
    bucket_seconds: int
    retention_seconds: int

    def bucket_start(self, epoch: float) -> int:
        return int(epoch // self.bucket_seconds) * self.bucket_seconds


GRANULARITIES: Tuple[Granularity, ...] = (
    Granularity(1, 120),
    Granularity(60, 2 * 3600),
    Granularity(3600, 2 * DAY_SECONDS),
    Granularity(DAY_SECONDS, 32 * DAY_SECONDS),
)


def granularity_for(window_seconds: int) -> Granularity:
    """Finest granularity whose retention covers the window."""
    for granularity in GRANULARITIES:
        if granularity.retention_seconds >= window_seconds:
            return granularity
    return GRANULARITIES[-1]


def sum_window(buckets: Mapping[int, int], now: float, window_seconds: int) -> int:
    """Sum the buckets starting in ``(now - window, now]``."""
    cutoff = now - window_seconds
    return sum(count for start, count in buckets.items() if cutoff < start <= now)


def _epoch(moment: Optional[datetime]) -> float:
    if moment is None:
        return datetime.now(timezone.utc).timestamp()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def classify_event(event: AccessEvent, config: OrgSecurityConfig) -> List[EventKind]:
    """Counter families an access event increments."""
    kinds = [EventKind.REQUEST]
    action = event.action
    if action == AuditAction.EXPORT.value:
        kinds.append(EventKind.EXPORT)
    elif action == AuditAction.VIEW.value and event.resource == AuditResource.CLIENT.value:
        kinds.append(EventKind.CLIENT_VIEW)
    elif action == AuditAction.DOWNLOAD.value:
        kinds.append(EventKind.DOWNLOAD)
    elif action == AuditAction.LOGIN.value and not event.success:
        kinds.append(EventKind.FAILED_LOGIN)

    if not config.business_hours.contains(event.timestamp):
        kinds.append(EventKind.OFF_HOURS)
    return kinds


class AccessPatternTracker(ABC):
    """Counter store shared by the risk engine and the lockout tracker."""

    @abstractmethod
    async def record_event(
        self,
        user_id: str,
        org_id: str,
        kind: EventKind,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Increment the counters of one event kind."""

    @abstractmethod
    async def get_counts(
        self,
        user_id: str,
        org_id: str,
        kind: EventKind,
        windows: Mapping[str, int],
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Count events of ``kind`` in each named window (seconds)."""

    @abstractmethod
    async def record_country(
        self,
        user_id: str,
        org_id: str,
        country: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Remember a country the user accessed from."""

    @abstractmethod
    async def known_countries(
        self, user_id: str, org_id: str, now: Optional[datetime] = None
    ) -> Set[str]:
        """Countries the user accessed from recently."""

    async def record_events(
        self,
        user_id: str,
        org_id: str,
        kinds: Iterable[EventKind],
        timestamp: Optional[datetime] = None,
    ) -> None:
        for kind in kinds:
            await self.record_event(user_id, org_id, kind, timestamp)

    async def observe(
        self,
        event: AccessEvent,
        config: OrgSecurityConfig = DEFAULT_SECURITY_CONFIG,
    ) -> List[EventKind]:
        """
        Record an access event in every counter it belongs to.

        Returns:
            The event kinds that were incremented
        """
        kinds = classify_event(event, config)
        await self.record_events(event.user_id, event.org_id, kinds, event.timestamp)
        if event.country and event.country != LOCAL_COUNTRY:
            await self.record_country(event.user_id, event.org_id, event.country, event.timestamp)
        return kinds

    async def get_pattern(
        self,
        user_id: str,
        org_id: str,
        config: OrgSecurityConfig = DEFAULT_SECURITY_CONFIG,
        now: Optional[datetime] = None,
    ) -> UserAccessPattern:
        """Behavioral baseline over the configured number of days."""
        days = config.anomaly.baseline_days
        window = {"baseline": days * DAY_SECONDS}
        exports = await self.get_counts(user_id, org_id, EventKind.EXPORT, window, now)
        views = await self.get_counts(user_id, org_id, EventKind.CLIENT_VIEW, window, now)
        off_hours = await self.get_counts(user_id, org_id, EventKind.OFF_HOURS, window, now)
        return UserAccessPattern(
            user_id=user_id,
            org_id=org_id,
            avg_daily_exports=exports["baseline"] / days,
            avg_daily_client_views=views["baseline"] / days,
            off_hours_accesses_30d=off_hours["baseline"],
            known_countries=await self.known_countries(user_id, org_id, now),
        )


class InMemoryAccessPatternTracker(AccessPatternTracker):
    """
    Single-process tracker.

    For development and testing; use RedisAccessPatternTracker when several
    instances serve the same organizations.
    """

    def __init__(self):
        self._buckets: Dict[Tuple[str, str, str, int], Dict[int, int]] = defaultdict(dict)
        self._countries: Dict[Tuple[str, str], Dict[str, float]] = defaultdict(dict)
        self._lock = threading.Lock()

    async def record_event(self, user_id, org_id, kind, timestamp=None) -> None:
        epoch = _epoch(timestamp)
        kind = EventKind(kind)
        with self._lock:
            for granularity in GRANULARITIES:
                buckets = self._buckets[(org_id, user_id, kind.value, granularity.bucket_seconds)]
                start = granularity.bucket_start(epoch)
                buckets[start] = buckets.get(start, 0) + 1
                # Bounded by retention / bucket size
                cutoff = epoch - granularity.retention_seconds
                for stale in [s for s in buckets if s <= cutoff]:
                    del buckets[stale]

    async def get_counts(self, user_id, org_id, kind, windows, now=None) -> Dict[str, int]:
        epoch = _epoch(now)
        kind = EventKind(kind)
        counts = {}
        with self._lock:
            for name, seconds in windows.items():
                granularity = granularity_for(seconds)
                buckets = self._buckets.get(
                    (org_id, user_id, kind.value, granularity.bucket_seconds), {}
                )
                counts[name] = sum_window(buckets, epoch, seconds)
        return counts

    async def record_country(self, user_id, org_id, country, timestamp=None) -> None:
        with self._lock:
            self._countries[(org_id, user_id)][country.upper()] = _epoch(timestamp)

    async def known_countries(self, user_id, org_id, now=None) -> Set[str]:
        cutoff = _epoch(now) - COUNTRY_RETENTION_SECONDS
        with self._lock:
            seen = self._countries.get((org_id, user_id), {})
            return {country for country, last in seen.items() if last > cutoff}


# Increment one bucket per granularity and drop buckets past retention.
# KEYS: one hash per granularity. ARGV: now, then (bucket_seconds, retention) pairs.
RECORD_EVENT_SCRIPT = """
local now = tonumber(ARGV[1])
for i, key in ipairs(KEYS) do
    local size = tonumber(ARGV[i * 2])
    local retention = tonumber(ARGV[i * 2 + 1])
    local start = math.floor(now / size) * size
    redis.call('HINCRBY', key, tostring(start), 1)

    local cutoff = now - retention
    local fields = redis.call('HKEYS', key)
    for _, field in ipairs(fields) do
        if tonumber(field) <= cutoff then
            redis.call('HDEL', key, field)
        end
    end
    redis.call('EXPIRE', key, retention + size)
end
return 1
"""


class RedisAccessPatternTracker(AccessPatternTracker):
    """
    Redis-backed tracker shared across instances.

    Uses a Lua script so the increment and prune of every granularity apply
    atomically.
    """

    def __init__(self, redis_client, prefix: str = "casework:patterns"):
        """
        Args:
            redis_client: Async Redis client (``redis.asyncio``)
            prefix: Key namespace
        """
        self.redis = redis_client
        self.prefix = prefix
        self._script_sha: Optional[str] = None

    def _key(self, org_id: str, user_id: str, kind: str, bucket_seconds: int) -> str:
        return f"{self.prefix}:{org_id}:{user_id}:{kind}:{bucket_seconds}"

    def _countries_key(self, org_id: str, user_id: str) -> str:
        return f"{self.prefix}:{org_id}:{user_id}:countries"

    async def _ensure_script(self) -> str:
        """Load Lua script into Redis if needed."""
        if self._script_sha is None:
            self._script_sha = await self.redis.script_load(RECORD_EVENT_SCRIPT)
        return self._script_sha

    async def record_event(self, user_id, org_id, kind, timestamp=None) -> None:
        kind = EventKind(kind)
        epoch = _epoch(timestamp)
        keys = [
            self._key(org_id, user_id, kind.value, g.bucket_seconds) for g in GRANULARITIES
        ]
        args: List[float] = [epoch]
        for granularity in GRANULARITIES:
            args.extend([granularity.bucket_seconds, granularity.retention_seconds])
        try:
            script_sha = await self._ensure_script()
            await self.redis.evalsha(script_sha, len(keys), *keys, *args)
        except RedisError as e:
            logger.error("Access pattern update failed", org_id=org_id, kind=kind.value, error=str(e))
            raise PatternStoreError(f"Failed to record {kind.value} event: {e}") from e

    async def get_counts(self, user_id, org_id, kind, windows, now=None) -> Dict[str, int]:
        kind = EventKind(kind)
        epoch = _epoch(now)
        needed = {granularity_for(s).bucket_seconds for s in windows.values()}
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for size in sorted(needed):
                    pipe.hgetall(self._key(org_id, user_id, kind.value, size))
                raw = await pipe.execute()
        except RedisError as e:
            logger.error("Access pattern read failed", org_id=org_id, kind=kind.value, error=str(e))
            raise PatternStoreError(f"Failed to read {kind.value} counts: {e}") from e

        by_size = {
            size: {int(start): int(count) for start, count in data.items()}
            for size, data in zip(sorted(needed), raw)
        }
        return {
            name: sum_window(by_size[granularity_for(seconds).bucket_seconds], epoch, seconds)
            for name, seconds in windows.items()
        }

    async def record_country(self, user_id, org_id, country, timestamp=None) -> None:
        key = self._countries_key(org_id, user_id)
        epoch = _epoch(timestamp)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {country.upper(): epoch})
                pipe.zremrangebyscore(key, 0, epoch - COUNTRY_RETENTION_SECONDS)
                pipe.expire(key, COUNTRY_RETENTION_SECONDS)
                await pipe.execute()
        except RedisError as e:
            raise PatternStoreError(f"Failed to record country: {e}") from e

    async def known_countries(self, user_id, org_id, now=None) -> Set[str]:
        cutoff = _epoch(now) - COUNTRY_RETENTION_SECONDS
        try:
            members = await self.redis.zrangebyscore(
                self._countries_key(org_id, user_id), f"({cutoff}", "+inf"
            )
        except RedisError as e:
            raise PatternStoreError(f"Failed to read known countries: {e}") from e
        return {m.decode() if isinstance(m, bytes) else m for m in members}
