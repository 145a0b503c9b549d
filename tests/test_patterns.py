"""
Unit Tests for Access Pattern Tracking
======================================
Bucketed sliding-window counters, in memory and on Redis.
"""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from casework_core.security import (
    AccessEvent,
    EventKind,
    InMemoryAccessPatternTracker,
    RedisAccessPatternTracker,
)
from casework_core.security.config import DEFAULT_SECURITY_CONFIG
from casework_core.security.exceptions import PatternStoreError
from casework_core.security.patterns import (
    GRANULARITIES,
    classify_event,
    granularity_for,
    sum_window,
)


@pytest.fixture(params=["memory", "redis"])
def any_tracker(request):
    if request.param == "memory":
        return InMemoryAccessPatternTracker()
    return RedisAccessPatternTracker(fakeredis.FakeAsyncRedis())


class TestBuckets:
    """Tests for granularity selection and window sums."""

    def test_granularity_for_windows(self):
        """Should pick the finest granularity covering the window."""
        assert granularity_for(1).bucket_seconds == 1
        assert granularity_for(300).bucket_seconds == 60
        assert granularity_for(3600).bucket_seconds == 60
        assert granularity_for(86400).bucket_seconds == 3600
        assert granularity_for(30 * 86400).bucket_seconds == 86400

    def test_oversized_window_uses_coarsest(self):
        """Should fall back to the coarsest granularity."""
        assert granularity_for(365 * 86400) == GRANULARITIES[-1]

    def test_sum_window_bounds(self):
        """Should include buckets in (now - window, now]."""
        buckets = {940: 1, 941: 2, 1000: 4, 1001: 8}
        assert sum_window(buckets, now=1000, window_seconds=60) == 6


class TestClassification:
    """Tests for mapping access events to counters."""

    def test_client_view(self, business_noon):
        """Should count client record views separately."""
        event = AccessEvent(user_id="u1", org_id="o1", action="VIEW", resource="CLIENT", timestamp=business_noon)
        assert classify_event(event, DEFAULT_SECURITY_CONFIG) == [EventKind.REQUEST, EventKind.CLIENT_VIEW]

    def test_failed_login(self, business_noon):
        """Should count only unsuccessful logins as failures."""
        ok = AccessEvent(user_id="u1", org_id="o1", action="LOGIN", timestamp=business_noon)
        bad = AccessEvent(user_id="u1", org_id="o1", action="LOGIN", success=False, timestamp=business_noon)
        assert EventKind.FAILED_LOGIN not in classify_event(ok, DEFAULT_SECURITY_CONFIG)
        assert EventKind.FAILED_LOGIN in classify_event(bad, DEFAULT_SECURITY_CONFIG)

    def test_off_hours(self, business_noon):
        """Should tag events outside business hours."""
        night = business_noon.replace(hour=2)
        event = AccessEvent(user_id="u1", org_id="o1", action="EXPORT", timestamp=night)
        assert classify_event(event, DEFAULT_SECURITY_CONFIG) == [
            EventKind.REQUEST, EventKind.EXPORT, EventKind.OFF_HOURS,
        ]


class TestTrackers:
    """Behavior shared by the in-memory and Redis trackers."""

    @pytest.mark.asyncio
    async def test_counts_within_window(self, any_tracker, business_noon):
        """Should count events inside each requested window."""
        for minutes_ago in (1, 10, 50, 90):
            await any_tracker.record_event(
                "u1", "o1", EventKind.EXPORT, business_noon - timedelta(minutes=minutes_ago)
            )

        counts = await any_tracker.get_counts(
            "u1", "o1", EventKind.EXPORT, {"hour": 3600, "day": 86400}, now=business_noon
        )

        assert counts == {"hour": 3, "day": 4}

    @pytest.mark.asyncio
    async def test_counts_isolated_per_user_org_and_kind(self, any_tracker, business_noon):
        """Should keep counters separate per user, organization and kind."""
        await any_tracker.record_event("u1", "o1", EventKind.EXPORT, business_noon)
        await any_tracker.record_event("u2", "o1", EventKind.EXPORT, business_noon)
        await any_tracker.record_event("u1", "o2", EventKind.EXPORT, business_noon)
        await any_tracker.record_event("u1", "o1", EventKind.DOWNLOAD, business_noon)

        counts = await any_tracker.get_counts("u1", "o1", EventKind.EXPORT, {"w": 60}, now=business_noon)

        assert counts == {"w": 1}

    @pytest.mark.asyncio
    async def test_second_resolution(self, any_tracker, business_noon):
        """Should resolve one-second windows."""
        for _ in range(4):
            await any_tracker.record_event("u1", "o1", EventKind.REQUEST, business_noon)
        await any_tracker.record_event("u1", "o1", EventKind.REQUEST, business_noon - timedelta(seconds=3))

        counts = await any_tracker.get_counts("u1", "o1", EventKind.REQUEST, {"s": 1}, now=business_noon)

        assert counts == {"s": 4}

    @pytest.mark.asyncio
    async def test_observe_records_all_kinds(self, any_tracker, business_noon):
        """Should increment every counter the event belongs to."""
        event = AccessEvent(
            user_id="u1", org_id="o1", action="DOWNLOAD", resource="FILE",
            timestamp=business_noon, country="de",
        )

        kinds = await any_tracker.observe(event)

        assert kinds == [EventKind.REQUEST, EventKind.DOWNLOAD]
        counts = await any_tracker.get_counts("u1", "o1", EventKind.DOWNLOAD, {"w": 300}, now=business_noon)
        assert counts == {"w": 1}
        assert await any_tracker.known_countries("u1", "o1", now=business_noon) == {"DE"}

    @pytest.mark.asyncio
    async def test_local_country_not_remembered(self, any_tracker, business_noon):
        """Should not treat private-network access as a country."""
        event = AccessEvent(user_id="u1", org_id="o1", action="VIEW", timestamp=business_noon, country="LOCAL")

        await any_tracker.observe(event)

        assert await any_tracker.known_countries("u1", "o1", now=business_noon) == set()

    @pytest.mark.asyncio
    async def test_countries_expire(self, any_tracker, business_noon):
        """Should forget countries not seen for 90 days."""
        await any_tracker.record_country("u1", "o1", "FR", business_noon - timedelta(days=91))
        await any_tracker.record_country("u1", "o1", "US", business_noon - timedelta(days=10))

        assert await any_tracker.known_countries("u1", "o1", now=business_noon) == {"US"}

    @pytest.mark.asyncio
    async def test_pattern_baseline(self, any_tracker, business_noon):
        """Should average exports per day over the baseline period."""
        for days_ago in range(1, 7):
            await any_tracker.record_event(
                "u1", "o1", EventKind.EXPORT, business_noon - timedelta(days=days_ago)
            )

        pattern = await any_tracker.get_pattern("u1", "o1", now=business_noon)

        assert pattern.avg_daily_exports == pytest.approx(6 / 30)
        assert pattern.avg_daily_client_views == 0


class TestRedisTrackerErrors:
    """Tests for Redis failures."""

    @pytest.mark.asyncio
    async def test_redis_error_wrapped(self):
        """Should raise PatternStoreError when Redis is unreachable."""
        redis_client = fakeredis.FakeAsyncRedis()
        tracker = RedisAccessPatternTracker(redis_client)

        async def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        redis_client.script_load = fail

        with pytest.raises(PatternStoreError):
            await tracker.record_event("u1", "o1", EventKind.EXPORT, datetime.now(timezone.utc))
