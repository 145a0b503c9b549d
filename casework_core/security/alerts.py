"""
Security Alerts
===============
Alert payloads handed to the external AlertDispatcher, plus the gate that
keeps one event from alerting twice.

Delivery (email, in-app notification, retries) belongs to the dispatcher.
"""

import hashlib
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import structlog
from redis.exceptions import RedisError

from .config import OrgSecurityConfig
from .exceptions import EventIdStoreError
from .geo import mask_ip
from .models import (
    AccessEvent,
    AnomalyIndicator,
    RiskLevel,
    SecurityRiskResult,
    ThresholdViolation,
)

logger = structlog.get_logger(__name__)


def alert_id_for(event_id: str) -> str:
    """Alert ids derive from the event id so a replayed event maps to the same alert."""
    return "alert_" + hashlib.sha256(event_id.encode("utf-8")).hexdigest()[:24]


@dataclass
class SecurityAlert:
    """Payload describing a HIGH or CRITICAL risk result."""
    alert_id: str
    alert_type: RiskLevel
    org_id: str
    user_id: str
    event_id: str
    risk_score: int
    action: str
    masked_ip: Optional[str]
    violations: List[ThresholdViolation] = field(default_factory=list)
    anomalies: List[AnomalyIndicator] = field(default_factory=list)
    recipients: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.value,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "risk_score": self.risk_score,
            "action": self.action,
            "masked_ip": self.masked_ip,
            "violations": [v.to_dict() for v in self.violations],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "recipients": list(self.recipients),
            "created_at": self.created_at.isoformat(),
        }


def build_security_alert(
    result: SecurityRiskResult,
    event: AccessEvent,
    config: OrgSecurityConfig,
) -> SecurityAlert:
    return SecurityAlert(
        alert_id=alert_id_for(result.event_id),
        alert_type=result.risk_level,
        org_id=result.org_id,
        user_id=result.user_id,
        event_id=result.event_id,
        risk_score=result.risk_score,
        action=event.action,
        masked_ip=mask_ip(event.ip_address),
        violations=list(result.violations),
        anomalies=list(result.anomalies),
        recipients=list(config.alert_recipients),
    )


class AlertDispatcher(Protocol):
    """Delivers security alerts; retries on transient failure are its concern."""

    async def dispatch(self, alert: SecurityAlert) -> None:
        ...


class LoggingAlertDispatcher:
    """Default dispatcher: records the alert in the structured log only."""

    async def dispatch(self, alert: SecurityAlert) -> None:
        log = logger.critical if alert.alert_type == RiskLevel.CRITICAL else logger.warning
        log(
            "security_alert",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            org_id=alert.org_id,
            user_id=alert.user_id,
            risk_score=alert.risk_score,
            action=alert.action,
            ip=alert.masked_ip,
            violation_count=len(alert.violations),
            anomaly_count=len(alert.anomalies),
        )


class RecordingAlertDispatcher:
    """Keeps dispatched alerts in memory."""

    def __init__(self):
        self.alerts: List[SecurityAlert] = []

    async def dispatch(self, alert: SecurityAlert) -> None:
        self.alerts.append(alert)


class EventIdCache:
    """
    Remembers event ids for a TTL, in this process only.

    Use RedisEventIdCache when several instances may evaluate the same event.
    """

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl_seconds = ttl_seconds
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    async def check_and_store(self, event_id: str) -> bool:
        """
        Check if an event id is fresh and remember it.

        Args:
            event_id: Id of the evaluated access event

        Returns:
            True the first time an event id is seen within the TTL
        """
        with self._lock:
            self._cleanup()
            if event_id in self._seen:
                self._on_duplicate(event_id)
                return False
            self._seen[event_id] = time.monotonic()
            return True

    async def discard(self, event_id: str) -> None:
        with self._lock:
            self._seen.pop(event_id, None)

    def _on_duplicate(self, event_id: str) -> None:
        logger.debug("Event id already seen", event_id=event_id)

    def _cleanup(self) -> None:
        """Remove expired ids."""
        now = time.monotonic()
        expired = [
            event_id for event_id, ts in self._seen.items()
            if now - ts > self.ttl_seconds
        ]
        for event_id in expired:
            del self._seen[event_id]


class AlertGate(EventIdCache):
    """Lets each event id request at most one alert."""

    def _on_duplicate(self, event_id: str) -> None:
        logger.info("Duplicate alert suppressed", event_id=event_id)


class RedisEventIdCache(EventIdCache):
    """
    Event id cache shared through Redis.

    ``SET key NX EX ttl`` claims an id atomically, so exactly one instance
    sees it as fresh.

    Usage:
        observed = RedisEventIdCache(redis_client, "observed", ttl_seconds=3600)
        if await observed.check_and_store(event.event_id):
            ...
    """

    def __init__(
        self,
        redis_client,
        namespace: str,
        ttl_seconds: int = 3600,
        prefix: str = "casework:event_ids",
    ):
        super().__init__(ttl_seconds)
        self.redis = redis_client
        self.namespace = namespace
        self.prefix = prefix

    def _key(self, event_id: str) -> str:
        return f"{self.prefix}:{self.namespace}:{event_id}"

    async def check_and_store(self, event_id: str) -> bool:
        try:
            claimed = await self.redis.set(self._key(event_id), "1", nx=True, ex=self.ttl_seconds)
        except RedisError as e:
            raise EventIdStoreError(f"Event id cache unavailable: {e}") from e
        if not claimed:
            self._on_duplicate(event_id)
            return False
        return True

    async def discard(self, event_id: str) -> None:
        try:
            await self.redis.delete(self._key(event_id))
        except RedisError as e:
            raise EventIdStoreError(f"Event id cache unavailable: {e}") from e

    def _on_duplicate(self, event_id: str) -> None:
        logger.info("Event id already claimed", event_id=event_id, namespace=self.namespace)
