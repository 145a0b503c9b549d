"""
Risk Engine
===========
Scores sensitive access events against per-organization thresholds and
behavioral anomalies.

Scoring (0-100, capped):
- each violation adds ``weight * severity multiplier * min(2, count / limit)``
- each anomaly adds ``weight * severity multiplier * confidence``

Adding a violation or anomaly, raising a severity or a confidence never
lowers the score. The score maps to a level through the organization's
RiskBands; HIGH and CRITICAL request one alert per event id.

Scoring fails open: any tracker or configuration error produces a LOW result
carrying the error, escalated to the operational channel.
"""

import asyncio
import dataclasses
import math
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

import structlog

from casework_core import metrics
from casework_core.audit.actions import AuditAction, AuditResource
from casework_core.audit.exceptions import AuditError
from casework_core.config import get_settings
from casework_core.operational import (
    IncidentKind,
    IncidentSeverity,
    LoggingOperationalChannel,
    OperationalAlertChannel,
    OperationalIncident,
)

from .alerts import (
    AlertDispatcher,
    AlertGate,
    EventIdCache,
    LoggingAlertDispatcher,
    RedisEventIdCache,
    SecurityAlert,
    build_security_alert,
)
from .config import DEFAULT_SECURITY_CONFIG, OrgSecurityConfig, RiskWeights, ThresholdRule
from .exceptions import EvaluationError, EventIdStoreError, InvalidSecurityConfigError
from .geo import LOCAL_COUNTRY, CountryResolver, NullCountryResolver, mask_ip
from .models import (
    AccessEvent,
    AnomalyIndicator,
    AnomalyType,
    BlockDecision,
    EventKind,
    RiskLevel,
    SecurityRiskResult,
    Severity,
    ThresholdType,
    ThresholdViolation,
)
from .patterns import DAY_SECONDS, AccessPatternTracker, classify_event

logger = structlog.get_logger(__name__)

ConfigLoader = Callable[[str], Awaitable[OrgSecurityConfig]]

THRESHOLD_LABELS = {
    ThresholdType.EXCESSIVE_EXPORTS: "exports",
    ThresholdType.EXCESSIVE_CLIENT_VIEWS: "client record views",
    ThresholdType.EXCESSIVE_FAILED_LOGINS: "failed logins",
    ThresholdType.BULK_DOWNLOAD: "downloads",
}

OFF_HOURS_CONFIDENCE = 0.7
GEO_CONFIDENCE = 0.75
GEO_HIGH_RISK_CONFIDENCE = 0.9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_risk_score(
    violations: Iterable[ThresholdViolation],
    anomalies: Iterable[AnomalyIndicator],
    weights: RiskWeights,
) -> int:
    """Combine violations and anomalies into a 0-100 score."""
    score = 0.0
    for violation in violations:
        ratio = min(2.0, violation.observed_count / violation.limit)
        score += (
            weights.for_threshold(violation.threshold_type)
            * violation.severity.multiplier
            * ratio
        )
    for anomaly in anomalies:
        score += (
            weights.for_anomaly(anomaly.anomaly_type)
            * anomaly.severity.multiplier
            * anomaly.confidence
        )
    # Half-up rounding
    return min(100, int(math.floor(score + 0.5)))


class RiskEngine:
    """
    Real-time access risk evaluation.

    Usage:
        engine = RiskEngine(InMemoryAccessPatternTracker())
        result = await engine.evaluate(AccessEvent(user_id="u1", org_id="o1", action="EXPORT"))
    """

    def __init__(
        self,
        tracker: AccessPatternTracker,
        *,
        dispatcher: Optional[AlertDispatcher] = None,
        audit_logger=None,
        country_resolver: Optional[CountryResolver] = None,
        config_loader: Optional[ConfigLoader] = None,
        error_channel: Optional[OperationalAlertChannel] = None,
        event_id_ttl_seconds: Optional[int] = None,
        redis_client=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            tracker: Counter store read for thresholds and baselines
            dispatcher: Receives HIGH/CRITICAL alerts
            audit_logger: When set, alerted results are also recorded as SECURITY entries
            country_resolver: Resolves IPs for the geographic check
            config_loader: Async lookup of an organization's security config
            error_channel: Operational escalation for failed evaluations
            event_id_ttl_seconds: How long event ids are remembered for dedupe
            redis_client: When set, observed and alerted event ids are shared
                through Redis so several instances never double-count or
                double-alert one event
            clock: Time source for pre-checks
        """
        ttl = event_id_ttl_seconds or get_settings().security_event_id_ttl_seconds
        self.tracker = tracker
        self.dispatcher = dispatcher or LoggingAlertDispatcher()
        self.audit_logger = audit_logger
        self.country_resolver = country_resolver or NullCountryResolver()
        self.config_loader = config_loader
        self.error_channel = error_channel or LoggingOperationalChannel()
        if redis_client is not None:
            self._observed: EventIdCache = RedisEventIdCache(redis_client, "observed", ttl)
            self._alert_gate: EventIdCache = RedisEventIdCache(redis_client, "alerts", ttl)
        else:
            self._observed = EventIdCache(ttl)
            self._alert_gate = AlertGate(ttl)
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def _config_for(self, org_id: str, config: Optional[OrgSecurityConfig]) -> OrgSecurityConfig:
        if config is not None:
            return config
        if self.config_loader is None:
            return DEFAULT_SECURITY_CONFIG
        try:
            return await self.config_loader(org_id)
        except InvalidSecurityConfigError:
            raise
        except Exception as e:
            raise EvaluationError(f"Security config unavailable for org {org_id}: {e}") from e

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        event: AccessEvent,
        config: Optional[OrgSecurityConfig] = None,
    ) -> SecurityRiskResult:
        """
        Observe an access event and score it.

        Args:
            event: The access being evaluated
            config: Organization config; loaded via ``config_loader`` when omitted

        Returns:
            SecurityRiskResult; never raises for tracker or config failures
        """
        try:
            config = await self._config_for(event.org_id, config)
            result, event = await self._score(event, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._fail_open(event, e)

        metrics.RISK_EVALUATIONS.labels(level=result.risk_level.value).inc()
        log = logger.warning if result.risk_level.requires_alert else logger.info
        log(
            "Security risk evaluated",
            event_id=event.event_id,
            org_id=event.org_id,
            user_id=event.user_id,
            action=event.action,
            risk_score=result.risk_score,
            risk_level=result.risk_level.value,
            violation_count=len(result.violations),
            anomaly_count=len(result.anomalies),
        )

        if result.risk_level.requires_alert and await self._claim_alert(event.event_id):
            alert = build_security_alert(result, event, config)
            result.alert_requested = True
            metrics.SECURITY_ALERTS_REQUESTED.labels(alert_type=alert.alert_type.value).inc()
            self._spawn(self._deliver(alert, result))
        return result

    async def _score(
        self, event: AccessEvent, config: OrgSecurityConfig
    ) -> Tuple[SecurityRiskResult, AccessEvent]:
        if event.country is None and event.ip_address:
            event = dataclasses.replace(
                event, country=await self.country_resolver.resolve(event.ip_address)
            )

        # Snapshot before this event's country is remembered
        known_countries = await self.tracker.known_countries(
            event.user_id, event.org_id, event.timestamp
        )

        if await self._observed.check_and_store(event.event_id):
            try:
                await self.tracker.observe(event, config)
            except Exception:
                await self._observed.discard(event.event_id)
                raise

        violations, anomalies = await asyncio.gather(
            self._threshold_pass(event.user_id, event.org_id, config, event.timestamp),
            self._anomaly_pass(event, config, known_countries),
        )
        score = compute_risk_score(violations, anomalies, config.risk_weights)
        result = SecurityRiskResult(
            event_id=event.event_id,
            user_id=event.user_id,
            org_id=event.org_id,
            risk_score=score,
            risk_level=config.risk_bands.level_for(score),
            violations=violations,
            anomalies=anomalies,
        )
        return result, event

    async def _claim_alert(self, event_id: str) -> bool:
        try:
            return await self._alert_gate.check_and_store(event_id)
        except EventIdStoreError as e:
            # Fail toward alerting
            logger.error("Alert dedupe unavailable; alerting anyway", event_id=event_id, error=str(e))
            return True

    def _fail_open(self, event: AccessEvent, error: Exception) -> SecurityRiskResult:
        metrics.RISK_EVALUATION_FAILURES.inc()
        message = f"{type(error).__name__}: {error}"
        self.error_channel.report(OperationalIncident(
            kind=IncidentKind.RISK_EVALUATION_FAILURE,
            severity=IncidentSeverity.ERROR,
            message="Risk evaluation failed; scored as LOW",
            org_id=event.org_id,
            context={"event_id": event.event_id, "user_id": event.user_id, "action": event.action},
            error=message,
        ))
        return SecurityRiskResult(
            event_id=event.event_id,
            user_id=event.user_id,
            org_id=event.org_id,
            risk_score=0,
            risk_level=RiskLevel.LOW,
            error=message,
        )

    def evaluate_in_background(
        self,
        event: AccessEvent,
        config: Optional[OrgSecurityConfig] = None,
    ) -> asyncio.Task:
        """Schedule ``evaluate`` without waiting on it."""
        return self._spawn(self.evaluate(event, config))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background evaluations and alert deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, alert: SecurityAlert, result: SecurityRiskResult) -> None:
        # Alert goes out before, and regardless of, the audit write
        try:
            await self.dispatcher.dispatch(alert)
        except Exception as e:
            self.error_channel.report(OperationalIncident(
                kind=IncidentKind.ALERT_DISPATCH_FAILURE,
                severity=IncidentSeverity.ERROR,
                message="Security alert could not be handed to the dispatcher",
                org_id=alert.org_id,
                context={"alert_id": alert.alert_id, "alert_type": alert.alert_type.value},
                error=f"{type(e).__name__}: {e}",
            ))

        if self.audit_logger is None:
            return
        try:
            await self.audit_logger.security_event(
                result.org_id,
                "risk_alert",
                user_id=result.user_id,
                resource_id=alert.alert_id,
                details={
                    "event_id": result.event_id,
                    "risk_score": result.risk_score,
                    "risk_level": result.risk_level.value,
                    "violations": [v.threshold_type.value for v in result.violations],
                    "anomalies": [a.anomaly_type.value for a in result.anomalies],
                },
            )
        except AuditError as e:
            # Already escalated by the audit logger
            logger.error("Risk alert not recorded in audit trail", alert_id=alert.alert_id, error=str(e))

    # ------------------------------------------------------------------
    # Threshold pass
    # ------------------------------------------------------------------

    async def _check_rule(
        self,
        rule: ThresholdRule,
        user_id: str,
        org_id: str,
        now: datetime,
        pending: int = 0,
    ) -> Optional[ThresholdViolation]:
        counts = await self.tracker.get_counts(
            user_id, org_id, rule.event_kind, {"window": rule.window_seconds}, now
        )
        count = counts["window"] + pending
        if count <= rule.limit:
            return None
        label = THRESHOLD_LABELS[rule.threshold_type]
        return ThresholdViolation(
            threshold_type=rule.threshold_type,
            observed_count=count,
            limit=rule.limit,
            window_start=now - timedelta(seconds=rule.window_seconds),
            window_end=now,
            severity=rule.severity_for(count),
            description=(
                f"{count} {label} in the last {rule.describe_window()} "
                f"exceeds the limit of {rule.limit}"
            ),
        )

    async def _threshold_pass(
        self, user_id: str, org_id: str, config: OrgSecurityConfig, now: datetime
    ) -> List[ThresholdViolation]:
        outcomes = await asyncio.gather(*(
            self._check_rule(rule, user_id, org_id, now) for rule in config.thresholds
        ))
        return [v for v in outcomes if v is not None]

    async def should_block_action(
        self,
        user_id: str,
        org_id: str,
        action: Optional[str] = None,
        ip_address: Optional[str] = None,
        config: Optional[OrgSecurityConfig] = None,
        resource: Optional[str] = None,
    ) -> BlockDecision:
        """
        Inline pre-check before a sensitive operation.

        Runs the threshold pass only, counting the pending action as if it
        had happened. Nothing is recorded.

        Blocks when a violated rule has ``block_on_violation`` or when the
        threshold-only score reaches the CRITICAL band. A rule whose counts
        cannot be read blocks only if it is ``fail_closed``.
        """
        now = self._clock()
        try:
            config = await self._config_for(org_id, config)
        except Exception as e:
            logger.error("Security config unavailable for pre-check", org_id=org_id, error=str(e))
            return BlockDecision(blocked=False)

        pending_kinds: Set[EventKind] = set()
        if action is not None:
            candidate = AccessEvent(
                user_id=user_id, org_id=org_id, action=action,
                resource=resource, ip_address=ip_address, timestamp=now,
            )
            pending_kinds = set(classify_event(candidate, config))

        rules = list(config.thresholds)
        outcomes = await asyncio.gather(
            *(
                self._check_rule(
                    rule, user_id, org_id, now,
                    pending=1 if rule.event_kind in pending_kinds else 0,
                )
                for rule in rules
            ),
            return_exceptions=True,
        )

        violations: List[ThresholdViolation] = []
        blocking: Optional[ThresholdViolation] = None
        for rule, outcome in zip(rules, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning(
                    "Threshold counts unavailable for pre-check",
                    org_id=org_id,
                    user_id=user_id,
                    threshold_type=rule.threshold_type.value,
                    fail_closed=rule.fail_closed,
                    error=str(outcome),
                )
                if rule.fail_closed:
                    return BlockDecision(
                        blocked=True,
                        reason=(
                            f"Unable to verify {THRESHOLD_LABELS[rule.threshold_type]} "
                            "limit. Please try again later."
                        ),
                    )
                continue
            if outcome is not None:
                violations.append(outcome)
                if rule.block_on_violation and blocking is None:
                    blocking = outcome

        score = compute_risk_score(violations, [], config.risk_weights)
        if blocking is not None:
            reason = blocking.description
        elif config.risk_bands.level_for(score) == RiskLevel.CRITICAL:
            reason = (
                f"Security risk too high (score: {score}). "
                "Please contact your administrator."
            )
        else:
            return BlockDecision(blocked=False, risk_score=score, violations=violations)

        logger.warning(
            "Sensitive action blocked",
            org_id=org_id,
            user_id=user_id,
            action=action,
            ip=mask_ip(ip_address),
            risk_score=score,
        )
        return BlockDecision(blocked=True, risk_score=score, reason=reason, violations=violations)

    # ------------------------------------------------------------------
    # Anomaly pass
    # ------------------------------------------------------------------

    async def _anomaly_pass(
        self,
        event: AccessEvent,
        config: OrgSecurityConfig,
        known_countries: Set[str],
    ) -> List[AnomalyIndicator]:
        checks = []
        settings = config.anomaly
        if settings.is_enabled(AnomalyType.OFF_HOURS_ACCESS):
            checks.append(self._check_off_hours(event, config))
        if settings.is_enabled(AnomalyType.GEOGRAPHIC_ANOMALY):
            checks.append(self._check_geographic(event, config, known_countries))
        if settings.is_enabled(AnomalyType.UNUSUAL_ACCESS_PATTERN):
            checks.append(self._check_unusual_pattern(event, config))
        if settings.is_enabled(AnomalyType.RAPID_FIRE_REQUESTS):
            checks.append(self._check_rapid_fire(event, config))
        outcomes = await asyncio.gather(*checks)
        return [a for a in outcomes if a is not None]

    async def _check_off_hours(
        self, event: AccessEvent, config: OrgSecurityConfig
    ) -> Optional[AnomalyIndicator]:
        hours = config.business_hours
        if hours.contains(event.timestamp):
            return None

        baseline = {"baseline": config.anomaly.baseline_days * DAY_SECONDS}
        history = await self.tracker.get_counts(
            event.user_id, event.org_id, EventKind.OFF_HOURS, baseline, event.timestamp
        )
        # Users who regularly work late are not flagged
        if history["baseline"] > config.anomaly.off_hours_suppress_after:
            return None

        local_hour = hours.local_time(event.timestamp).hour
        return AnomalyIndicator(
            anomaly_type=AnomalyType.OFF_HOURS_ACCESS,
            description=(
                f"Access at {local_hour}:00 is outside business hours "
                f"({hours.start_hour}:00 - {hours.end_hour}:00)"
            ),
            confidence=OFF_HOURS_CONFIDENCE,
            severity=Severity.HIGH if local_hour < 4 or local_hour >= 23 else Severity.MEDIUM,
            details={
                "local_hour": local_hour,
                "business_hours_start": hours.start_hour,
                "business_hours_end": hours.end_hour,
                "timezone": hours.timezone_name,
            },
        )

    async def _check_geographic(
        self,
        event: AccessEvent,
        config: OrgSecurityConfig,
        known_countries: Set[str],
    ) -> Optional[AnomalyIndicator]:
        country = event.country.upper() if event.country else None
        if not country or country == LOCAL_COUNTRY:
            return None
        # No history yet: nothing to compare against
        if not known_countries or country in known_countries:
            return None

        high_risk = country in config.high_risk_countries
        known = sorted(known_countries)
        return AnomalyIndicator(
            anomaly_type=AnomalyType.GEOGRAPHIC_ANOMALY,
            description=f"Access from {country}; user typically accesses from: {', '.join(known)}",
            confidence=GEO_HIGH_RISK_CONFIDENCE if high_risk else GEO_CONFIDENCE,
            severity=Severity.CRITICAL if high_risk else Severity.HIGH,
            details={
                "detected_country": country,
                "known_countries": known,
                "is_high_risk": high_risk,
                "ip": mask_ip(event.ip_address),
            },
        )

    async def _prior_daily_average(
        self, event: AccessEvent, kind: EventKind, days: int
    ) -> Tuple[int, float]:
        """Last-24h count and the daily average of the days before it."""
        counts = await self.tracker.get_counts(
            event.user_id, event.org_id, kind,
            {"day": DAY_SECONDS, "baseline": days * DAY_SECONDS},
            event.timestamp,
        )
        prior_days = max(1, days - 1)
        prior = max(0, counts["baseline"] - counts["day"])
        return counts["day"], prior / prior_days

    async def _check_unusual_pattern(
        self, event: AccessEvent, config: OrgSecurityConfig
    ) -> Optional[AnomalyIndicator]:
        settings = config.anomaly
        if event.action == AuditAction.EXPORT.value:
            today, average = await self._prior_daily_average(
                event, EventKind.EXPORT, settings.baseline_days
            )
            if average <= 0 or today <= average * settings.unusual_export_ratio:
                return None
            ratio = today / average
            return AnomalyIndicator(
                anomaly_type=AnomalyType.UNUSUAL_ACCESS_PATTERN,
                description=(
                    f"Export activity ({today}) is {ratio:.1f}x higher than usual "
                    f"(avg: {average:.1f})"
                ),
                confidence=min(0.9, (ratio - 1) / 5),
                severity=(
                    Severity.HIGH if today > average * settings.unusual_export_high_ratio
                    else Severity.MEDIUM
                ),
                details={
                    "metric": "daily_exports",
                    "average": round(average, 3),
                    "current": today,
                    "ratio": round(ratio, 3),
                },
            )

        if event.action == AuditAction.VIEW.value and event.resource == AuditResource.CLIENT.value:
            counts = await self.tracker.get_counts(
                event.user_id, event.org_id, EventKind.CLIENT_VIEW, {"hour": 3600}, event.timestamp
            )
            _, daily_average = await self._prior_daily_average(
                event, EventKind.CLIENT_VIEW, settings.baseline_days
            )
            current = counts["hour"]
            average = daily_average / 24
            if average <= 0 or current <= average * settings.unusual_view_ratio:
                return None
            ratio = current / average
            return AnomalyIndicator(
                anomaly_type=AnomalyType.UNUSUAL_ACCESS_PATTERN,
                description=f"Client view activity ({current}/hr) is {ratio:.1f}x higher than usual",
                confidence=min(0.85, (ratio - 1) / 10),
                severity=(
                    Severity.HIGH if current > average * settings.unusual_view_high_ratio
                    else Severity.MEDIUM
                ),
                details={
                    "metric": "hourly_client_views",
                    "average": round(average, 3),
                    "current": current,
                    "ratio": round(ratio, 3),
                },
            )
        return None

    async def _check_rapid_fire(
        self, event: AccessEvent, config: OrgSecurityConfig
    ) -> Optional[AnomalyIndicator]:
        settings = config.anomaly
        counts = await self.tracker.get_counts(
            event.user_id, event.org_id, EventKind.REQUEST, {"second": 1}, event.timestamp
        )
        recent = counts["second"]
        if recent <= settings.rapid_fire_per_second:
            return None
        return AnomalyIndicator(
            anomaly_type=AnomalyType.RAPID_FIRE_REQUESTS,
            description=f"Detected {recent} requests/second; possible automated access",
            confidence=min(0.95, recent / 20),
            severity=(
                Severity.CRITICAL if recent > settings.rapid_fire_critical_per_second
                else Severity.HIGH
            ),
            details={
                "requests_per_second": recent,
                "threshold": settings.rapid_fire_per_second,
            },
        )
