"""
Safety Monitoring & Alerting.

Consumes safety events (crisis detected, escalation initiated, responder
assigned, intervention completed) into per-user rolling risk profiles, and
on a fixed interval recomputes platform metrics from those profiles and the
escalation repository:

    risk_fraction   = (high_risk_users + 2 * critical_risk_users) / max(active_users, 1)
    escalation_load = active_escalations / max_active_escalations
    response_penalty = max(0, avg_response_time - max_response_time) / max_response_time

    safety_score = 100 - 30*risk_fraction - 20*escalation_load
                       - 20*response_penalty - 10*unacknowledged_alerts

clamped to [0, 100] and rounded.  Only ``initiated`` and ``in_progress``
escalations count as active; the response time is averaged over
responder assignments started in the last 24 h.  Threshold breaches raise ``SafetyAlert``s.
An alert is suppressed while another alert of the same type with
overlapping affected users (or both system-wide) was raised inside the
cooldown window.

User risk score: each event in the last 24 h contributes its severity
weight (low 1, medium 2, high 3, critical 5) times a recency multiplier
``max(0.1, 1 - hours_ago / 24)``; the mean times 20, capped at 100.  A user
with no recent events sits at the base score of 10.

The periodic loop runs as its own asyncio task and never blocks request
paths.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.config import MonitoringThresholds
from crisisbridge.escalation import OPEN_STATUSES, EscalationRecord, EscalationStatus
from crisisbridge.models import Severity
from crisisbridge.repository import InMemoryRepository

logger = structlog.get_logger(__name__)

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 5,
}

BASE_RISK_SCORE = 10.0
MEDIUM_RISK_SCORE = 40.0
TREND_MARGIN = 5.0
HISTORY_LENGTH = 10
MAX_METRICS = 1000
MAX_EVENTS = 10_000

PROFILE_WINDOW = timedelta(hours=24)
METRICS_RETENTION = timedelta(hours=24)
EVENT_RETENTION = timedelta(days=7)
ACKNOWLEDGED_ALERT_RETENTION = timedelta(days=1)
PROFILE_IDLE_LIMIT = timedelta(days=7)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SafetyEventType(str, enum.Enum):
    CRISIS_DETECTED = "crisis_detected"
    ESCALATION_INITIATED = "escalation_initiated"
    PROFESSIONAL_ASSIGNED = "professional_assigned"
    INTERVENTION_COMPLETED = "intervention_completed"
    ALERT_TRIGGERED = "alert_triggered"


HISTORY_EVENT_TYPES = {
    SafetyEventType.CRISIS_DETECTED,
    SafetyEventType.ESCALATION_INITIATED,
    SafetyEventType.INTERVENTION_COMPLETED,
}


class AlertType(str, enum.Enum):
    USER_RISK = "user_risk"
    SYSTEM_OVERLOAD = "system_overload"
    RESPONSE_DELAY = "response_delay"
    TREND_ANOMALY = "trend_anomaly"


class Trend(str, enum.Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class SafetyEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: f"safety-event-{uuid.uuid4().hex[:16]}")
    user_id: str
    type: SafetyEventType
    severity: Severity
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False


class UserSafetyProfile(BaseModel):
    user_id: str
    current_risk_level: Severity = Severity.LOW
    risk_score: float = Field(default=BASE_RISK_SCORE, ge=0, le=100)
    safety_score: float = Field(default=100 - BASE_RISK_SCORE, ge=0, le=100)
    trend: Trend = Trend.STABLE
    crisis_indicators: list[str] = Field(default_factory=list)
    escalation_history: list[SafetyEvent] = Field(default_factory=list)
    last_activity: datetime
    last_updated: datetime


class SafetyAlert(BaseModel):
    alert_id: str = Field(default_factory=lambda: f"safety-alert-{uuid.uuid4().hex[:16]}")
    type: AlertType
    severity: Severity
    title: str
    description: str
    affected_users: list[str] = Field(default_factory=list)
    triggered_at: datetime
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_details: Optional[str] = None


class SafetyMetrics(BaseModel):
    timestamp: datetime
    active_users: int = 0
    high_risk_users: int = 0
    critical_risk_users: int = 0
    active_escalations: int = 0
    pending_escalations: int = 0
    resolved_escalations: int = 0
    average_response_time: float = Field(default=0.0, description="Minutes.")
    safety_score: int = Field(default=100, ge=0, le=100)
    alerts_triggered: int = 0
    unacknowledged_alerts: int = 0
    interventions_successful: int = 0


class AlertNotFoundError(KeyError):
    """Raised when an alert id is unknown."""
    pass


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class SafetyMonitor:
    """Rolling user profiles, platform metrics and throttled alerts."""

    def __init__(
        self,
        thresholds: MonitoringThresholds | None = None,
        escalations: InMemoryRepository[EscalationRecord] | None = None,
        audit_log: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._thresholds = thresholds or MonitoringThresholds()
        self._escalations = escalations
        self._audit_log = audit_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._events: deque[SafetyEvent] = deque(maxlen=MAX_EVENTS)
        self._events_by_user: dict[str, deque[SafetyEvent]] = {}
        self._profiles: dict[str, UserSafetyProfile] = {}
        self._alerts: list[SafetyAlert] = []
        self._metrics: list[SafetyMetrics] = []
        self._task: Optional[asyncio.Task] = None
        self._cleanup_hooks: list[Callable[[datetime], dict[str, int]]] = []

    @property
    def thresholds(self) -> MonitoringThresholds:
        return self._thresholds.model_copy()

    # -- events and profiles --

    def record_event(
        self,
        user_id: str,
        event_type: SafetyEventType,
        severity: Severity,
        details: dict[str, Any] | None = None,
    ) -> SafetyEvent:
        now = self._clock()
        event = SafetyEvent(
            user_id=user_id,
            type=event_type,
            severity=severity,
            timestamp=now,
            details=details or {},
        )
        if len(self._events) == MAX_EVENTS:
            self._forget_oldest_event()
        self._events.append(event)
        self._events_by_user.setdefault(user_id, deque()).append(event)

        profile = self._profiles.get(user_id)
        if profile is None:
            profile = UserSafetyProfile(user_id=user_id, last_activity=now, last_updated=now)
            self._profiles[user_id] = profile
        profile.last_activity = now
        self._refresh_profile(profile)

        logger.info(
            "safety_event_recorded",
            event_id=event.event_id,
            user_id=user_id,
            type=event_type.value,
            severity=severity.value,
        )
        return event

    def _forget_oldest_event(self) -> None:
        oldest = self._events.popleft()
        user_events = self._events_by_user.get(oldest.user_id)
        if user_events:
            user_events.popleft()
            if not user_events:
                del self._events_by_user[oldest.user_id]

    def _risk_level(self, risk_score: float) -> Severity:
        if risk_score >= self._thresholds.critical_risk_score:
            return Severity.CRITICAL
        if risk_score >= self._thresholds.high_risk_score:
            return Severity.HIGH
        if risk_score >= MEDIUM_RISK_SCORE:
            return Severity.MEDIUM
        return Severity.LOW

    def _refresh_profile(self, profile: UserSafetyProfile) -> None:
        now = self._clock()
        user_events = self._events_by_user.get(profile.user_id, ())
        recent = [e for e in user_events if e.timestamp > now - PROFILE_WINDOW]

        risk_score = BASE_RISK_SCORE
        if recent:
            total = 0.0
            for event in recent:
                hours_ago = (now - event.timestamp).total_seconds() / 3600
                total += SEVERITY_WEIGHTS[event.severity] * max(0.1, 1 - hours_ago / 24)
            risk_score = min(100.0, total / len(recent) * 20)

        safety_score = max(0.0, 100 - risk_score)
        if safety_score > profile.safety_score + TREND_MARGIN:
            profile.trend = Trend.IMPROVING
        elif safety_score < profile.safety_score - TREND_MARGIN:
            profile.trend = Trend.DECLINING
        else:
            profile.trend = Trend.STABLE

        profile.risk_score = risk_score
        profile.safety_score = safety_score
        profile.current_risk_level = self._risk_level(risk_score)
        profile.crisis_indicators = [
            indicator
            for e in recent if e.type == SafetyEventType.CRISIS_DETECTED
            for indicator in e.details.get("indicators", [])
        ]
        profile.escalation_history = [
            e for e in user_events if e.type in HISTORY_EVENT_TYPES
        ][-HISTORY_LENGTH:]
        profile.last_updated = now

    def get_profile(self, user_id: str) -> Optional[UserSafetyProfile]:
        """The user's profile refreshed to now, or None for unknown users."""
        profile = self._profiles.get(user_id)
        if profile is not None:
            self._refresh_profile(profile)
        return profile

    def profiles(self) -> list[UserSafetyProfile]:
        return list(self._profiles.values())

    # -- metrics --

    def update_metrics(self) -> SafetyMetrics:
        now = self._clock()
        for profile in self._profiles.values():
            self._refresh_profile(profile)

        active_profiles = [
            p for p in self._profiles.values() if p.last_activity > now - PROFILE_WINDOW
        ]
        high = sum(1 for p in active_profiles if p.current_risk_level == Severity.HIGH)
        critical = sum(1 for p in active_profiles if p.current_risk_level == Severity.CRITICAL)

        records = self._escalations.list() if self._escalations is not None else []
        active = [r for r in records if r.status in OPEN_STATUSES]
        pending = sum(1 for r in records if r.status == EscalationStatus.INITIATED)
        resolved = sum(1 for r in records if r.status == EscalationStatus.RESOLVED)
        successful = sum(
            1 for r in records
            if r.status != EscalationStatus.FAILED and any(s.success for s in r.steps)
        )
        response_times = [
            r.estimated_response_time for r in records
            if r.professional_id is not None
            and r.estimated_response_time is not None
            and r.status != EscalationStatus.FAILED
            and r.started_at > now - PROFILE_WINDOW
        ]
        average_response = sum(response_times) / len(response_times) if response_times else 0.0

        unacknowledged = sum(1 for a in self._alerts if not a.acknowledged and not a.resolved)

        t = self._thresholds
        risk_fraction = (high + critical * 2) / max(len(active_profiles), 1)
        escalation_load = len(active) / max(t.max_active_escalations, 1)
        response_penalty = (
            max(0.0, average_response - t.max_response_time_minutes) / t.max_response_time_minutes
        )
        score = 100 - risk_fraction * 30 - escalation_load * 20 - response_penalty * 20 - unacknowledged * 10

        metrics = SafetyMetrics(
            timestamp=now,
            active_users=len(active_profiles),
            high_risk_users=high,
            critical_risk_users=critical,
            active_escalations=len(active),
            pending_escalations=pending,
            resolved_escalations=resolved,
            average_response_time=average_response,
            safety_score=round(max(0.0, min(100.0, score))),
            alerts_triggered=len(self._alerts),
            unacknowledged_alerts=unacknowledged,
            interventions_successful=successful,
        )
        self._metrics.append(metrics)
        if len(self._metrics) > MAX_METRICS:
            self._metrics = self._metrics[-MAX_METRICS:]

        logger.debug(
            "safety_metrics_updated",
            active_users=metrics.active_users,
            high_risk_users=high,
            critical_risk_users=critical,
            active_escalations=metrics.active_escalations,
            safety_score=metrics.safety_score,
        )
        return metrics

    def check_thresholds(self) -> list[SafetyAlert]:
        """Raise alerts for the latest metrics; returns newly created alerts."""
        metrics = self.current_metrics()
        if metrics is None:
            return []

        t = self._thresholds
        now = self._clock()
        raised: list[SafetyAlert] = []

        def users_at(level: Severity) -> list[str]:
            return sorted(
                p.user_id for p in self._profiles.values()
                if p.current_risk_level == level and p.last_activity > now - PROFILE_WINDOW
            )

        candidates: list[tuple[AlertType, Severity, str, str, list[str]]] = []
        if metrics.high_risk_users > metrics.active_users * t.high_risk_fraction:
            share = round(metrics.high_risk_users / max(metrics.active_users, 1) * 100)
            candidates.append((
                AlertType.USER_RISK, Severity.HIGH,
                "High Number of High-Risk Users",
                f"{metrics.high_risk_users} users currently at high risk ({share}% of active users)",
                users_at(Severity.HIGH),
            ))
        if metrics.critical_risk_users > 0:
            candidates.append((
                AlertType.USER_RISK, Severity.CRITICAL,
                "Critical Risk Users Detected",
                f"{metrics.critical_risk_users} users currently at critical risk requiring immediate attention",
                users_at(Severity.CRITICAL),
            ))
        if metrics.active_escalations > t.max_active_escalations:
            candidates.append((
                AlertType.SYSTEM_OVERLOAD, Severity.HIGH,
                "System Overload - High Escalation Volume",
                f"{metrics.active_escalations} active escalations exceed threshold of {t.max_active_escalations}",
                [],
            ))
        if metrics.average_response_time > t.max_response_time_minutes:
            candidates.append((
                AlertType.RESPONSE_DELAY, Severity.MEDIUM,
                "Slow Professional Response Times",
                f"Average response time of {metrics.average_response_time:.1f} minutes exceeds "
                f"threshold of {t.max_response_time_minutes} minutes",
                [],
            ))
        if metrics.safety_score < t.min_safety_score:
            candidates.append((
                AlertType.TREND_ANOMALY, Severity.MEDIUM,
                "Low Overall Safety Score",
                f"Platform safety score of {metrics.safety_score} is below minimum threshold of {t.min_safety_score}",
                [],
            ))

        for alert_type, severity, title, description, users in candidates:
            alert = self.create_alert(alert_type, severity, title, description, users)
            if alert is not None:
                raised.append(alert)
        return raised

    # -- alerts --

    def _in_cooldown(self, alert_type: AlertType, users: list[str]) -> Optional[SafetyAlert]:
        window = timedelta(minutes=self._thresholds.alert_cooldown_minutes)
        now = self._clock()
        for existing in self._alerts:
            if existing.type != alert_type:
                continue
            if now - existing.triggered_at >= window:
                continue
            both_system_wide = not existing.affected_users and not users
            if both_system_wide or set(existing.affected_users) & set(users):
                return existing
        return None

    def create_alert(
        self,
        alert_type: AlertType,
        severity: Severity,
        title: str,
        description: str,
        affected_users: list[str] | None = None,
    ) -> Optional[SafetyAlert]:
        """Create an alert unless an overlapping one is inside the cooldown.

        Returns:
            The new alert, or None when suppressed.
        """
        users = list(affected_users or [])
        existing = self._in_cooldown(alert_type, users)
        if existing is not None:
            logger.debug(
                "safety_alert_suppressed",
                alert_type=alert_type.value,
                existing_alert_id=existing.alert_id,
            )
            return None

        alert = SafetyAlert(
            type=alert_type,
            severity=severity,
            title=title,
            description=description,
            affected_users=users,
            triggered_at=self._clock(),
        )
        self._alerts.append(alert)

        logger.warning(
            "safety_alert_created",
            alert_id=alert.alert_id,
            type=alert_type.value,
            severity=severity.value,
            title=title,
            affected_users_count=len(users),
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ALERT_RAISED,
                target_entity=alert.alert_id,
                metadata={
                    "type": alert_type.value,
                    "severity": severity.value,
                    "affected_users_count": len(users),
                },
            )
        return alert

    def _require_alert(self, alert_id: str) -> SafetyAlert:
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                return alert
        raise AlertNotFoundError(f"No alert with id '{alert_id}'")

    def acknowledge_alert(self, alert_id: str, actor_id: str, actor_role: str = "SUPERVISOR") -> SafetyAlert:
        alert = self._require_alert(alert_id)
        alert.acknowledged = True
        alert.acknowledged_by = actor_id
        alert.acknowledged_at = self._clock()

        logger.info("safety_alert_acknowledged", alert_id=alert_id, acknowledged_by=actor_id)
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ALERT_ACKNOWLEDGED,
                actor_id=actor_id,
                actor_role=actor_role,
                target_entity=alert_id,
                metadata={"type": alert.type.value, "severity": alert.severity.value},
            )
        return alert

    def resolve_alert(
        self,
        alert_id: str,
        actor_id: str,
        resolution_details: str,
        actor_role: str = "SUPERVISOR",
    ) -> SafetyAlert:
        if not resolution_details.strip():
            raise ValueError("Resolution details are required to resolve an alert.")
        alert = self._require_alert(alert_id)
        now = self._clock()
        if not alert.acknowledged:
            alert.acknowledged = True
            alert.acknowledged_by = actor_id
            alert.acknowledged_at = now
        alert.resolved = True
        alert.resolved_by = actor_id
        alert.resolved_at = now
        alert.resolution_details = resolution_details

        logger.info("safety_alert_resolved", alert_id=alert_id, resolved_by=actor_id)
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ALERT_RESOLVED,
                actor_id=actor_id,
                actor_role=actor_role,
                target_entity=alert_id,
                metadata={"type": alert.type.value, "resolution_details": resolution_details},
            )
        return alert

    # -- maintenance --

    def add_cleanup_hook(self, hook: Callable[[datetime], dict[str, int]]) -> None:
        """Run ``hook(now)`` on every cleanup; its counts are merged into the result."""
        self._cleanup_hooks.append(hook)

    def cleanup(self) -> dict[str, int]:
        """Drop data past retention; returns how much of each kind was kept."""
        now = self._clock()
        self._metrics = [m for m in self._metrics if m.timestamp > now - METRICS_RETENTION]
        while self._events and self._events[0].timestamp <= now - EVENT_RETENTION:
            self._forget_oldest_event()
        self._alerts = [
            a for a in self._alerts
            if not a.acknowledged
            or (a.acknowledged_at is not None and a.acknowledged_at > now - ACKNOWLEDGED_ALERT_RETENTION)
        ]
        for user_id in [
            uid for uid, p in self._profiles.items() if p.last_activity < now - PROFILE_IDLE_LIMIT
        ]:
            del self._profiles[user_id]

        kept = {
            "metrics": len(self._metrics),
            "events": len(self._events),
            "alerts": len(self._alerts),
            "profiles": len(self._profiles),
        }
        for hook in self._cleanup_hooks:
            kept.update(hook(now))
        logger.debug("safety_monitoring_cleanup", **kept)
        return kept

    def update_thresholds(self, **changes: Any) -> MonitoringThresholds:
        """Merge and re-validate thresholds.  Raises pydantic.ValidationError."""
        merged = {**self._thresholds.model_dump(), **changes}
        self._thresholds = MonitoringThresholds.model_validate(merged)
        logger.info("safety_thresholds_updated", updated=sorted(changes))
        return self.thresholds

    # -- background loop --

    async def _loop(self) -> None:
        last_cleanup = time.monotonic()
        while True:
            try:
                self.update_metrics()
                self.check_thresholds()
                if time.monotonic() - last_cleanup >= self._thresholds.cleanup_interval_seconds:
                    self.cleanup()
                    last_cleanup = time.monotonic()
            except Exception as exc:
                logger.error("safety_monitoring_cycle_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.sleep(self._thresholds.update_interval_seconds)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="safety-monitor")
        logger.info(
            "safety_monitoring_started",
            update_interval_seconds=self._thresholds.update_interval_seconds,
            cleanup_interval_seconds=self._thresholds.cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("safety_monitoring_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- queries --

    def current_metrics(self) -> Optional[SafetyMetrics]:
        return self._metrics[-1] if self._metrics else None

    def metrics_history(self, hours: float = 24) -> list[SafetyMetrics]:
        cutoff = self._clock() - timedelta(hours=hours)
        return [m for m in self._metrics if m.timestamp > cutoff]

    def active_alerts(self) -> list[SafetyAlert]:
        return [a for a in self._alerts if not a.acknowledged and not a.resolved]

    def all_alerts(self) -> list[SafetyAlert]:
        return list(self._alerts)

    def recent_events(self, hours: float = 1) -> list[SafetyEvent]:
        cutoff = self._clock() - timedelta(hours=hours)
        return [e for e in self._events if e.timestamp > cutoff]
