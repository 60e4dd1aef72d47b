"""
Tests for crisisbridge.monitoring -- SafetyMonitor.

Covers: profile risk scoring with recency decay, risk levels and trend,
crisis indicator and history tracking, platform metrics from profiles and
escalation records, the safety score formula, threshold alerts, alert
cooldown rules, acknowledgement and resolution, retention cleanup,
cleanup hooks, the per-user event cap, threshold updates, and the background loop.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.config import MonitoringThresholds
from crisisbridge.escalation import EscalationRecord, EscalationStatus, StepExecution
from crisisbridge.models import ProtocolPriority, Severity
from crisisbridge import monitoring
from crisisbridge.monitoring import (
    AlertNotFoundError,
    AlertType,
    SafetyEventType,
    SafetyMonitor,
    Trend,
)
from crisisbridge.repository import InMemoryRepository


NOW = datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _record(status: EscalationStatus, succeeded: bool = False, **fields) -> EscalationRecord:
    record = EscalationRecord(
        user_id=fields.pop("user_id", "user_x"),
        session_id="session_x",
        assessment_id="assessment_x",
        protocol_id="high-risk-protocol",
        severity=Severity.HIGH,
        priority=ProtocolPriority.URGENT,
        status=status,
        **fields,
    )
    if succeeded:
        record.steps.append(StepExecution(step_id="professional-assignment", success=True))
    return record


def _escalations(*records: EscalationRecord) -> InMemoryRepository[EscalationRecord]:
    repository = InMemoryRepository(lambda r: r.escalation_id, entity_name="escalation")
    for record in records:
        repository.save(record)
    return repository


def _populated_monitor(clock: _Clock, audit_log: AuditLog | None = None) -> SafetyMonitor:
    """user_a critical (100), user_b high (80), user_c low (20)."""
    monitor = SafetyMonitor(clock=clock, audit_log=audit_log)
    monitor.record_event("user_a", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
    monitor.record_event("user_b", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
    monitor.record_event("user_b", SafetyEventType.ESCALATION_INITIATED, Severity.HIGH)
    monitor.record_event("user_c", SafetyEventType.CRISIS_DETECTED, Severity.LOW)
    return monitor


# ---------------------------------------------------------------------------
# 1. User profiles
# ---------------------------------------------------------------------------

class TestProfiles:
    def test_critical_event_drives_profile_to_critical(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.record_event(
            "user_1", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL,
            {"indicators": ["suicide_ideation", "self_harm"]},
        )
        profile = monitor.get_profile("user_1")

        assert profile.risk_score == pytest.approx(100)
        assert profile.safety_score == pytest.approx(0)
        assert profile.current_risk_level == Severity.CRITICAL
        assert profile.trend == Trend.DECLINING
        assert profile.crisis_indicators == ["suicide_ideation", "self_harm"]
        assert len(profile.escalation_history) == 1

    def test_mean_of_weighted_events(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
        monitor.record_event("user_1", SafetyEventType.ESCALATION_INITIATED, Severity.HIGH)
        profile = monitor.get_profile("user_1")
        assert profile.risk_score == pytest.approx(80)
        assert profile.current_risk_level == Severity.HIGH

    def test_recency_decay_and_improving_trend(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.HIGH)
        assert monitor.get_profile("user_1").current_risk_level == Severity.MEDIUM

        clock.advance(hours=12)
        profile = monitor.get_profile("user_1")

        assert profile.risk_score == pytest.approx(30)
        assert profile.current_risk_level == Severity.LOW
        assert profile.trend == Trend.IMPROVING

    def test_events_outside_window_fall_back_to_base(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
        clock.advance(hours=25)
        profile = monitor.get_profile("user_1")
        assert profile.risk_score == pytest.approx(10)
        assert profile.safety_score == pytest.approx(90)
        assert profile.crisis_indicators == []

    def test_history_keeps_last_ten_relevant_events(self):
        monitor = SafetyMonitor(clock=_Clock())
        for _ in range(12):
            monitor.record_event("user_1", SafetyEventType.ESCALATION_INITIATED, Severity.MEDIUM)
        monitor.record_event("user_1", SafetyEventType.PROFESSIONAL_ASSIGNED, Severity.MEDIUM)
        profile = monitor.get_profile("user_1")
        assert len(profile.escalation_history) == 10
        assert all(e.type == SafetyEventType.ESCALATION_INITIATED for e in profile.escalation_history)

    def test_other_users_events_do_not_leak(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
        monitor.record_event("user_2", SafetyEventType.ESCALATION_INITIATED, Severity.LOW)
        assert monitor.get_profile("user_2").risk_score == pytest.approx(20)
        assert monitor.get_profile("user_2").escalation_history[0].user_id == "user_2"
        assert monitor.get_profile("user_1").risk_score == pytest.approx(100)

    def test_event_cap_evicts_oldest_from_profile(self, monkeypatch):
        monkeypatch.setattr(monitoring, "MAX_EVENTS", 3)
        monitor = SafetyMonitor(clock=_Clock())
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.CRITICAL)
        for _ in range(3):
            monitor.record_event("user_2", SafetyEventType.PROFESSIONAL_ASSIGNED, Severity.LOW)
        monitor.record_event("user_1", SafetyEventType.PROFESSIONAL_ASSIGNED, Severity.LOW)

        assert len(monitor.recent_events()) == 3
        # Only the latest low event is left for user_1.
        assert monitor.get_profile("user_1").risk_score == pytest.approx(20)

    def test_unknown_user(self):
        assert SafetyMonitor().get_profile("nobody") is None


# ---------------------------------------------------------------------------
# 2. Metrics
# ---------------------------------------------------------------------------

class TestMetrics:
    def test_no_data_scores_one_hundred(self):
        metrics = SafetyMonitor(clock=_Clock()).update_metrics()
        assert metrics.active_users == 0
        assert metrics.safety_score == 100

    def test_risk_fraction_from_profiles(self):
        monitor = _populated_monitor(_Clock())
        metrics = monitor.update_metrics()

        assert metrics.active_users == 3
        assert metrics.high_risk_users == 1
        assert metrics.critical_risk_users == 1
        # (1 + 2*1) / 3 active users -> full 30 point deduction
        assert metrics.safety_score == 70

    def test_escalation_figures(self):
        repository = _escalations(
            _record(EscalationStatus.IN_PROGRESS, succeeded=True, professional_id="prof_1", estimated_response_time=45),
            _record(EscalationStatus.INITIATED),
            _record(EscalationStatus.RESOLVED, succeeded=True),
            _record(EscalationStatus.FAILED, succeeded=True),
        )
        monitor = SafetyMonitor(escalations=repository, clock=_Clock())
        metrics = monitor.update_metrics()

        assert metrics.active_escalations == 2
        assert metrics.pending_escalations == 1
        assert metrics.resolved_escalations == 1
        assert metrics.interventions_successful == 2
        assert metrics.average_response_time == pytest.approx(45)
        # 100 - 20*(2/50) - 20*((45-15)/15)
        assert metrics.safety_score == 59

    def test_escalated_records_are_not_active_load(self):
        repository = _escalations(*(
            _record(EscalationStatus.ESCALATED, succeeded=True, user_id=f"user_{i}") for i in range(4)
        ))
        monitor = SafetyMonitor(
            thresholds=MonitoringThresholds(max_active_escalations=3),
            escalations=repository,
            clock=_Clock(),
        )
        metrics = monitor.update_metrics()

        assert metrics.active_escalations == 0
        assert metrics.safety_score == 100
        assert monitor.check_thresholds() == []

    def test_response_time_uses_recent_assignments(self):
        repository = _escalations(
            _record(
                EscalationStatus.ESCALATED,
                professional_id="prof_1",
                estimated_response_time=20,
                started_at=NOW - timedelta(hours=1),
            ),
            _record(
                EscalationStatus.RESOLVED,
                professional_id="prof_2",
                estimated_response_time=90,
                started_at=NOW - timedelta(hours=30),
            ),
        )
        monitor = SafetyMonitor(escalations=repository, clock=_Clock())
        assert monitor.update_metrics().average_response_time == pytest.approx(20)

    def test_score_clamped_at_zero(self):
        monitor = SafetyMonitor(clock=_Clock())
        for i in range(12):
            monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", [f"user_{i}"])
        assert monitor.update_metrics().safety_score == 0

    def test_history_window(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        monitor.update_metrics()
        clock.advance(hours=2)
        monitor.update_metrics()
        assert len(monitor.metrics_history(hours=1)) == 1
        assert len(monitor.metrics_history()) == 2
        assert monitor.current_metrics().timestamp == clock.now


# ---------------------------------------------------------------------------
# 3. Threshold alerts
# ---------------------------------------------------------------------------

class TestThresholdAlerts:
    def test_no_metrics_no_alerts(self):
        assert SafetyMonitor().check_thresholds() == []

    def test_user_risk_alerts(self):
        audit_log = AuditLog()
        monitor = _populated_monitor(_Clock(), audit_log)
        monitor.update_metrics()

        raised = monitor.check_thresholds()

        assert [(a.type, a.severity) for a in raised] == [
            (AlertType.USER_RISK, Severity.HIGH),
            (AlertType.USER_RISK, Severity.CRITICAL),
        ]
        assert raised[0].affected_users == ["user_b"]
        assert raised[1].affected_users == ["user_a"]
        assert len(audit_log.query(event_type=AuditEventType.ALERT_RAISED)) == 2

    def test_repeat_check_is_suppressed_but_score_alert_fires(self):
        monitor = _populated_monitor(_Clock())
        monitor.update_metrics()
        monitor.check_thresholds()

        metrics = monitor.update_metrics()
        assert metrics.unacknowledged_alerts == 2
        assert metrics.safety_score == 50

        raised = monitor.check_thresholds()
        assert [(a.type, a.severity) for a in raised] == [(AlertType.TREND_ANOMALY, Severity.MEDIUM)]

    def test_overload_and_response_delay(self):
        repository = _escalations(
            _record(EscalationStatus.IN_PROGRESS, professional_id="prof_1", estimated_response_time=45),
            _record(EscalationStatus.INITIATED),
        )
        monitor = SafetyMonitor(
            thresholds=MonitoringThresholds(max_active_escalations=1),
            escalations=repository,
            clock=_Clock(),
        )
        monitor.update_metrics()
        types = {a.type for a in monitor.check_thresholds()}
        assert types == {AlertType.SYSTEM_OVERLOAD, AlertType.RESPONSE_DELAY, AlertType.TREND_ANOMALY}


# ---------------------------------------------------------------------------
# 4. Cooldown
# ---------------------------------------------------------------------------

class TestCooldown:
    def test_overlapping_users_suppressed(self):
        monitor = SafetyMonitor(clock=_Clock())
        first = monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", ["user_1", "user_2"])
        second = monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", ["user_2"])
        assert first is not None
        assert second is None

    def test_disjoint_users_not_suppressed(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", ["user_1"])
        assert monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", ["user_2"]) is not None

    def test_same_type_suppressed_regardless_of_severity(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.create_alert(AlertType.USER_RISK, Severity.HIGH, "t", "d", ["user_1"])
        assert monitor.create_alert(AlertType.USER_RISK, Severity.CRITICAL, "t", "d", ["user_1"]) is None

    def test_other_type_not_suppressed(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d")
        assert monitor.create_alert(AlertType.RESPONSE_DELAY, Severity.HIGH, "t", "d") is not None

    def test_system_wide_alerts_suppressed_until_window_ends(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        assert monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d") is not None
        clock.advance(minutes=29)
        assert monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d") is None
        clock.advance(minutes=1)
        assert monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d") is not None


# ---------------------------------------------------------------------------
# 5. Acknowledge and resolve
# ---------------------------------------------------------------------------

class TestAlertHandling:
    def test_acknowledge(self):
        audit_log = AuditLog()
        monitor = SafetyMonitor(audit_log=audit_log, clock=_Clock())
        alert = monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d")

        monitor.acknowledge_alert(alert.alert_id, "sup_1")

        assert alert.acknowledged is True
        assert alert.acknowledged_by == "sup_1"
        assert alert.acknowledged_at == NOW
        assert monitor.active_alerts() == []
        entry = audit_log.query(event_type=AuditEventType.ALERT_ACKNOWLEDGED)[0]
        assert entry.actor_role == "SUPERVISOR"

    def test_resolve_acknowledges_too(self):
        monitor = SafetyMonitor(clock=_Clock())
        alert = monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d")

        monitor.resolve_alert(alert.alert_id, "sup_1", "Added on-call capacity")

        assert alert.resolved is True
        assert alert.acknowledged is True
        assert alert.resolution_details == "Added on-call capacity"

    def test_resolve_requires_details(self):
        monitor = SafetyMonitor(clock=_Clock())
        alert = monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d")
        with pytest.raises(ValueError):
            monitor.resolve_alert(alert.alert_id, "sup_1", " ")
        assert alert.resolved is False

    def test_unknown_alert(self):
        monitor = SafetyMonitor()
        with pytest.raises(AlertNotFoundError):
            monitor.acknowledge_alert("safety-alert-missing", "sup_1")


# ---------------------------------------------------------------------------
# 6. Cleanup and thresholds
# ---------------------------------------------------------------------------

class TestMaintenance:
    def test_cleanup_drops_expired_data(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.HIGH)
        monitor.update_metrics()
        acknowledged = monitor.create_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "t", "d")
        monitor.acknowledge_alert(acknowledged.alert_id, "sup_1")
        pending = monitor.create_alert(AlertType.RESPONSE_DELAY, Severity.MEDIUM, "t", "d")

        clock.advance(days=8)
        kept = monitor.cleanup()

        assert kept == {"metrics": 0, "events": 0, "alerts": 1, "profiles": 0}
        assert [a.alert_id for a in monitor.all_alerts()] == [pending.alert_id]

    def test_cleanup_keeps_recent_data(self):
        monitor = SafetyMonitor(clock=_Clock())
        monitor.record_event("user_1", SafetyEventType.CRISIS_DETECTED, Severity.HIGH)
        monitor.update_metrics()
        assert monitor.cleanup() == {"metrics": 1, "events": 1, "alerts": 0, "profiles": 1}
        assert len(monitor.recent_events()) == 1

    def test_cleanup_runs_hooks_with_current_time(self):
        clock = _Clock()
        monitor = SafetyMonitor(clock=clock)
        seen = []

        def hook(now):
            seen.append(now)
            return {"channels": 2}

        monitor.add_cleanup_hook(hook)
        clock.advance(hours=1)
        kept = monitor.cleanup()

        assert seen == [NOW + timedelta(hours=1)]
        assert kept["channels"] == 2
        assert kept["events"] == 0

    def test_update_thresholds(self):
        monitor = SafetyMonitor()
        updated = monitor.update_thresholds(max_active_escalations=10)
        assert updated.max_active_escalations == 10
        assert monitor.thresholds.max_active_escalations == 10

    def test_invalid_threshold_update_keeps_previous(self):
        monitor = SafetyMonitor()
        with pytest.raises(ValidationError):
            monitor.update_thresholds(critical_risk_score=50)
        assert monitor.thresholds.critical_risk_score == 85

    def test_thresholds_property_is_a_copy(self):
        monitor = SafetyMonitor()
        copy = monitor.thresholds
        copy.max_active_escalations = 1
        assert monitor.thresholds.max_active_escalations == 50


# ---------------------------------------------------------------------------
# 7. Background loop
# ---------------------------------------------------------------------------

class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        monitor = SafetyMonitor(thresholds=MonitoringThresholds(update_interval_seconds=0.01))
        monitor.start()
        assert monitor.running is True
        await asyncio.sleep(0.05)
        assert monitor.current_metrics() is not None

        await monitor.stop()
        assert monitor.running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        monitor = SafetyMonitor(thresholds=MonitoringThresholds(update_interval_seconds=0.01))
        monitor.start()
        task = monitor._task
        monitor.start()
        assert monitor._task is task
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_stop_loop(self, monkeypatch):
        monitor = SafetyMonitor(thresholds=MonitoringThresholds(update_interval_seconds=0.01))
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("metrics store unavailable")

        monkeypatch.setattr(monitor, "update_metrics", flaky)
        monitor.start()
        await asyncio.sleep(0.05)
        assert monitor.running is True
        assert len(calls) >= 2
        await monitor.stop()
