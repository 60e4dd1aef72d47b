"""
Tests for crisisbridge.protocols -- Protocol catalog and matcher.

Covers: default catalog, condition evaluation per type, weighted scoring,
selection thresholds, deterministic tie-breaking, inactive protocols,
catalog copy semantics and audited updates, model validation (single-hop
fallbacks, unique steps, typed condition values), and YAML loading.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.models import Assessment, CrisisIndicators, Severity
from crisisbridge.protocols import (
    DEFAULT_PROTOCOLS,
    ConditionOperator,
    ConditionType,
    EscalationProtocol,
    EscalationStep,
    ProtocolCatalog,
    ProtocolMatcher,
    ProtocolNotFoundError,
    ProtocolValidationError,
    TriggerCondition,
    evaluate_condition,
    load_protocols_from_yaml,
)


def _assessment(
    confidence: float = 0.5,
    severity: Severity = Severity.MEDIUM,
    context: str = "",
    risk_factors: list[str] | None = None,
    **flags,
) -> Assessment:
    return Assessment(
        user_id="user_1",
        session_id="session_1",
        indicators=CrisisIndicators(**flags),
        severity=severity,
        confidence=confidence,
        context=context,
        risk_factors=risk_factors or [],
    )


def _step(step_id: str = "notify-1", **overrides) -> EscalationStep:
    fields = {
        "step_id": step_id,
        "action": "notify",
        "target": "crisis_team",
        "method": "alert",
        "timeout_seconds": 30,
    }
    fields.update(overrides)
    return EscalationStep(**fields)


def _protocol(protocol_id: str, conditions: list[TriggerCondition], **overrides) -> EscalationProtocol:
    fields = {
        "protocol_id": protocol_id,
        "name": protocol_id,
        "trigger_conditions": conditions,
        "priority": "urgent",
        "response_time_minutes": 10,
        "escalation_path": [_step()],
    }
    fields.update(overrides)
    return EscalationProtocol(**fields)


# ---------------------------------------------------------------------------
# 1. Default catalog
# ---------------------------------------------------------------------------

class TestDefaultCatalog:
    def test_three_default_protocols_in_order(self):
        catalog = ProtocolCatalog()
        assert catalog.list_protocols() == [
            "critical-suicide-protocol",
            "high-risk-protocol",
            "medium-risk-protocol",
        ]

    def test_high_risk_step_has_supervisor_fallback(self):
        high = ProtocolCatalog().get("high-risk-protocol")
        step = high.escalation_path[0]
        assert step.timeout_seconds == 600
        assert step.fallback.step_id == "supervisor-escalation"
        assert step.fallback.timeout_seconds == 300


# ---------------------------------------------------------------------------
# 2. Condition evaluation
# ---------------------------------------------------------------------------

class TestConditionEvaluation:
    def test_confidence_operators(self):
        assessment = _assessment(confidence=0.6)
        gte = TriggerCondition(type="confidence", operator="gte", value=0.6)
        gt = TriggerCondition(type="confidence", operator="gt", value=0.6)
        assert evaluate_condition(gte, assessment) is True
        assert evaluate_condition(gt, assessment) is False

    def test_severity_is_ordinal(self):
        condition = TriggerCondition(type="severity", operator="gte", value="high")
        assert evaluate_condition(condition, _assessment(severity=Severity.CRITICAL)) is True
        assert evaluate_condition(condition, _assessment(severity=Severity.MEDIUM)) is False

    def test_indicator(self):
        condition = TriggerCondition(type="indicator", operator="contains", value="self_harm")
        assert evaluate_condition(condition, _assessment(self_harm=True)) is True
        assert evaluate_condition(condition, _assessment()) is False

    def test_pattern_matches_risk_factors(self):
        condition = TriggerCondition(type="pattern", operator="contains", value="Rapid_Messaging")
        assessment = _assessment(risk_factors=["lexical:panic attack", "rapid_messaging"])
        assert evaluate_condition(condition, assessment) is True
        assert evaluate_condition(condition, _assessment(risk_factors=["lexical:panic attack"])) is False

    def test_pattern_ignores_message_text(self):
        condition = TriggerCondition(type="pattern", operator="contains", value="rapid_messaging")
        assert evaluate_condition(condition, _assessment(context="my rapid_messaging text")) is False

    def test_protocol_selected_from_risk_factor_evidence(self):
        catalog = ProtocolCatalog([_protocol(
            "rapid-protocol",
            conditions=[TriggerCondition(type="pattern", operator="contains", value="rapid_messaging")],
        )])
        matcher = ProtocolMatcher(catalog)
        assert matcher.select(_assessment(risk_factors=["rapid_messaging"])).protocol_id == "rapid-protocol"
        assert matcher.select(_assessment(context="rapid_messaging")) is None


# ---------------------------------------------------------------------------
# 3. Scoring and selection
# ---------------------------------------------------------------------------

class TestSelection:
    def test_critical_statement_selects_emergency_protocol(self):
        matcher = ProtocolMatcher(ProtocolCatalog())
        assessment = _assessment(
            confidence=0.44, severity=Severity.CRITICAL, suicide_ideation=True, self_harm=True,
        )
        critical = ProtocolCatalog().get("critical-suicide-protocol")
        assert ProtocolMatcher.score(critical, assessment) == pytest.approx(2.0 / 2.8)
        assert matcher.select(assessment).protocol_id == "critical-suicide-protocol"

    def test_high_severity_selects_high_protocol(self):
        matcher = ProtocolMatcher(ProtocolCatalog())
        assessment = _assessment(confidence=0.85, severity=Severity.HIGH)
        assert matcher.select(assessment).protocol_id == "high-risk-protocol"

    def test_medium_severity_selects_medium_protocol(self):
        matcher = ProtocolMatcher(ProtocolCatalog())
        assessment = _assessment(confidence=0.38, severity=Severity.MEDIUM)
        assert matcher.select(assessment).protocol_id == "medium-risk-protocol"

    def test_low_severity_selects_nothing(self):
        matcher = ProtocolMatcher(ProtocolCatalog())
        assert matcher.select(_assessment(confidence=0.35, severity=Severity.LOW)) is None

    def test_ties_go_to_first_registered(self):
        condition = TriggerCondition(type="severity", operator="eq", value="medium")
        catalog = ProtocolCatalog([_protocol("first", [condition]), _protocol("second", [condition])])
        matcher = ProtocolMatcher(catalog)
        for _ in range(5):
            assert matcher.select(_assessment()).protocol_id == "first"

    def test_inactive_protocols_are_skipped(self):
        condition = TriggerCondition(type="severity", operator="eq", value="medium")
        catalog = ProtocolCatalog([
            _protocol("disabled", [condition], active=False),
            _protocol("enabled", [condition]),
        ])
        assert ProtocolMatcher(catalog).select(_assessment()).protocol_id == "enabled"


# ---------------------------------------------------------------------------
# 4. Catalog
# ---------------------------------------------------------------------------

class TestCatalog:
    def test_duplicate_registration_rejected(self):
        catalog = ProtocolCatalog()
        with pytest.raises(ProtocolValidationError):
            catalog.register(DEFAULT_PROTOCOLS[0])

    def test_get_unknown_raises(self):
        with pytest.raises(ProtocolNotFoundError):
            ProtocolCatalog().get("missing")

    def test_update_keeps_position_and_audits(self):
        audit_log = AuditLog()
        catalog = ProtocolCatalog(audit_log=audit_log)
        updated = DEFAULT_PROTOCOLS[1].model_copy(update={"active": False})

        catalog.update(updated, actor_id="admin_1", actor_role="ADMIN")

        assert catalog.list_protocols()[1] == "high-risk-protocol"
        assert catalog.get("high-risk-protocol").active is False
        entries = audit_log.query(event_type=AuditEventType.PROTOCOL_UPDATED)
        assert len(entries) == 1
        assert entries[0].actor_id == "admin_1"

    def test_update_unknown_raises(self):
        with pytest.raises(ProtocolNotFoundError):
            ProtocolCatalog([]).update(DEFAULT_PROTOCOLS[0])

    def test_len_and_contains(self):
        catalog = ProtocolCatalog()
        assert len(catalog) == 3
        assert "medium-risk-protocol" in catalog


# ---------------------------------------------------------------------------
# 5. Model validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_fallback_cannot_chain(self):
        inner = _step("inner")
        middle = _step("middle", fallback=inner)
        with pytest.raises(ValidationError, match="may not define its own fallback"):
            _step("outer", fallback=middle)

    def test_duplicate_step_ids_rejected(self):
        condition = TriggerCondition(type="confidence", operator="gte", value=0.5)
        with pytest.raises(ValidationError, match="Duplicate step ids"):
            _protocol("p", [condition], escalation_path=[_step("a"), _step("b", fallback=_step("a"))])

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            _step(timeout_seconds=0)

    def test_unknown_indicator_rejected(self):
        with pytest.raises(ValidationError, match="Unknown indicator"):
            TriggerCondition(type="indicator", operator="contains", value="loneliness")

    def test_severity_value_coerced(self):
        condition = TriggerCondition(type="severity", operator="eq", value="high")
        assert condition.value == Severity.HIGH
        assert condition.type == ConditionType.SEVERITY
        assert condition.operator == ConditionOperator.EQ

    def test_empty_pattern_rejected(self):
        with pytest.raises(ValidationError, match="non-empty string"):
            TriggerCondition(type="pattern", operator="contains", value="  ")

    def test_protocols_are_frozen(self):
        with pytest.raises(ValidationError):
            DEFAULT_PROTOCOLS[0].active = False


# ---------------------------------------------------------------------------
# 6. YAML loading
# ---------------------------------------------------------------------------

class TestYamlLoading:
    def _write(self, data) -> Path:
        f = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False)
        yaml.safe_dump(data, f)
        f.close()
        return Path(f.name)

    def test_load_valid_file(self):
        path = self._write({"protocols": [{
            "protocol_id": "night-shift-protocol",
            "name": "Night Shift Escalation",
            "priority": "urgent",
            "response_time_minutes": 20,
            "trigger_conditions": [{"type": "severity", "operator": "gte", "value": "high"}],
            "escalation_path": [{
                "step_id": "on-call-assignment",
                "action": "assign",
                "target": "professional",
                "method": "message",
                "timeout_seconds": 300,
            }],
        }]})
        protocols = load_protocols_from_yaml(path)
        assert [p.protocol_id for p in protocols] == ["night-shift-protocol"]

    def test_missing_top_level_key(self):
        with pytest.raises(ValueError, match="protocols"):
            load_protocols_from_yaml(self._write({"other": []}))

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_protocols_from_yaml("/nonexistent/protocols.yaml")

    def test_invalid_protocol_rejected(self):
        path = self._write({"protocols": [{"protocol_id": "broken"}]})
        with pytest.raises(ValidationError):
            load_protocols_from_yaml(path)
