"""
Escalation Protocols and the Protocol Matcher.

A protocol is a named, ordered list of escalation steps guarded by weighted
trigger conditions.  The matcher scores every active protocol against an
assessment as ``satisfied weight / total weight`` and selects the highest
score of at least 0.5.  Equal scores keep the protocol registered first, so
selection is deterministic for a given catalog.

Protocols are frozen once built.  The running catalog only changes through
``ProtocolCatalog.update()``, which swaps the whole protocol and writes an
audit entry.  Escalations already running keep the copy they started with.

Default catalog (catalog order):

* ``critical-suicide-protocol`` -- emergency; alert the crisis team, then
  notify emergency services.
* ``high-risk-protocol``        -- urgent; assign a responder, falling back
  to a supervisor alert.
* ``medium-risk-protocol``      -- routine; scheduled responder follow-up.

DISCLAIMER: Protocols encode operational routing.  They do not prescribe
clinical care.
"""

from __future__ import annotations

import copy
import enum
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.models import INDICATOR_FLAGS, SEVERITY_ORDER, Assessment, ProtocolPriority, Severity

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ConditionType(str, enum.Enum):
    CONFIDENCE = "confidence"
    SEVERITY = "severity"
    INDICATOR = "indicator"
    PATTERN = "pattern"


class ConditionOperator(str, enum.Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    CONTAINS = "contains"


class StepAction(str, enum.Enum):
    NOTIFY = "notify"
    ASSIGN = "assign"
    ESCALATE = "escalate"
    INTERVENE = "intervene"
    ALERT = "alert"


class StepTarget(str, enum.Enum):
    PROFESSIONAL = "professional"
    SUPERVISOR = "supervisor"
    EMERGENCY_SERVICES = "emergency_services"
    CRISIS_TEAM = "crisis_team"


class StepMethod(str, enum.Enum):
    MESSAGE = "message"
    CALL = "call"
    ALERT = "alert"
    TRANSFER = "transfer"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProtocolValidationError(ValueError):
    """Raised when a protocol is structurally invalid or already registered."""
    pass


class ProtocolNotFoundError(KeyError):
    """Raised when a protocol id is not in the catalog."""
    pass


# ---------------------------------------------------------------------------
# Protocol models
# ---------------------------------------------------------------------------

class TriggerCondition(BaseModel):
    """One weighted predicate over an assessment.

    * ``confidence`` -- numeric comparison against ``assessment.confidence``.
    * ``severity``   -- ordinal comparison (low < medium < high < critical).
    * ``indicator``  -- ``value`` names an indicator flag that must be set.
    * ``pattern``    -- ``value`` is a substring looked for, case-insensitively,
      in ``assessment.risk_factors``.
    """

    model_config = ConfigDict(frozen=True)

    type: ConditionType
    operator: ConditionOperator
    value: Any
    weight: float = Field(default=1.0, gt=0, le=1)

    @field_validator("value")
    @classmethod
    def value_matches_type(cls, v: Any, info) -> Any:
        condition_type = info.data.get("type")
        if condition_type == ConditionType.CONFIDENCE:
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise ValueError("confidence conditions need a numeric value")
        elif condition_type == ConditionType.SEVERITY:
            return Severity(v)
        elif condition_type == ConditionType.INDICATOR:
            if v not in INDICATOR_FLAGS:
                raise ValueError(f"Unknown indicator '{v}'. Known: {list(INDICATOR_FLAGS)}")
        elif condition_type == ConditionType.PATTERN:
            if not isinstance(v, str) or not v.strip():
                raise ValueError("pattern conditions need a non-empty string value")
        return v


class EscalationStep(BaseModel):
    """One action in an escalation path, with an optional single-hop fallback."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    action: StepAction
    target: StepTarget
    method: StepMethod
    timeout_seconds: float = Field(
        ...,
        gt=0,
        description="Maximum time the step action may take before it counts as failed.",
    )
    fallback: Optional[EscalationStep] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("fallback")
    @classmethod
    def fallback_is_single_hop(cls, v: Optional[EscalationStep]) -> Optional[EscalationStep]:
        if v is not None and v.fallback is not None:
            raise ValueError(
                f"Fallback step '{v.step_id}' may not define its own fallback."
            )
        return v


EscalationStep.model_rebuild()


class EscalationProtocol(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol_id: str = Field(..., min_length=1)
    name: str
    trigger_conditions: list[TriggerCondition] = Field(..., min_length=1)
    priority: ProtocolPriority
    response_time_minutes: int = Field(..., gt=0)
    escalation_path: list[EscalationStep] = Field(..., min_length=1)
    required_approvals: list[str] = Field(default_factory=list)
    compliance_requirements: list[str] = Field(default_factory=list)
    active: bool = True

    @field_validator("escalation_path")
    @classmethod
    def step_ids_unique(cls, v: list[EscalationStep]) -> list[EscalationStep]:
        ids = [step.step_id for step in v]
        ids += [step.fallback.step_id for step in v if step.fallback is not None]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate step ids in escalation path: {sorted(duplicates)}")
        return v


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

DEFAULT_PROTOCOLS: list[EscalationProtocol] = [
    EscalationProtocol(
        protocol_id="critical-suicide-protocol",
        name="Critical Suicide Risk Protocol",
        trigger_conditions=[
            TriggerCondition(type="indicator", operator="contains", value="suicide_ideation", weight=1.0),
            TriggerCondition(type="confidence", operator="gte", value=0.8, weight=0.8),
            TriggerCondition(type="severity", operator="eq", value="critical", weight=1.0),
        ],
        priority=ProtocolPriority.EMERGENCY,
        response_time_minutes=2,
        escalation_path=[
            EscalationStep(
                step_id="immediate-professional-alert",
                action=StepAction.ALERT,
                target=StepTarget.CRISIS_TEAM,
                method=StepMethod.ALERT,
                timeout_seconds=60,
                metadata={"channels": ["sms", "email", "push"]},
            ),
            EscalationStep(
                step_id="emergency-services-notification",
                action=StepAction.NOTIFY,
                target=StepTarget.EMERGENCY_SERVICES,
                method=StepMethod.CALL,
                timeout_seconds=120,
            ),
        ],
        required_approvals=[],
        compliance_requirements=["hipaa", "crisis_response", "audit_trail"],
    ),
    EscalationProtocol(
        protocol_id="high-risk-protocol",
        name="High Risk Assessment Protocol",
        trigger_conditions=[
            TriggerCondition(type="severity", operator="eq", value="high", weight=0.9),
            TriggerCondition(type="confidence", operator="gte", value=0.6, weight=0.7),
        ],
        priority=ProtocolPriority.URGENT,
        response_time_minutes=15,
        escalation_path=[
            EscalationStep(
                step_id="professional-assignment",
                action=StepAction.ASSIGN,
                target=StepTarget.PROFESSIONAL,
                method=StepMethod.MESSAGE,
                timeout_seconds=600,
                fallback=EscalationStep(
                    step_id="supervisor-escalation",
                    action=StepAction.ESCALATE,
                    target=StepTarget.SUPERVISOR,
                    method=StepMethod.ALERT,
                    timeout_seconds=300,
                ),
                metadata={"assignment_type": "urgent_consultation"},
            ),
        ],
        required_approvals=["supervisor"],
        compliance_requirements=["hipaa", "professional_standards"],
    ),
    EscalationProtocol(
        protocol_id="medium-risk-protocol",
        name="Medium Risk Monitoring Protocol",
        trigger_conditions=[
            TriggerCondition(type="severity", operator="eq", value="medium", weight=0.8),
            TriggerCondition(type="confidence", operator="gte", value=0.4, weight=0.6),
        ],
        priority=ProtocolPriority.ROUTINE,
        response_time_minutes=60,
        escalation_path=[
            EscalationStep(
                step_id="scheduled-consultation",
                action=StepAction.ASSIGN,
                target=StepTarget.PROFESSIONAL,
                method=StepMethod.MESSAGE,
                timeout_seconds=1800,
                metadata={"assignment_type": "scheduled_followup"},
            ),
        ],
        compliance_requirements=["hipaa"],
    ),
]


# ---------------------------------------------------------------------------
# Protocol catalog
# ---------------------------------------------------------------------------

class ProtocolCatalog:
    """Ordered in-memory protocol registry.

    Registration order is selection order for tie-breaking.  ``get()``
    returns deep copies so callers cannot alter the running catalog.
    """

    def __init__(
        self,
        protocols: list[EscalationProtocol] | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._protocols: dict[str, EscalationProtocol] = {}
        self._audit_log = audit_log
        for protocol in (DEFAULT_PROTOCOLS if protocols is None else protocols):
            self.register(protocol)

    def register(self, protocol: EscalationProtocol) -> None:
        """Add a protocol at the end of the catalog.

        Raises:
            ProtocolValidationError: If ``protocol_id`` is already registered.
        """
        if protocol.protocol_id in self._protocols:
            raise ProtocolValidationError(
                f"Protocol '{protocol.protocol_id}' already registered. "
                "Use update() to modify an existing protocol."
            )
        self._protocols[protocol.protocol_id] = copy.deepcopy(protocol)

    def get(self, protocol_id: str) -> EscalationProtocol:
        if protocol_id not in self._protocols:
            raise ProtocolNotFoundError(f"No protocol registered with id '{protocol_id}'")
        return copy.deepcopy(self._protocols[protocol_id])

    def update(
        self,
        protocol: EscalationProtocol,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
    ) -> None:
        """Replace an existing protocol in place, keeping its catalog position.

        Raises:
            ProtocolNotFoundError: If the protocol is not registered.
        """
        if protocol.protocol_id not in self._protocols:
            raise ProtocolNotFoundError(
                f"Cannot update: no protocol registered with id '{protocol.protocol_id}'"
            )
        previous = self._protocols[protocol.protocol_id]
        self._protocols[protocol.protocol_id] = copy.deepcopy(protocol)

        logger.info(
            "protocol_updated",
            protocol_id=protocol.protocol_id,
            actor_id=actor_id,
            active=protocol.active,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.PROTOCOL_UPDATED,
                actor_id=actor_id,
                actor_role=actor_role,
                target_entity=protocol.protocol_id,
                metadata={
                    "previous_active": previous.active,
                    "active": protocol.active,
                    "priority": protocol.priority.value,
                    "step_ids": [s.step_id for s in protocol.escalation_path],
                },
            )

    def list_protocols(self) -> list[str]:
        """Protocol ids in catalog order."""
        return list(self._protocols.keys())

    def active(self) -> list[EscalationProtocol]:
        return [p for p in self._protocols.values() if p.active]

    def __len__(self) -> int:
        return len(self._protocols)

    def __contains__(self, protocol_id: str) -> bool:
        return protocol_id in self._protocols


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

def _compare(actual: float, operator: ConditionOperator, expected: float) -> bool:
    if operator == ConditionOperator.GT:
        return actual > expected
    if operator == ConditionOperator.GTE:
        return actual >= expected
    if operator == ConditionOperator.LT:
        return actual < expected
    if operator == ConditionOperator.LTE:
        return actual <= expected
    if operator == ConditionOperator.EQ:
        return actual == expected
    return False


def evaluate_condition(condition: TriggerCondition, assessment: Assessment) -> bool:
    """Whether ``assessment`` satisfies one trigger condition."""
    if condition.type == ConditionType.CONFIDENCE:
        return _compare(assessment.confidence, condition.operator, float(condition.value))

    if condition.type == ConditionType.SEVERITY:
        return _compare(
            SEVERITY_ORDER[assessment.severity],
            condition.operator,
            SEVERITY_ORDER[Severity(condition.value)],
        )

    if condition.type == ConditionType.INDICATOR:
        if condition.operator not in (ConditionOperator.CONTAINS, ConditionOperator.EQ):
            return False
        return bool(getattr(assessment.indicators, condition.value, False))

    if condition.type == ConditionType.PATTERN:
        needle = condition.value.lower()
        return any(needle in factor.lower() for factor in assessment.risk_factors)

    return False


class ProtocolMatcher:
    """Selects the best-fitting active protocol for an assessment."""

    min_score = 0.5

    def __init__(self, catalog: ProtocolCatalog) -> None:
        self._catalog = catalog

    @staticmethod
    def score(protocol: EscalationProtocol, assessment: Assessment) -> float:
        total = sum(c.weight for c in protocol.trigger_conditions)
        if total <= 0:
            return 0.0
        satisfied = sum(
            c.weight for c in protocol.trigger_conditions
            if evaluate_condition(c, assessment)
        )
        return satisfied / total

    def select(self, assessment: Assessment) -> Optional[EscalationProtocol]:
        """Return the highest-scoring protocol, or None when nothing reaches 0.5."""
        best: Optional[EscalationProtocol] = None
        best_score = 0.0

        for protocol in self._catalog.active():
            score = self.score(protocol, assessment)
            if score >= self.min_score and score > best_score:
                best = protocol
                best_score = score

        if best is not None:
            logger.info(
                "protocol_selected",
                assessment_id=assessment.assessment_id,
                protocol_id=best.protocol_id,
                score=round(best_score, 4),
            )
        return best


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_protocols_from_yaml(path: str | Path) -> list[EscalationProtocol]:
    """Load escalation protocols from a YAML file.

    The file needs a top-level ``protocols`` list::

        protocols:
          - protocol_id: "night-shift-protocol"
            name: "Night Shift Escalation"
            priority: "urgent"
            response_time_minutes: 20
            trigger_conditions:
              - {type: severity, operator: gte, value: high, weight: 1.0}
            escalation_path:
              - step_id: "on-call-assignment"
                action: assign
                target: professional
                method: message
                timeout_seconds: 300

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any protocol fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Protocol file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "protocols" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'protocols' key with a list of protocol objects."
        )

    entries = raw["protocols"]
    if not isinstance(entries, list):
        raise ValueError("'protocols' must be a list of protocol objects.")

    protocols: list[EscalationProtocol] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Protocol entry at index {idx} must be a mapping.")
        protocols.append(EscalationProtocol.model_validate(entry))

    return protocols
