"""
Escalation Transparency Report Generator.

Builds a structured report from an escalation record for supervisor and
compliance review: the protocol that fired, the severity and crisis type,
the responder and channel assigned, a timeline of every step (fallbacks
marked), and the reasoning chain from the assessment that triggered it.

Message content never appears in a report; only identifiers, outcomes
and step errors do.

DISCLAIMER: Transparency reports are decision-support summaries for human
review.  They do not constitute clinical assessments, diagnoses, or
treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from crisisbridge.escalation import EscalationRecord, EscalationStatus
from crisisbridge.models import Assessment


class TransparencyReport:
    """A structured Escalation Transparency Report."""

    def __init__(
        self,
        escalation_id: str,
        user_id: str,
        protocol_id: str,
        severity: str,
        crisis_type: str,
        status: str,
        outcome: str,
        professional_id: str | None,
        channel_id: str | None,
        timeline: list[dict[str, Any]],
        reasoning_chain: list[str],
        retention_policy: str,
        generated_at: str,
    ) -> None:
        self.escalation_id = escalation_id
        self.user_id = user_id
        self.protocol_id = protocol_id
        self.severity = severity
        self.crisis_type = crisis_type
        self.status = status
        self.outcome = outcome
        self.professional_id = professional_id
        self.channel_id = channel_id
        self.timeline = timeline
        self.reasoning_chain = reasoning_chain
        self.retention_policy = retention_policy
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Escalation Transparency Report",
            "disclaimer": (
                "This report is a decision-support summary for human review. "
                "It does not constitute a clinical assessment or diagnosis."
            ),
            "escalation_id": self.escalation_id,
            "user_id": self.user_id,
            "protocol_id": self.protocol_id,
            "severity": self.severity,
            "crisis_type": self.crisis_type,
            "status": self.status,
            "outcome": self.outcome,
            "professional_id": self.professional_id,
            "channel_id": self.channel_id,
            "timeline": self.timeline,
            "reasoning_chain": self.reasoning_chain,
            "retention_policy": self.retention_policy,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"TransparencyReport(escalation_id={self.escalation_id}, "
            f"protocol={self.protocol_id}, status={self.status})"
        )


def generate_transparency_report(
    record: EscalationRecord,
    assessment: Assessment | None = None,
) -> TransparencyReport:
    """Generate a transparency report from an escalation record.

    Args:
        record: The escalation record.
        assessment: The triggering assessment, when still at hand; its
            reasoning and risk factors become the reasoning chain.
    """
    if assessment is not None:
        reasoning = [
            f"Assessment {assessment.assessment_id}: severity {assessment.severity.value}, "
            f"confidence {assessment.confidence:.2f}"
            + (", immediate intervention" if assessment.immediate else "")
        ]
        if assessment.risk_factors:
            reasoning.append("Risk factors: " + ", ".join(assessment.risk_factors))
        flags = assessment.indicators.active_flags()
        if flags:
            reasoning.append("Indicators: " + ", ".join(flags))
        for action in assessment.recommended_actions:
            reasoning.append(f"Recommended {action.type.value} ({action.priority.value}): {action.description}")
    else:
        reasoning = [
            f"Protocol {record.protocol_id} triggered for a {record.severity.value} "
            f"{record.crisis_type} assessment ({record.assessment_id})."
        ]

    return TransparencyReport(
        escalation_id=record.escalation_id,
        user_id=record.user_id,
        protocol_id=record.protocol_id,
        severity=record.severity.value,
        crisis_type=record.crisis_type,
        status=record.status.value,
        outcome=record.outcome,
        professional_id=record.professional_id,
        channel_id=record.channel_id,
        timeline=_build_timeline(record),
        reasoning_chain=reasoning,
        retention_policy=record.compliance.retention_policy,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(record: EscalationRecord) -> list[dict[str, Any]]:
    """Chronological timeline of the escalation and its steps."""
    events: list[dict[str, Any]] = [{
        "event": EscalationStatus.INITIATED.value,
        "timestamp": record.started_at.isoformat(),
        "description": f"Escalation opened under protocol {record.protocol_id}.",
    }]

    for step in record.steps:
        label = "Fallback step" if step.is_fallback else "Step"
        if step.success:
            description = f"{label} {step.step_id} succeeded."
        else:
            description = f"{label} {step.step_id} failed: {step.error or 'unknown error'}."
        events.append({
            "event": "step_executed",
            "timestamp": step.executed_at.isoformat(),
            "step_id": step.step_id,
            "success": step.success,
            "is_fallback": step.is_fallback,
            "duration_ms": step.duration_ms,
            "description": description,
        })

    if record.resolved_at is not None and record.status != EscalationStatus.IN_PROGRESS:
        descriptions = {
            EscalationStatus.ESCALATED: "Protocol executed; case handed to human responders.",
            EscalationStatus.RESOLVED: f"Resolved. Outcome: {record.outcome}",
            EscalationStatus.FAILED: "Orchestration failed; manual follow-up required.",
        }
        events.append({
            "event": record.status.value,
            "timestamp": record.resolved_at.isoformat(),
            "description": descriptions.get(record.status, record.outcome),
        })

    return events
