"""
Risk Fusion Engine -- combines extractor outputs into one Assessment.

Confidence is the weighted sum of the extractor confidences (weights from
``DetectionSettings.fusion_weights``).  Indicator flags are OR-combined and
risk factors concatenated with duplicates removed, first occurrence kept.
Below ``min_confidence`` no assessment is produced.

Severity rules:

* suicide ideation or self-harm             -> ``critical`` (any confidence)
* confidence > 0.8 or >= 3 indicators       -> ``high``
* confidence > 0.6 or >= 2 indicators       -> ``medium``
* otherwise                                 -> ``low``

``immediate`` is set when confidence > 0.8 or severity is critical.
"""

from __future__ import annotations

from typing import Optional

from crisisbridge.config import DetectionSettings
from crisisbridge.extractors import SignalAnalysis
from crisisbridge.models import (
    ActionPriority,
    ActionTarget,
    ActionType,
    Assessment,
    CrisisAction,
    CrisisIndicators,
    Severity,
)


def determine_severity(confidence: float, indicators: CrisisIndicators) -> Severity:
    if indicators.has_critical():
        return Severity.CRITICAL

    count = indicators.active_count()
    if confidence > 0.8 or count >= 3:
        return Severity.HIGH
    if confidence > 0.6 or count >= 2:
        return Severity.MEDIUM
    return Severity.LOW


def is_immediate(confidence: float, severity: Severity) -> bool:
    return confidence > 0.8 or severity == Severity.CRITICAL


def recommend_actions(confidence: float, indicators: CrisisIndicators) -> list[CrisisAction]:
    """Build the recommended follow-up actions; crisis resources are always included."""
    actions: list[CrisisAction] = []

    if confidence > 0.8 or indicators.has_critical():
        actions.append(CrisisAction(
            type=ActionType.ESCALATE,
            priority=ActionPriority.IMMEDIATE,
            description="Immediate professional intervention required",
            target=ActionTarget.PROFESSIONAL,
            metadata={"escalation_level": "critical"},
        ))
    elif confidence > 0.6:
        actions.append(CrisisAction(
            type=ActionType.ESCALATE,
            priority=ActionPriority.URGENT,
            description="Urgent professional consultation recommended",
            target=ActionTarget.PROFESSIONAL,
            metadata={"escalation_level": "high"},
        ))

    actions.append(CrisisAction(
        type=ActionType.RESOURCES,
        priority=ActionPriority.IMMEDIATE,
        description="Provide immediate crisis resources and hotlines",
        target=ActionTarget.USER,
        metadata={"resource_type": "crisis_hotlines"},
    ))

    if confidence > 0.4:
        actions.append(CrisisAction(
            type=ActionType.MONITOR,
            priority=ActionPriority.URGENT,
            description="Increase monitoring for continued risk assessment",
            target=ActionTarget.PROFESSIONAL,
            metadata={"monitoring_level": "elevated"},
        ))

    return actions


class RiskFusionEngine:
    """Fuses the four extractor analyses into an ``Assessment``."""

    def __init__(self, settings: DetectionSettings | None = None) -> None:
        self._settings = settings or DetectionSettings()

    def combine(
        self,
        lexical: SignalAnalysis,
        structural: SignalAnalysis,
        contextual: SignalAnalysis,
        behavioral: SignalAnalysis,
    ) -> SignalAnalysis:
        """Weighted confidence, OR-ed indicators, de-duplicated risk factors."""
        weights = self._settings.fusion_weights
        weighted = [
            (lexical, weights.lexical),
            (structural, weights.structural),
            (contextual, weights.contextual),
            (behavioral, weights.behavioral),
        ]

        confidence = 0.0
        indicators = CrisisIndicators()
        risk_factors: list[str] = []
        for analysis, weight in weighted:
            confidence += analysis.confidence * weight
            indicators.merge(analysis.indicators)
            for factor in analysis.risk_factors:
                if factor not in risk_factors:
                    risk_factors.append(factor)

        return SignalAnalysis(min(confidence, 1.0), indicators, risk_factors)

    def build_assessment(
        self,
        user_id: str,
        session_id: str,
        message: str,
        lexical: SignalAnalysis,
        structural: SignalAnalysis,
        contextual: SignalAnalysis,
        behavioral: SignalAnalysis,
    ) -> Optional[Assessment]:
        """Return an ``Assessment``, or None when combined confidence is too low."""
        combined = self.combine(lexical, structural, contextual, behavioral)
        if combined.confidence < self._settings.min_confidence:
            return None

        severity = determine_severity(combined.confidence, combined.indicators)
        return Assessment(
            user_id=user_id,
            session_id=session_id,
            indicators=combined.indicators,
            severity=severity,
            confidence=combined.confidence,
            context=message,
            risk_factors=combined.risk_factors,
            recommended_actions=recommend_actions(combined.confidence, combined.indicators),
            immediate=is_immediate(combined.confidence, severity),
        )
