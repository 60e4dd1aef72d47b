"""
False-Positive Filter -- discounts assessments that only look like crises.

Four independent heuristics run against the raw message in a fixed order
and compound multiplicatively:

1. Negation ("I don't want to hurt myself")                 x0.3
2. Low historical risk (only above 0.7 confidence)          x0.7
3. Professional / clinical discussion (therapist, diagnosis) x0.5
4. Hypothetical or narrative content ("what if", "a story about") x0.4

Each applied filter is appended to ``risk_factors`` for auditability.
Afterwards severity and ``immediate`` are recomputed; below the minimum
confidence the assessment is discarded.  The filter only ever lowers
confidence.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Optional

from crisisbridge.config import DetectionSettings
from crisisbridge.extractors import normalize_text
from crisisbridge.fusion import determine_severity, is_immediate
from crisisbridge.models import AnalysisContext, Assessment


NEGATION_PATTERNS: list[re.Pattern] = [
    re.compile(r"\b(not|no|never|don't|doesn't|isn't|aren't|wasn't|weren't|won't|can't|cannot)\s+(want|feel|think|going)\s+to\b"),
    re.compile(r"\b(not|no)\s+(suicidal|depressed|anxious|harming|myself)\b"),
    re.compile(r"\bdon't\s+(kill|hurt)\s+myself\b"),
    re.compile(r"\bwould\s+never\s+(kill|hurt)\s+myself\b"),
    re.compile(r"\b(not|no)\s+reason\s+to\s+(kill|hurt)\s+myself\b"),
]

PROFESSIONAL_PATTERNS: list[re.Pattern] = [
    re.compile(r"\b(therapist|psychologist|counselor|doctor|psychiatrist)\b"),
    re.compile(r"\b(treatment|therapy|medication|counseling)\b"),
    re.compile(r"\b(diagnosis|diagnosed|assessment|evaluation)\b"),
    re.compile(r"\b(clinical|professional|medical)\b"),
    re.compile(r"\b(suicide\s+prevention|crisis\s+intervention)\b"),
]

HYPOTHETICAL_PATTERNS: list[re.Pattern] = [
    re.compile(r"\b(if|what\s+if|suppose|imagine|hypothetical|hypothetically)\b"),
    re.compile(r"\b(story|movie|book|article|news)\s+(about|regarding)\b"),
    re.compile(r"\b(someone|people|they)\s+(who|that)\b"),
    re.compile(r"\b(example|scenario)\b"),
    re.compile(r"\b(discussing|talking\s+about|reading\s+about)\b"),
]

NEUTRAL_HISTORICAL_RISK = 0.5


def detect_negation(text: str) -> bool:
    normalized = normalize_text(text)
    return any(p.search(normalized) for p in NEGATION_PATTERNS)


def detect_professional_context(text: str) -> bool:
    normalized = normalize_text(text)
    return any(p.search(normalized) for p in PROFESSIONAL_PATTERNS)


def detect_hypothetical_content(text: str) -> bool:
    normalized = normalize_text(text)
    return any(p.search(normalized) for p in HYPOTHETICAL_PATTERNS)


def historical_risk(user_history: Any) -> float:
    """Historical risk in [0, 1] from an opaque user history object.

    Understands anything exposing a 0-100 ``risk_score`` (a
    ``UserSafetyProfile`` or a mapping).  Without usable history the
    neutral value 0.5 is returned, which never triggers the discount.
    """
    score = None
    if isinstance(user_history, Mapping):
        score = user_history.get("risk_score")
    elif user_history is not None:
        score = getattr(user_history, "risk_score", None)

    if isinstance(score, (int, float)) and not isinstance(score, bool):
        return max(0.0, min(float(score) / 100.0, 1.0))
    return NEUTRAL_HISTORICAL_RISK


class FalsePositiveFilter:
    """Applies the four discounts to an assessment in place."""

    def __init__(self, settings: DetectionSettings | None = None) -> None:
        self._settings = settings or DetectionSettings()

    def apply(
        self,
        assessment: Assessment,
        context: AnalysisContext | None = None,
    ) -> Optional[Assessment]:
        """Discount ``assessment`` and return it, or None if it no longer qualifies."""
        discounts = self._settings.filter_discounts
        text = assessment.context
        confidence = assessment.confidence
        applied: list[str] = []

        if detect_negation(text):
            confidence *= discounts.negation
            applied.append("negation_detected")

        if confidence > self._settings.historical_check_min_confidence:
            history = context.user_history if context is not None else None
            if historical_risk(history) < self._settings.low_historical_risk:
                confidence *= discounts.low_historical_risk
                applied.append("low_historical_risk")

        if detect_professional_context(text):
            confidence *= discounts.professional_context
            applied.append("professional_context")

        if detect_hypothetical_content(text):
            confidence *= discounts.hypothetical_content
            applied.append("hypothetical_content")

        assessment.confidence = min(confidence, assessment.confidence)
        assessment.risk_factors.extend(applied)
        assessment.severity = determine_severity(assessment.confidence, assessment.indicators)
        assessment.immediate = is_immediate(assessment.confidence, assessment.severity)

        if assessment.confidence < self._settings.min_confidence:
            return None
        return assessment
