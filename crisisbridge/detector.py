"""
Crisis Detector -- the assessment pipeline.

    message -> extractors -> fusion -> false-positive filter -> Assessment | None

The pipeline fails safe.  If any extractor, the fusion engine or the
filter raises, the caller still receives a minimal low-confidence
assessment tagged ``analysis_error`` and the failure is logged and
audited with the failing stage.  A missed detection is preferable to a
crashed conversation, but it must never be silent.
"""

from __future__ import annotations

import time
from typing import Optional

import structlog

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.config import DetectionSettings
from crisisbridge.extractors import (
    BehavioralExtractor,
    ContextualExtractor,
    LexicalExtractor,
    RiskPattern,
    StructuralExtractor,
)
from crisisbridge.filters import FalsePositiveFilter
from crisisbridge.fusion import RiskFusionEngine
from crisisbridge.knowledge import KnowledgeBase
from crisisbridge.models import AnalysisContext, Assessment, Severity

logger = structlog.get_logger(__name__)


class CrisisDetector:
    """Runs the extractors, fusion and filter for one inbound message."""

    def __init__(
        self,
        settings: DetectionSettings | None = None,
        knowledge_base: KnowledgeBase | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._settings = settings or DetectionSettings()
        self._audit_log = audit_log
        self.lexical = LexicalExtractor()
        self.structural = StructuralExtractor()
        self.contextual = ContextualExtractor(self.lexical, knowledge_base, self._settings)
        self.behavioral = BehavioralExtractor()
        self.fusion = RiskFusionEngine(self._settings)
        self.filter = FalsePositiveFilter(self._settings)

    async def analyze(
        self,
        user_id: str,
        session_id: str,
        message: str,
        context: AnalysisContext | None = None,
        apply_filters: bool = True,
    ) -> Optional[Assessment]:
        """Assess one message.

        Args:
            user_id: The user who sent the message.
            session_id: The conversation session.
            message: Raw UTF-8 message text.
            context: Conversation history, user history and session metadata.
            apply_filters: Skip the false-positive filter when False.

        Returns:
            The assessment, or None when no crisis is detected.  Never raises
            for analysis failures.
        """
        context = context or AnalysisContext()
        started = time.perf_counter()
        stage = "extraction"

        try:
            lexical = self.lexical.analyze(message)
            structural = self.structural.analyze(message)
            contextual = await self.contextual.analyze(message, context)
            behavioral = self.behavioral.analyze(context)

            stage = "fusion"
            assessment = self.fusion.build_assessment(
                user_id, session_id, message, lexical, structural, contextual, behavioral
            )
            if assessment is None:
                return None

            original_confidence = assessment.confidence
            if apply_filters:
                stage = "filter"
                filtered = self.filter.apply(assessment, context)
                if filtered is None:
                    self._record_suppressed(assessment, original_confidence)
                    return None
                assessment = filtered

        except Exception as exc:
            return self._fail_safe(user_id, session_id, message, stage, exc)

        logger.info(
            "crisis_assessment_completed",
            user_id=user_id,
            session_id=session_id,
            assessment_id=assessment.assessment_id,
            confidence=round(assessment.confidence, 4),
            original_confidence=round(original_confidence, 4),
            severity=assessment.severity.value,
            indicators=assessment.indicators.active_flags(),
            analysis_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ASSESSMENT_COMPLETED,
                subject_id=user_id,
                target_entity=assessment.assessment_id,
                metadata={
                    "session_id": session_id,
                    "confidence": assessment.confidence,
                    "severity": assessment.severity.value,
                    "indicators": assessment.indicators.active_flags(),
                    "risk_factors": list(assessment.risk_factors),
                    "immediate": assessment.immediate,
                },
            )
        return assessment

    def update_patterns(
        self,
        keywords: dict[str, tuple[float, Optional[str]]] | None = None,
        regexes: list[RiskPattern] | None = None,
    ) -> None:
        """Add or re-weight lexical terms and append structural patterns."""
        if keywords:
            self.lexical.add_terms(keywords)
        if regexes:
            self.structural.add_patterns(regexes)

        logger.info(
            "crisis_patterns_updated",
            new_keywords=len(keywords or {}),
            new_patterns=len(regexes or []),
        )

    # -- helpers --

    def _record_suppressed(self, assessment: Assessment, original_confidence: float) -> None:
        filters_applied = [
            f for f in assessment.risk_factors
            if f in ("negation_detected", "low_historical_risk", "professional_context", "hypothetical_content")
        ]
        logger.info(
            "crisis_assessment_suppressed",
            user_id=assessment.user_id,
            session_id=assessment.session_id,
            original_confidence=round(original_confidence, 4),
            filtered_confidence=round(assessment.confidence, 4),
            filters_applied=filters_applied,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ASSESSMENT_SUPPRESSED,
                subject_id=assessment.user_id,
                target_entity=assessment.assessment_id,
                metadata={
                    "session_id": assessment.session_id,
                    "original_confidence": original_confidence,
                    "filtered_confidence": assessment.confidence,
                    "filters_applied": filters_applied,
                },
            )

    def _fail_safe(
        self,
        user_id: str,
        session_id: str,
        message: str,
        stage: str,
        exc: Exception,
    ) -> Assessment:
        logger.error(
            "crisis_detection_failed",
            user_id=user_id,
            session_id=session_id,
            stage=stage,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        assessment = Assessment(
            user_id=user_id,
            session_id=session_id,
            severity=Severity.LOW,
            confidence=self._settings.fail_safe_confidence,
            context=message,
            risk_factors=["analysis_error", f"failed_stage:{stage}"],
            immediate=False,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ASSESSMENT_FAILED,
                subject_id=user_id,
                target_entity=assessment.assessment_id,
                metadata={"session_id": session_id, "stage": stage, "error": str(exc)},
            )
        return assessment
