"""
Signal Extractors -- independent partial risk analyses of one message.

Four extractors each look at a different kind of evidence and return a
``SignalAnalysis`` (partial confidence, indicator flags, risk factors):

* **Lexical**    -- weighted crisis phrases found as substrings.
* **Structural** -- regular-expression risk statements.
* **Contextual** -- crisis-adjacent knowledge-base passages and repeated
  crisis language in recent turns.
* **Behavioral** -- session metadata (time of day, message rate, duration).

Extractors hold only their pattern tables.  Analyzing a message never
mutates them, so running the same message twice yields the same result.
The fusion engine combines the four analyses.

DISCLAIMER: Phrase and pattern matches are routing heuristics for human
review, not clinical findings.
"""

from __future__ import annotations

import asyncio
import re
from typing import Optional

import structlog

from crisisbridge.config import DetectionSettings
from crisisbridge.knowledge import KnowledgeBase
from crisisbridge.models import INDICATOR_FLAGS, AnalysisContext, CrisisIndicators

logger = structlog.get_logger(__name__)


class SignalAnalysis:
    """Partial result of one extractor."""

    def __init__(
        self,
        confidence: float = 0.0,
        indicators: CrisisIndicators | None = None,
        risk_factors: list[str] | None = None,
    ) -> None:
        self.confidence = confidence
        self.indicators = indicators or CrisisIndicators()
        self.risk_factors = risk_factors or []

    def __repr__(self) -> str:
        return (
            f"SignalAnalysis(confidence={self.confidence:.3f}, "
            f"indicators={self.indicators.active_flags()}, risk_factors={self.risk_factors})"
        )


def normalize_text(text: str) -> str:
    """Lower-case and fold typographic apostrophes so "can’t" matches "can't"."""
    return text.replace("’", "'").replace("‘", "'").lower()


# ---------------------------------------------------------------------------
# Lexical
# ---------------------------------------------------------------------------

# phrase -> (severity weight, indicator flag)
DEFAULT_CRISIS_TERMS: dict[str, tuple[float, Optional[str]]] = {
    # Suicide ideation
    "kill myself": (0.95, "suicide_ideation"),
    "end my life": (0.95, "suicide_ideation"),
    "suicide": (0.90, "suicide_ideation"),
    "want to die": (0.85, "suicide_ideation"),
    "better off dead": (0.85, "suicide_ideation"),
    "no reason to live": (0.80, "suicide_ideation"),
    "tired of living": (0.75, "suicide_ideation"),
    # Self-harm
    "cut myself": (0.80, "self_harm"),
    "self harm": (0.75, "self_harm"),
    "hurt myself": (0.70, "self_harm"),
    "burn myself": (0.70, "self_harm"),
    # Severe depression
    "worthless": (0.60, "severe_depression"),
    "hopeless": (0.65, "severe_depression"),
    "no future": (0.60, "severe_depression"),
    "give up": (0.55, "severe_depression"),
    # Acute anxiety
    "panic attack": (0.50, "acute_anxiety"),
    "can't breathe": (0.55, "acute_anxiety"),
    "heart racing": (0.45, "acute_anxiety"),
    "terrified": (0.50, "acute_anxiety"),
    # Substance abuse; "drugs" is low because context matters
    "overdose": (0.70, "substance_abuse"),
    "drink myself to death": (0.65, "substance_abuse"),
    "drugs": (0.40, "substance_abuse"),
    # Eating disorders
    "starve myself": (0.60, "eating_disorder"),
    "binge": (0.35, "eating_disorder"),
    "purge": (0.45, "eating_disorder"),
}


def _check_indicator(indicator: Optional[str], source: str) -> None:
    if indicator is not None and indicator not in INDICATOR_FLAGS:
        raise ValueError(
            f"Unknown indicator '{indicator}' for '{source}'. Known: {list(INDICATOR_FLAGS)}"
        )


class LexicalExtractor:
    """Weighted phrase lookup; confidence is the mean matched weight."""

    def __init__(self, terms: dict[str, tuple[float, Optional[str]]] | None = None) -> None:
        self._terms: dict[str, tuple[float, Optional[str]]] = dict(
            terms if terms is not None else DEFAULT_CRISIS_TERMS
        )

    def add_terms(self, terms: dict[str, tuple[float, Optional[str]]]) -> None:
        """Add or re-weight terms.  Nothing is applied if any entry is invalid."""
        for phrase, (weight, indicator) in terms.items():
            if not 0 <= weight <= 1:
                raise ValueError(f"Weight for '{phrase}' must be in [0, 1], got {weight}")
            _check_indicator(indicator, phrase)
        for phrase, (weight, indicator) in terms.items():
            self._terms[phrase.lower()] = (weight, indicator)

    @property
    def terms(self) -> dict[str, tuple[float, Optional[str]]]:
        return dict(self._terms)

    def analyze(self, text: str) -> SignalAnalysis:
        lowered = normalize_text(text)
        total = 0.0
        matched = 0
        indicators = CrisisIndicators()
        risk_factors: list[str] = []

        for phrase, (weight, indicator) in self._terms.items():
            if phrase in lowered:
                total += weight
                matched += 1
                if indicator:
                    setattr(indicators, indicator, True)
                risk_factors.append(phrase)

        confidence = min(total / matched, 1.0) if matched else 0.0
        return SignalAnalysis(confidence, indicators, risk_factors)

    def score(self, text: str) -> float:
        return self.analyze(text).confidence


# ---------------------------------------------------------------------------
# Structural
# ---------------------------------------------------------------------------

class RiskPattern:
    def __init__(self, name: str, pattern: str | re.Pattern, indicator: Optional[str] = None) -> None:
        _check_indicator(indicator, name)
        self.name = name
        self.regex = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, re.IGNORECASE)
        self.indicator = indicator

    def __repr__(self) -> str:
        return f"RiskPattern(name={self.name!r}, pattern={self.regex.pattern!r})"


DEFAULT_RISK_PATTERNS: list[RiskPattern] = [
    RiskPattern("harm_myself", r"\b(kill|hurt|harm)\s+myself\b", "self_harm"),
    RiskPattern("end_my_life", r"\b(end|take)\s+my\s+life\b", "suicide_ideation"),
    RiskPattern("suicidal_plan", r"\b(suicide|suicidal)\s+(thoughts|ideation|plan)\b", "suicide_ideation"),
    RiskPattern("no_will_to_live", r"\b(no\s+reason|don'?t\s+want)\s+to\s+live\b", "suicide_ideation"),
    RiskPattern("better_off_dead", r"\b(better|easier)\s+(off\s+)?dead\b", "suicide_ideation"),
    RiskPattern("tired_of_living", r"\b(tired|done)\s+(of|with)\s+living\b", "suicide_ideation"),
]


class StructuralExtractor:
    """Each matching risk pattern adds a fixed increment, capped."""

    def __init__(
        self,
        patterns: list[RiskPattern] | None = None,
        increment: float = 0.3,
        cap: float = 0.9,
    ) -> None:
        self._patterns = list(patterns if patterns is not None else DEFAULT_RISK_PATTERNS)
        self.increment = increment
        self.cap = cap

    def add_patterns(self, patterns: list[RiskPattern]) -> None:
        self._patterns.extend(patterns)

    @property
    def patterns(self) -> list[RiskPattern]:
        return list(self._patterns)

    def analyze(self, text: str) -> SignalAnalysis:
        normalized = normalize_text(text)
        indicators = CrisisIndicators()
        risk_factors: list[str] = []
        matches = 0

        for pattern in self._patterns:
            if pattern.regex.search(normalized):
                matches += 1
                if pattern.indicator:
                    setattr(indicators, pattern.indicator, True)
                risk_factors.append(f"pattern:{pattern.name}")

        confidence = min(matches * self.increment, self.cap)
        return SignalAnalysis(confidence, indicators, risk_factors)


# ---------------------------------------------------------------------------
# Contextual
# ---------------------------------------------------------------------------

_CRISIS_CONTEXT_WORDS = ("crisis", "emergency", "intervention")


class ContextualExtractor:
    """Knowledge-base proximity plus repetition across recent turns.

    The knowledge-base query is the only suspension point in detection and
    is bounded by ``settings.knowledge_base_timeout_seconds``.  When the
    search is unavailable the history signal still counts.
    """

    def __init__(
        self,
        lexical: LexicalExtractor,
        knowledge_base: KnowledgeBase | None = None,
        settings: DetectionSettings | None = None,
        passage_increment: float = 0.2,
        repetition_increment: float = 0.3,
        cap: float = 0.8,
    ) -> None:
        self._lexical = lexical
        self._knowledge_base = knowledge_base
        self._settings = settings or DetectionSettings()
        self.passage_increment = passage_increment
        self.repetition_increment = repetition_increment
        self.cap = cap

    async def analyze(self, text: str, context: AnalysisContext) -> SignalAnalysis:
        confidence = 0.0
        indicators = CrisisIndicators()
        risk_factors: list[str] = []

        if self._knowledge_base is not None:
            try:
                passages = await asyncio.wait_for(
                    self._knowledge_base.search_similar(text, self._settings.knowledge_base_limit),
                    timeout=self._settings.knowledge_base_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "knowledge_search_timed_out",
                    timeout_seconds=self._settings.knowledge_base_timeout_seconds,
                )
                risk_factors.append("knowledge_context_unavailable")
                passages = []

            for passage in passages:
                content = passage.content.lower()
                if any(word in content for word in _CRISIS_CONTEXT_WORDS):
                    confidence += self.passage_increment
                    risk_factors.append("knowledge_context_match")

        recent = context.conversation_history[-self._settings.history_window:]
        crisis_turns = sum(
            1 for turn in recent
            if self._lexical.score(turn) > self._settings.repeated_turn_threshold
        )
        if crisis_turns >= self._settings.repeated_turn_min_count:
            confidence += self.repetition_increment
            indicators.severe_depression = True
            risk_factors.append("repeated_crisis_indicators")

        return SignalAnalysis(min(confidence, self.cap), indicators, risk_factors)


# ---------------------------------------------------------------------------
# Behavioral
# ---------------------------------------------------------------------------

class BehavioralExtractor:
    """Small fixed increments from session metadata."""

    late_night_hours = range(2, 7)  # 02:00-06:59
    rapid_messages_per_minute = 5
    brief_session_seconds = 60

    def analyze(self, context: AnalysisContext) -> SignalAnalysis:
        confidence = 0.0
        indicators = CrisisIndicators()
        risk_factors: list[str] = []

        metadata = context.session_metadata
        if metadata is None:
            return SignalAnalysis(confidence, indicators, risk_factors)

        if metadata.hour is not None and metadata.hour in self.late_night_hours:
            confidence += 0.1
            risk_factors.append("late_night_session")

        if (
            metadata.messages_per_minute is not None
            and metadata.messages_per_minute > self.rapid_messages_per_minute
        ):
            confidence += 0.15
            indicators.acute_anxiety = True
            risk_factors.append("rapid_messaging")

        if (
            metadata.session_duration_seconds is not None
            and metadata.session_duration_seconds < self.brief_session_seconds
        ):
            confidence += 0.1
            risk_factors.append("brief_crisis_session")

        return SignalAnalysis(confidence, indicators, risk_factors)
