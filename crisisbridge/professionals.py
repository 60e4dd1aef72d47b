"""
Professional Matcher -- ranks available responders for a crisis.

Candidates must be active, inside one of their weekly schedule slots (in
their own timezone), have spare capacity and report ``available``.  Each
candidate is scored out of 100:

========================  ======  =====================================
Signal                    Points  Response-time effect
========================  ======  =====================================
Specialty overlap         40      (10 partial credit otherwise)
All languages covered     20      +10 min when an interpreter is needed
Timezone + country        15      --
Country only              10      +5 min
Different country         5       +15 min
Crisis-response rating    0-10    --
Spare capacity fraction   0-10    --
Emergency contact         5       capped at 2 min
Critical severity         +0-5    capped at 3 min (adds overall rating)
========================  ======  =====================================

Geography only counts when the user's location is known.  Response time
starts at 5 minutes and grows by the wait until the next schedule slot for
responders who are not immediately available.  Results are sorted by
score (descending) then response time (ascending) and truncated.

Matching only reads the directory.  Taking the case is a separate,
atomic ``ProfessionalRepository.reserve()``.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from crisisbridge.config import MatchingSettings
from crisisbridge.models import (
    Assessment,
    AvailabilityStatus,
    CrisisIndicators,
    CrisisMatchCriteria,
    Professional,
    ProfessionalMatch,
    ProfessionalStatus,
    Severity,
    UserLocation,
)
from crisisbridge.repository import ProfessionalRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Crisis type and specialty mapping
# ---------------------------------------------------------------------------

INDICATOR_SPECIALTIES: dict[str, str] = {
    "suicide_ideation": "suicide_prevention",
    "self_harm": "self_harm",
    "severe_depression": "depression",
    "acute_anxiety": "anxiety",
    "substance_abuse": "substance_abuse",
    "eating_disorder": "eating_disorders",
    "domestic_violence": "domestic_violence",
}

DEFAULT_SPECIALTIES = ["crisis_intervention"]


def crisis_type_from_indicators(indicators: CrisisIndicators) -> str:
    """Most urgent crisis type implied by the indicator flags."""
    if indicators.suicide_ideation:
        return "suicidal_threat"
    if indicators.self_harm:
        return "self_harm"
    if indicators.severe_depression:
        return "depression"
    if indicators.acute_anxiety:
        return "anxiety"
    if indicators.substance_abuse:
        return "substance_abuse"
    if indicators.eating_disorder:
        return "eating_disorders"
    if indicators.domestic_violence:
        return "domestic_violence"
    return "general_crisis"


def specialties_for(indicators: CrisisIndicators) -> list[str]:
    """One preferred specialty per raised flag, in flag order."""
    specialties = [INDICATOR_SPECIALTIES[flag] for flag in indicators.active_flags()]
    return specialties or list(DEFAULT_SPECIALTIES)


def criteria_from_assessment(
    assessment: Assessment,
    user_location: UserLocation | None = None,
    languages: list[str] | None = None,
    max_response_time: int = 15,
    settings: MatchingSettings | None = None,
) -> CrisisMatchCriteria:
    """Matching criteria for an assessment; ``languages`` falls back to the configured defaults."""
    crisis_type = crisis_type_from_indicators(assessment.indicators)
    return CrisisMatchCriteria(
        crisis_type=crisis_type,
        severity=assessment.severity,
        user_location=user_location,
        required_languages=languages or list((settings or MatchingSettings()).default_languages),
        preferred_specialties=specialties_for(assessment.indicators),
        max_response_time=max_response_time,
    )


# ---------------------------------------------------------------------------
# Schedule helpers
# ---------------------------------------------------------------------------

def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_professional_timezone", timezone=name)
        return ZoneInfo("UTC")


def _day_of_week(moment: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (moment.weekday() + 1) % 7


def is_within_schedule(professional: Professional, now: datetime) -> bool:
    local = now.astimezone(_zone(professional.timezone))
    day = _day_of_week(local)
    current = local.strftime("%H:%M")
    return any(
        slot.day_of_week == day and slot.start_time <= current <= slot.end_time
        for slot in professional.availability.schedule
    )


def next_slot_start(professional: Professional, now: datetime) -> Optional[datetime]:
    """Start of the next schedule slot within the coming week, in UTC."""
    zone = _zone(professional.timezone)
    local_now = now.astimezone(zone)
    candidates: list[datetime] = []

    for offset in range(8):
        day = local_now + timedelta(days=offset)
        for slot in professional.availability.schedule:
            if slot.day_of_week != _day_of_week(day):
                continue
            hour, minute = (int(part) for part in slot.start_time.split(":"))
            start = day.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if start > local_now:
                candidates.append(start)

    if not candidates:
        return None
    return min(candidates).astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

class ProfessionalMatcher:
    """Scores and ranks available professionals against match criteria.

    ``clock`` returns the current UTC time and is injectable for tests.
    """

    def __init__(
        self,
        repository: ProfessionalRepository,
        settings: MatchingSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or MatchingSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def settings(self) -> MatchingSettings:
        return self._settings

    def available_professionals(self) -> list[Professional]:
        now = self._clock()
        return [
            p for p in self._repository.list(status=ProfessionalStatus.ACTIVE)
            if p.availability.current_status == AvailabilityStatus.AVAILABLE
            and p.has_capacity()
            and is_within_schedule(p, now)
        ]

    def available_count(self) -> int:
        return len(self.available_professionals())

    async def find_best_match(self, criteria: CrisisMatchCriteria) -> list[ProfessionalMatch]:
        """Ranked matches, best first.  Empty when nobody is available."""
        candidates = self.available_professionals()
        matches = [self.evaluate(p, criteria) for p in candidates]
        matches = [m for m in matches if m.score > 0]
        matches.sort(key=lambda m: (-m.score, m.estimated_response_time))
        matches = matches[: self._settings.max_results]

        logger.info(
            "professional_match_completed",
            crisis_type=criteria.crisis_type,
            severity=criteria.severity.value,
            candidates=len(candidates),
            matches=len(matches),
            top_score=matches[0].score if matches else None,
        )
        return matches

    def evaluate(self, professional: Professional, criteria: CrisisMatchCriteria) -> ProfessionalMatch:
        score = 0.0
        reasoning: list[str] = []
        response_time = self._settings.base_response_minutes

        if any(s in professional.specialties for s in criteria.preferred_specialties):
            score += 40
            reasoning.append(f"Specialty match: {', '.join(criteria.preferred_specialties)}")
        else:
            score += 10
            reasoning.append("Partial specialty alignment")

        if all(lang in professional.languages for lang in criteria.required_languages):
            score += 20
            reasoning.append(f"Language match: {', '.join(criteria.required_languages)}")
        else:
            response_time += 10
            reasoning.append("Language mismatch - may require interpreter")

        location = criteria.user_location
        if location is not None:
            same_zone = professional.timezone == location.timezone
            same_country = professional.location.country == location.country
            if same_zone and same_country:
                score += 15
                reasoning.append("Geographic and timezone match")
            elif same_country:
                score += 10
                response_time += 5
                reasoning.append("Country match (timezone difference)")
            else:
                score += 5
                response_time += 15
                reasoning.append("Geographic distance may affect response time")

        score += professional.rating.crisis_response / 5 * 10
        reasoning.append(f"Crisis response rating: {professional.rating.crisis_response}/5")

        workload = professional.workload
        spare = 1 - workload.current_cases / workload.max_cases
        score += spare * 10
        reasoning.append(f"Workload capacity: {round(spare * 100)}% available")

        if professional.availability.emergency_contact:
            score += 5
            response_time = min(response_time, 2)
            reasoning.append("Emergency contact available")

        if criteria.severity == Severity.CRITICAL:
            score += professional.rating.overall
            response_time = min(response_time, 3)

        now = self._clock()
        immediately = (
            professional.availability.current_status == AvailabilityStatus.AVAILABLE
            and professional.has_capacity()
        )
        if immediately:
            next_available = now
        else:
            next_available = next_slot_start(professional, now) or (
                now + timedelta(minutes=self._settings.next_slot_fallback_minutes)
            )
            response_time += max(0.0, (next_available - now).total_seconds() / 60)

        return ProfessionalMatch(
            professional=professional,
            score=min(score, 100.0),
            estimated_response_time=math.ceil(response_time),
            reasoning=reasoning,
            immediately_available=immediately,
            next_available=next_available,
        )
