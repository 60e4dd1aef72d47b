"""
Core data models for the CrisisBridge assessment and escalation subsystem.

Assessments, indicators, responder records and match results are pydantic
models so that every artifact handed back to collaborators serializes with
``model_dump()``.

DISCLAIMER: These structures carry rule-based routing signals for human
responders.  They are not clinical assessments or diagnoses.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, enum.Enum):
    """Severity of a crisis assessment.

    * ``LOW``      -- monitor; crisis resources offered.
    * ``MEDIUM``   -- routine follow-up by a responder.
    * ``HIGH``     -- urgent responder consultation.
    * ``CRITICAL`` -- suicide ideation or self-harm; emergency protocols.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProtocolPriority(str, enum.Enum):
    """Priority of an escalation protocol."""

    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class ActionType(str, enum.Enum):
    ESCALATE = "escalate"
    RESOURCES = "resources"
    MONITOR = "monitor"
    INTERVENE = "intervene"


class ActionPriority(str, enum.Enum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    ROUTINE = "routine"


class ActionTarget(str, enum.Enum):
    PROFESSIONAL = "professional"
    EMERGENCY_SERVICES = "emergency_services"
    USER = "user"


class ProfessionalStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ON_LEAVE = "on_leave"
    SUSPENDED = "suspended"


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"
    IN_CRISIS = "in_crisis"


class Role(str, enum.Enum):
    """Roles used for role-based access control on administrative operations.

    ``USER`` is the person in the conversation.  ``PROFESSIONAL`` is a
    responder.  ``SUPERVISOR`` oversees responders.  ``ADMIN`` manages
    configuration and keys.  ``AUDITOR`` has read-only audit access.
    """

    USER = "USER"
    PROFESSIONAL = "PROFESSIONAL"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"


SEVERITY_ORDER: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Crisis indicators and assessments
# ---------------------------------------------------------------------------

INDICATOR_FLAGS: tuple[str, ...] = (
    "suicide_ideation",
    "self_harm",
    "severe_depression",
    "acute_anxiety",
    "substance_abuse",
    "eating_disorder",
    "domestic_violence",
)


class CrisisIndicators(BaseModel):
    """Named crisis flags plus open-ended ``other`` tags.

    Flags are OR-combined across extractors: ``merge()`` can set a flag but
    never clears one.
    """

    suicide_ideation: bool = False
    self_harm: bool = False
    severe_depression: bool = False
    acute_anxiety: bool = False
    substance_abuse: bool = False
    eating_disorder: bool = False
    domestic_violence: bool = False
    other: list[str] = Field(default_factory=list)

    def merge(self, other: CrisisIndicators) -> CrisisIndicators:
        """OR-combine ``other`` into this instance and return it."""
        for name in INDICATOR_FLAGS:
            if getattr(other, name):
                setattr(self, name, True)
        for tag in other.other:
            if tag not in self.other:
                self.other.append(tag)
        return self

    def active_flags(self) -> list[str]:
        return [name for name in INDICATOR_FLAGS if getattr(self, name)]

    def active_count(self) -> int:
        """Number of raised flags, counting non-empty ``other`` tags as one."""
        return len(self.active_flags()) + (1 if self.other else 0)

    def has_critical(self) -> bool:
        return self.suicide_ideation or self.self_harm


class CrisisAction(BaseModel):
    """A recommended follow-up action attached to an assessment."""

    type: ActionType
    priority: ActionPriority
    description: str
    target: ActionTarget
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionMetadata(BaseModel):
    """Session facts consumed by the behavioral extractor."""

    hour: Optional[int] = Field(
        default=None,
        ge=0,
        le=23,
        description="Local hour of day the message was sent.",
    )
    messages_per_minute: Optional[float] = Field(default=None, ge=0)
    session_duration_seconds: Optional[float] = Field(default=None, ge=0)


class AnalysisContext(BaseModel):
    """Conversation context supplied alongside an inbound message."""

    conversation_history: list[str] = Field(
        default_factory=list,
        description="Recent user messages, most recent last.",
    )
    user_history: Optional[Any] = Field(
        default=None,
        description="Opaque user profile/history object from the caller.",
    )
    session_metadata: Optional[SessionMetadata] = None


class Assessment(BaseModel):
    """A crisis risk assessment for one inbound message.

    Created by the fusion engine; mutated in place by the false-positive
    filter, which may only lower ``confidence``.  ``context`` holds the raw
    message as evidence and must not be copied into application logs.
    """

    assessment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    session_id: str
    indicators: CrisisIndicators = Field(default_factory=CrisisIndicators)
    severity: Severity = Severity.LOW
    confidence: float = Field(default=0.0, ge=0, le=1)
    detected_at: datetime = Field(default_factory=_utcnow)
    context: str = Field(default="", repr=False)
    risk_factors: list[str] = Field(default_factory=list)
    recommended_actions: list[CrisisAction] = Field(default_factory=list)
    immediate: bool = False


# ---------------------------------------------------------------------------
# Professionals
# ---------------------------------------------------------------------------

class Location(BaseModel):
    country: str
    state: Optional[str] = None
    city: Optional[str] = None


class AvailabilitySlot(BaseModel):
    """A weekly availability window in the professional's timezone.

    ``day_of_week`` follows the 0=Sunday .. 6=Saturday convention.
    """

    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class ProfessionalAvailability(BaseModel):
    schedule: list[AvailabilitySlot] = Field(default_factory=list)
    current_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    last_updated: datetime = Field(default_factory=_utcnow)
    override_until: Optional[datetime] = None
    emergency_contact: bool = False


class Workload(BaseModel):
    current_cases: int = Field(default=0, ge=0)
    max_cases: int = Field(default=5, gt=0)


class Rating(BaseModel):
    overall: float = Field(default=0.0, ge=0, le=5)
    crisis_response: float = Field(default=0.0, ge=0, le=5)
    total_cases: int = Field(default=0, ge=0)


class Professional(BaseModel):
    """A human responder in the professional directory.

    ``workload.current_cases`` is the only frequently mutated field and is
    changed exclusively through the repository's atomic reserve/release.
    """

    professional_id: str = Field(default_factory=lambda: f"prof-{uuid.uuid4().hex[:12]}")
    name: str
    title: str = ""
    email: str = ""
    license_number: str = ""
    certifications: list[str] = Field(default_factory=list)
    specialties: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=lambda: ["English"])
    timezone: str = "UTC"
    location: Location = Field(default_factory=lambda: Location(country="US"))
    availability: ProfessionalAvailability = Field(default_factory=ProfessionalAvailability)
    workload: Workload = Field(default_factory=Workload)
    rating: Rating = Field(default_factory=Rating)
    status: ProfessionalStatus = ProfessionalStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def has_capacity(self) -> bool:
        return self.workload.current_cases < self.workload.max_cases


class UserLocation(BaseModel):
    country: str
    state: Optional[str] = None
    timezone: str = "UTC"


class CrisisMatchCriteria(BaseModel):
    """What an assignment step needs from a responder."""

    crisis_type: str = "general_crisis"
    severity: Severity = Severity.MEDIUM
    user_location: Optional[UserLocation] = None
    required_languages: list[str] = Field(default_factory=lambda: ["English"])
    preferred_specialties: list[str] = Field(default_factory=list)
    max_response_time: int = Field(default=15, gt=0, description="Minutes.")


class ProfessionalMatch(BaseModel):
    """Ephemeral ranking result; never persisted beyond a matching call."""

    professional: Professional
    score: float = Field(..., ge=0, le=100)
    estimated_response_time: int = Field(..., ge=0, description="Minutes.")
    reasoning: list[str] = Field(default_factory=list)
    immediately_available: bool = False
    next_available: datetime = Field(default_factory=_utcnow)
