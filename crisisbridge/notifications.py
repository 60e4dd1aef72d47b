"""
Crisis Resources and the Notification Gateway.

Escalation steps that notify, alert, escalate or intervene hand a
``Notification`` to a ``NotificationGateway``.  The gateway is the
integration seam to paging, SMS, telephony or emergency-services bridges;
those deliveries are the deploying organization's responsibility.
``LoggingNotificationGateway`` is the in-process stub: it records and logs
every notification and reports it delivered.

**This module does not guarantee connection to emergency services.**

The crisis resource directory lists public hotlines offered to users in
every assessment's ``resources`` action.

DISCLAIMER: Resource listings are informational.  In immediate danger,
users should call local emergency services (911 in the US).
"""

from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Crisis resource directory
# ---------------------------------------------------------------------------

class CrisisResource(BaseModel):
    resource_id: str
    name: str
    type: str = Field(..., description="hotline, text, chat, website or app.")
    description: str
    primary_contact: str
    secondary_contact: Optional[str] = None
    website: Optional[str] = None
    availability: str = "24/7"
    languages: list[str] = Field(default_factory=lambda: ["English"])
    crisis_types: list[str] = Field(default_factory=list)


CRISIS_RESOURCES: list[CrisisResource] = [
    CrisisResource(
        resource_id="988-lifeline",
        name="988 Suicide & Crisis Lifeline",
        type="hotline",
        description="Free and confidential emotional support 24/7 for people in distress.",
        primary_contact="988",
        secondary_contact="1-800-273-8255",
        website="https://988lifeline.org",
        languages=["English", "Spanish"],
        crisis_types=["suicidal_threat", "self_harm", "depression", "general_crisis"],
    ),
    CrisisResource(
        resource_id="crisis-text-line",
        name="Crisis Text Line",
        type="text",
        description="Free, 24/7 support by text with a trained crisis counselor.",
        primary_contact="Text HOME to 741741",
        website="https://www.crisistextline.org",
        languages=["English", "Spanish", "French", "German", "Italian", "Portuguese"],
        crisis_types=["suicidal_threat", "self_harm", "depression", "anxiety", "general_crisis"],
    ),
    CrisisResource(
        resource_id="trans-lifeline",
        name="Trans Lifeline",
        type="hotline",
        description="Peer support hotline run by and for trans people.",
        primary_contact="877-565-8860",
        website="https://translifeline.org",
        languages=["English", "Spanish"],
        crisis_types=["general_crisis"],
    ),
    CrisisResource(
        resource_id="samhsa-helpline",
        name="SAMHSA National Helpline",
        type="hotline",
        description="Treatment referral and information for mental health and substance use.",
        primary_contact="1-800-662-4357",
        website="https://www.samhsa.gov/find-help/national-helpline",
        languages=["English", "Spanish"],
        crisis_types=["substance_abuse"],
    ),
    CrisisResource(
        resource_id="neda-helpline",
        name="National Eating Disorders Association Helpline",
        type="chat",
        description="Support for anyone affected by an eating disorder.",
        primary_contact="1-800-931-2237",
        availability="business_hours",
        crisis_types=["eating_disorders"],
    ),
    CrisisResource(
        resource_id="domestic-violence-hotline",
        name="National Domestic Violence Hotline",
        type="hotline",
        description="Confidential support for people experiencing abuse.",
        primary_contact="1-800-799-7233",
        website="https://www.thehotline.org",
        languages=["English", "Spanish"],
        crisis_types=["domestic_violence"],
    ),
]


def resources_for(crisis_type: str, language: str | None = None) -> list[CrisisResource]:
    """Resources for a crisis type, 24/7 lines first.

    Falls back to the general crisis lines when nothing lists the type.
    """
    matches = [r for r in CRISIS_RESOURCES if crisis_type in r.crisis_types]
    if not matches:
        matches = [r for r in CRISIS_RESOURCES if "general_crisis" in r.crisis_types]
    if language is not None:
        in_language = [r for r in matches if language in r.languages]
        matches = in_language or matches
    return sorted(matches, key=lambda r: r.availability != "24/7")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class Notification(BaseModel):
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    escalation_id: str
    user_id: str
    action: str
    target: str
    method: str
    priority: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    resources: list[CrisisResource] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationResult:
    """Outcome of one delivery attempt."""

    def __init__(self, notification_id: str, delivered: bool, message: str) -> None:
        self.notification_id = notification_id
        self.delivered = delivered
        self.message = message

    def __repr__(self) -> str:
        return (
            f"NotificationResult(notification_id='{self.notification_id}', "
            f"delivered={self.delivered}, message='{self.message}')"
        )


@runtime_checkable
class NotificationGateway(Protocol):
    async def send(self, notification: Notification) -> NotificationResult:
        ...


class LoggingNotificationGateway:
    """Stub gateway: records and logs notifications without external calls.

    Only the most recent ``max_kept`` notifications are held in ``sent``.
    """

    def __init__(self, max_kept: int = 1000) -> None:
        self.sent: deque[Notification] = deque(maxlen=max_kept)

    async def send(self, notification: Notification) -> NotificationResult:
        self.sent.append(notification)
        logger.info(
            "notification_dispatched",
            notification_id=notification.notification_id,
            escalation_id=notification.escalation_id,
            action=notification.action,
            target=notification.target,
            method=notification.method,
            priority=notification.priority,
        )
        return NotificationResult(
            notification_id=notification.notification_id,
            delivered=True,
            message=(
                f"[STUB] {notification.method} to {notification.target} recorded. "
                "Production delivery requires an integrated gateway."
            ),
        )
