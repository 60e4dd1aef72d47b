"""
Append-Only, Tamper-Evident Audit Trail (Hash-Chained).

Every safety-relevant action -- assessments, suppressed detections,
escalation transitions and step executions, responder assignments,
channel creation and access, key rotation, protocol changes, alert
handling -- is recorded as a structured audit entry.  Entries are linked
by a SHA-256 hash chain: modifying any entry after the fact breaks
``verify_chain()``.

Entries are scoped by ``subject_id`` (the user the action concerns, or
``"system"`` for platform-wide actions) so that compliance review of one
user's crisis history never pulls in another user's records.

The hash chain gives structural tamper evidence for review.  A production
deployment would back it with WORM storage or an external trust anchor.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


SYSTEM_SUBJECT = "system"


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """All auditable actions in the subsystem."""

    # Detection
    ASSESSMENT_COMPLETED = "ASSESSMENT_COMPLETED"
    ASSESSMENT_SUPPRESSED = "ASSESSMENT_SUPPRESSED"
    ASSESSMENT_FAILED = "ASSESSMENT_FAILED"

    # Escalation lifecycle
    ESCALATION_INITIATED = "ESCALATION_INITIATED"
    ESCALATION_STEP_EXECUTED = "ESCALATION_STEP_EXECUTED"
    ESCALATION_COMPLETED = "ESCALATION_COMPLETED"
    ESCALATION_RESOLVED = "ESCALATION_RESOLVED"
    ESCALATION_FAILED = "ESCALATION_FAILED"

    # Responders
    PROFESSIONAL_ASSIGNED = "PROFESSIONAL_ASSIGNED"
    PROFESSIONAL_UPDATED = "PROFESSIONAL_UPDATED"

    # Channels and keys
    CHANNEL_CREATED = "CHANNEL_CREATED"
    CHANNEL_MESSAGE_SENT = "CHANNEL_MESSAGE_SENT"
    CHANNEL_ENDED = "CHANNEL_ENDED"
    EMERGENCY_ACCESS_GRANTED = "EMERGENCY_ACCESS_GRANTED"
    KEY_ROTATED = "KEY_ROTATED"
    KEY_COMPROMISED = "KEY_COMPROMISED"

    # Configuration
    PROTOCOL_UPDATED = "PROTOCOL_UPDATED"

    # Monitoring
    ALERT_RAISED = "ALERT_RAISED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_RESOLVED = "ALERT_RESOLVED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry, hash-linked to its predecessor."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    subject_id: str = Field(
        default=SYSTEM_SUBJECT,
        description="User the action concerns, or 'system' for platform-wide actions.",
    )
    actor_id: str = Field(..., description="Who performed the action (responder, admin, 'SYSTEM').")
    actor_role: str = Field(default="SYSTEM")
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Identifier of the affected record (assessment, escalation, channel, key, alert).",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(default="")

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_PII_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

# Identity fields and raw conversation content never leave in an export.
_REDACTED_KEYS = {
    "name", "full_name", "email", "phone", "address", "ssn",
    "message", "content", "context", "text", "plaintext",
}


def redact_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with PII and raw content replaced.

    Applied by ``export_for_review()`` before audit data leaves the
    secure environment.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _REDACTED_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PII_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_metadata(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``append()`` is serialized by a lock so
    the chain stays linear when escalation tasks and admin calls record
    concurrently.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current head and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        *,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
        subject_id: str = SYSTEM_SUBJECT,
        target_entity: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Convenience wrapper building and appending an ``AuditEntry``."""
        return self.append(AuditEntry(
            subject_id=subject_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None.
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        subject_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        target_entity: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return deep copies of entries matching every given filter."""
        results = []
        for entry in self._entries:
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        subject_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, redacted export for compliance review."""
        entries = self.query(subject_id=subject_id, time_start=time_start, time_end=time_end)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_metadata(entry.metadata)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "subject_id": subject_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
