"""
Secure Channel Establisher -- encrypted responder/user conversations.

A channel is created once an escalation has an assigned responder.  It has
two participants (the responder with full permissions, the user with
send/receive), references the key ring's active key, and expires after
``ChannelSettings.ttl_hours``.

Every message is sealed with AES-256-GCM under the channel's current key.
The associated data is ``"<channel_id>:<message_id>"``; it is stored with
the ciphertext and recomputed on decryption, so a message only opens in
the slot it was written to.  Plaintext is never stored.

Each channel keeps its own append-only audit list (``channel_created``,
``message_sent``, ``channel_joined``, ``channel_left``) in addition to the
subsystem-wide hash-chained ``AuditLog``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.config import ChannelSettings
from crisisbridge.encryption import ALGORITHM, EncryptedContent, KeyRing

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ChannelStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class ParticipantType(str, enum.Enum):
    PROFESSIONAL = "professional"
    USER = "user"
    SYSTEM = "system"


class Permission(str, enum.Enum):
    SEND = "send"
    RECEIVE = "receive"
    MODERATE = "moderate"
    END = "end"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"


FULL_PERMISSIONS = {p: True for p in Permission}
USER_PERMISSIONS = {
    Permission.SEND: True,
    Permission.RECEIVE: True,
    Permission.MODERATE: False,
    Permission.END: False,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChannelError(Exception):
    """Base class for channel failures."""
    pass


class ChannelNotFoundError(ChannelError):
    pass


class ChannelInactiveError(ChannelError):
    """The channel was ended or has expired."""
    pass


class ChannelPermissionError(ChannelError):
    """The actor is not a participant or lacks the required permission."""
    pass


class MessageTooLargeError(ChannelError):
    pass


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Participant(BaseModel):
    participant_id: str
    type: ParticipantType
    permissions: dict[Permission, bool]
    joined_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)

    def can(self, permission: Permission) -> bool:
        return self.permissions.get(permission, False)


class ChannelEncryption(BaseModel):
    algorithm: str = ALGORITHM
    key_id: str
    last_rotated: datetime = Field(default_factory=_utcnow)


class ChannelAuditEntry(BaseModel):
    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)
    action: str
    actor_id: str
    actor_type: ParticipantType
    details: dict[str, Any] = Field(default_factory=dict)


class CommunicationChannel(BaseModel):
    channel_id: str = Field(default_factory=lambda: f"channel-{uuid.uuid4().hex[:16]}")
    status: ChannelStatus = ChannelStatus.ACTIVE
    encryption: ChannelEncryption
    participants: list[Participant]
    user_id: str
    professional_id: str
    escalation_id: str = ""
    assessment_id: str = ""
    created_at: datetime
    expires_at: datetime
    audit: list[ChannelAuditEntry] = Field(default_factory=list)

    def participant(self, participant_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.participant_id == participant_id:
                return p
        return None


class CommunicationMessage(BaseModel):
    message_id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4().hex[:16]}")
    channel_id: str
    sender_id: str
    sender_type: ParticipantType
    content: EncryptedContent
    timestamp: datetime = Field(default_factory=_utcnow)
    message_type: str = "text"
    priority: str = "normal"
    requires_acknowledgment: bool = False


class CommunicationSession(BaseModel):
    session_id: str = Field(default_factory=lambda: f"session-{uuid.uuid4().hex[:16]}")
    channel_id: str
    professional_id: str
    user_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    end_reason: str = ""
    message_count: int = 0
    last_activity: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def message_aad(channel_id: str, message_id: str) -> str:
    return f"{channel_id}:{message_id}"


class SecureChannelService:
    """Creates channels, seals messages and manages channel keys."""

    def __init__(
        self,
        key_ring: KeyRing | None = None,
        settings: ChannelSettings | None = None,
        audit_log: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or ChannelSettings()
        self._clock = clock or _utcnow
        self.key_ring = key_ring or KeyRing(self._settings, clock=self._clock)
        self._audit_log = audit_log
        self._channels: dict[str, CommunicationChannel] = {}
        self._sessions: dict[str, CommunicationSession] = {}
        self._session_by_channel: dict[str, str] = {}
        self._messages: dict[str, list[CommunicationMessage]] = {}
        self._session_listeners: list[Callable[[CommunicationSession], None]] = []

    # -- helpers --

    def _require_channel(self, channel_id: str) -> CommunicationChannel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"No channel with id '{channel_id}'")
        return channel

    def _session_for(self, channel_id: str) -> Optional[CommunicationSession]:
        session_id = self._session_by_channel.get(channel_id)
        return self._sessions.get(session_id) if session_id is not None else None

    def _record(
        self,
        event_type: AuditEventType,
        channel: CommunicationChannel,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(
            event_type,
            actor_id=actor_id,
            actor_role=actor_role,
            subject_id=channel.user_id,
            target_entity=channel.channel_id,
            metadata=metadata or {},
        )

    def _close(self, channel: CommunicationChannel, status: ChannelStatus, reason: str) -> None:
        now = self._clock()
        channel.status = status
        session = self._session_for(channel.channel_id)
        if session is not None and session.status == SessionStatus.ACTIVE:
            session.status = SessionStatus.ENDED
            session.ended_at = now
            session.end_reason = reason
            for callback in self._session_listeners:
                callback(session)

    # -- channel lifecycle --

    def add_session_listener(self, callback: Callable[[CommunicationSession], None]) -> None:
        """Call ``callback`` once per session when it ends, including on expiry."""
        self._session_listeners.append(callback)

    def create_channel(
        self,
        professional_id: str,
        user_id: str,
        escalation_id: str = "",
        assessment_id: str = "",
    ) -> CommunicationChannel:
        now = self._clock()
        channel = CommunicationChannel(
            encryption=ChannelEncryption(key_id=self.key_ring.current_key_id, last_rotated=now),
            participants=[
                Participant(
                    participant_id=professional_id,
                    type=ParticipantType.PROFESSIONAL,
                    permissions=dict(FULL_PERMISSIONS),
                    joined_at=now,
                    last_activity=now,
                ),
                Participant(
                    participant_id=user_id,
                    type=ParticipantType.USER,
                    permissions=dict(USER_PERMISSIONS),
                    joined_at=now,
                    last_activity=now,
                ),
            ],
            user_id=user_id,
            professional_id=professional_id,
            escalation_id=escalation_id,
            assessment_id=assessment_id,
            created_at=now,
            expires_at=now + timedelta(hours=self._settings.ttl_hours),
        )
        channel.audit.append(ChannelAuditEntry(
            timestamp=now,
            action="channel_created",
            actor_id="system",
            actor_type=ParticipantType.SYSTEM,
            details={"professional_id": professional_id, "escalation_id": escalation_id},
        ))
        self._channels[channel.channel_id] = channel
        self._messages[channel.channel_id] = []

        session = CommunicationSession(
            channel_id=channel.channel_id,
            professional_id=professional_id,
            user_id=user_id,
            started_at=now,
            last_activity=now,
        )
        self._sessions[session.session_id] = session
        self._session_by_channel[channel.channel_id] = session.session_id

        logger.info(
            "secure_channel_created",
            channel_id=channel.channel_id,
            session_id=session.session_id,
            professional_id=professional_id,
            user_id=user_id,
            escalation_id=escalation_id,
        )
        self._record(
            AuditEventType.CHANNEL_CREATED,
            channel,
            metadata={
                "professional_id": professional_id,
                "escalation_id": escalation_id,
                "key_id": channel.encryption.key_id,
                "expires_at": channel.expires_at.isoformat(),
            },
        )
        return channel

    def send_message(
        self,
        channel_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        priority: str = "normal",
    ) -> CommunicationMessage:
        """Seal and append a message.

        Raises:
            ChannelNotFoundError: Unknown channel.
            ChannelInactiveError: Channel ended or past ``expires_at``.
            ChannelPermissionError: Sender is not allowed to send.
            MessageTooLargeError: Content exceeds ``max_message_chars``.
        """
        channel = self._require_channel(channel_id)
        now = self._clock()

        if channel.status == ChannelStatus.ACTIVE and now > channel.expires_at:
            self._close(channel, ChannelStatus.EXPIRED, "expired")
            logger.info("secure_channel_expired", channel_id=channel_id)
        if channel.status != ChannelStatus.ACTIVE:
            raise ChannelInactiveError(f"Channel '{channel_id}' is {channel.status.value}")

        participant = channel.participant(sender_id)
        if participant is None or not participant.can(Permission.SEND):
            raise ChannelPermissionError(
                f"'{sender_id}' does not have permission to send on channel '{channel_id}'"
            )

        if len(content) > self._settings.max_message_chars:
            raise MessageTooLargeError(
                f"Message has {len(content)} characters; limit is {self._settings.max_message_chars}"
            )

        message_id = f"msg-{uuid.uuid4().hex[:16]}"
        sealed = self.key_ring.encrypt(content, message_aad(channel_id, message_id))
        message = CommunicationMessage(
            message_id=message_id,
            channel_id=channel_id,
            sender_id=sender_id,
            sender_type=participant.type,
            content=sealed,
            timestamp=now,
            message_type=message_type,
            priority=priority,
            requires_acknowledgment=priority == "critical",
        )
        self._messages[channel_id].append(message)

        participant.last_activity = now
        session = self._session_for(channel_id)
        if session is not None:
            session.message_count += 1
            session.last_activity = now

        channel.audit.append(ChannelAuditEntry(
            timestamp=now,
            action="message_sent",
            actor_id=sender_id,
            actor_type=participant.type,
            details={
                "message_id": message_id,
                "message_type": message_type,
                "priority": priority,
                "content_length": len(content),
            },
        ))
        logger.info(
            "secure_message_sent",
            channel_id=channel_id,
            message_id=message_id,
            sender_type=participant.type.value,
            priority=priority,
        )
        self._record(
            AuditEventType.CHANNEL_MESSAGE_SENT,
            channel,
            actor_id=sender_id,
            actor_role=participant.type.value.upper(),
            metadata={"message_id": message_id, "key_id": sealed.key_id, "content_length": len(content)},
        )
        return message

    def decrypt_message(self, message: CommunicationMessage) -> str:
        """Plaintext of ``message``; encryption errors propagate unchanged."""
        return self.key_ring.decrypt(
            message.content, message_aad(message.channel_id, message.message_id)
        )

    def end_channel(self, channel_id: str, actor_id: str, reason: str = "") -> CommunicationChannel:
        channel = self._require_channel(channel_id)
        participant = channel.participant(actor_id)
        if participant is None or not participant.can(Permission.END):
            raise ChannelPermissionError(
                f"'{actor_id}' does not have permission to end channel '{channel_id}'"
            )
        self._end(channel, actor_id, participant.type, reason)
        return channel

    def end_session(self, session_id: str, reason: str) -> bool:
        """End a session and deactivate its channel.  False if the session is unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        channel = self._channels.get(session.channel_id)
        if channel is None:
            session.status = SessionStatus.ENDED
            session.ended_at = self._clock()
            session.end_reason = reason
            return True
        self._end(channel, "system", ParticipantType.SYSTEM, reason)
        return True

    def _end(
        self,
        channel: CommunicationChannel,
        actor_id: str,
        actor_type: ParticipantType,
        reason: str,
    ) -> None:
        now = self._clock()
        self._close(channel, ChannelStatus.INACTIVE, reason)
        channel.expires_at = min(channel.expires_at, now)
        channel.audit.append(ChannelAuditEntry(
            timestamp=now,
            action="channel_left",
            actor_id=actor_id,
            actor_type=actor_type,
            details={"reason": reason},
        ))
        session = self._session_for(channel.channel_id)
        logger.info(
            "secure_channel_ended",
            channel_id=channel.channel_id,
            reason=reason,
            message_count=session.message_count if session else 0,
        )
        self._record(
            AuditEventType.CHANNEL_ENDED,
            channel,
            actor_id=actor_id,
            actor_role=actor_type.value.upper(),
            metadata={"reason": reason},
        )

    # -- keys --

    def _rekey_active_channels(self, key_id: str) -> int:
        now = self._clock()
        count = 0
        for channel in self._channels.values():
            if channel.status == ChannelStatus.ACTIVE:
                channel.encryption.key_id = key_id
                channel.encryption.last_rotated = now
                count += 1
        return count

    def rotate_keys(self, actor_id: str = "SYSTEM", actor_role: str = "SYSTEM") -> str:
        """Rotate the key ring and move every active channel to the new key."""
        previous = self.key_ring.current_key_id
        new_key_id = self.key_ring.rotate()
        updated = self._rekey_active_channels(new_key_id)

        logger.info("channel_keys_rotated", new_key_id=new_key_id, active_channels_updated=updated)
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.KEY_ROTATED,
                actor_id=actor_id,
                actor_role=actor_role,
                target_entity=new_key_id,
                metadata={"previous_key_id": previous, "active_channels_updated": updated},
            )
        return new_key_id

    def compromise_key(self, key_id: str, actor_id: str = "SYSTEM", actor_role: str = "SYSTEM") -> str:
        """Mark ``key_id`` compromised; active channels move to the resulting active key."""
        new_key_id = self.key_ring.compromise_key(key_id)
        updated = self._rekey_active_channels(new_key_id)
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.KEY_COMPROMISED,
                actor_id=actor_id,
                actor_role=actor_role,
                target_entity=key_id,
                metadata={"current_key_id": new_key_id, "active_channels_updated": updated},
            )
        return new_key_id

    # -- emergency access --

    def emergency_access(self, channel_id: str, admin_id: str, reason: str = "") -> CommunicationChannel:
        """Join ``admin_id`` to the channel as a system participant with full permissions."""
        channel = self._require_channel(channel_id)
        now = self._clock()

        existing = channel.participant(admin_id)
        if existing is not None:
            existing.permissions = dict(FULL_PERMISSIONS)
        else:
            channel.participants.append(Participant(
                participant_id=admin_id,
                type=ParticipantType.SYSTEM,
                permissions=dict(FULL_PERMISSIONS),
                joined_at=now,
                last_activity=now,
            ))

        channel.audit.append(ChannelAuditEntry(
            timestamp=now,
            action="channel_joined",
            actor_id=admin_id,
            actor_type=ParticipantType.SYSTEM,
            details={"emergency_access": True, "reason": reason},
        ))
        logger.warning("emergency_channel_access_granted", channel_id=channel_id, admin_id=admin_id)
        self._record(
            AuditEventType.EMERGENCY_ACCESS_GRANTED,
            channel,
            actor_id=admin_id,
            actor_role="ADMIN",
            metadata={"reason": reason},
        )
        return channel

    # -- maintenance --

    def expire_channels(self) -> list[str]:
        """Close every active channel past ``expires_at``; their sessions end."""
        now = self._clock()
        expired = [
            c for c in self._channels.values()
            if c.status == ChannelStatus.ACTIVE and now > c.expires_at
        ]
        for channel in expired:
            self._close(channel, ChannelStatus.EXPIRED, "expired")
            logger.info("secure_channel_expired", channel_id=channel.channel_id)
        return [c.channel_id for c in expired]

    def purge_closed(self, before: datetime) -> list[str]:
        """Drop channels closed before ``before`` with their sessions and sealed messages."""
        purged: list[str] = []
        for channel_id, channel in list(self._channels.items()):
            if channel.status == ChannelStatus.ACTIVE:
                continue
            session = self._session_for(channel_id)
            closed_at = session.ended_at if session is not None and session.ended_at else channel.expires_at
            if closed_at >= before:
                continue
            del self._channels[channel_id]
            self._messages.pop(channel_id, None)
            session_id = self._session_by_channel.pop(channel_id, None)
            if session_id is not None:
                self._sessions.pop(session_id, None)
            purged.append(channel_id)

        if purged:
            logger.info("closed_channels_purged", count=len(purged))
        return purged

    # -- queries --

    def get_channel(self, channel_id: str) -> CommunicationChannel:
        return self._require_channel(channel_id)

    def get_messages(self, channel_id: str) -> list[CommunicationMessage]:
        self._require_channel(channel_id)
        return list(self._messages[channel_id])

    def get_audit(self, channel_id: str) -> list[ChannelAuditEntry]:
        return list(self._require_channel(channel_id).audit)

    def get_session(self, session_id: str) -> Optional[CommunicationSession]:
        return self._sessions.get(session_id)

    def session_for_channel(self, channel_id: str) -> Optional[CommunicationSession]:
        return self._session_for(channel_id)

    def active_channels(self) -> list[CommunicationChannel]:
        return [c for c in self._channels.values() if c.status == ChannelStatus.ACTIVE]

    def active_sessions(self) -> list[CommunicationSession]:
        return [s for s in self._sessions.values() if s.status == SessionStatus.ACTIVE]
