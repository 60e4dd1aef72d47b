"""
Tests for crisisbridge.channels -- SecureChannelService.

Covers: channel and session creation, message sealing and decryption,
size limit, associated-data binding, expiry, participant permissions,
ending channels and sessions, key rotation and compromise across active
channels, emergency access, audit coverage, and the expiry sweep and purge of
closed channels.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.channels import (
    ChannelInactiveError,
    ChannelNotFoundError,
    ChannelPermissionError,
    ChannelStatus,
    MessageTooLargeError,
    ParticipantType,
    Permission,
    SecureChannelService,
    SessionStatus,
)
from crisisbridge.encryption import DecryptionError, KeyCompromisedError


NOW = datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _service(clock: _Clock | None = None) -> tuple[SecureChannelService, AuditLog]:
    audit_log = AuditLog()
    return SecureChannelService(audit_log=audit_log, clock=clock or _Clock()), audit_log


# ---------------------------------------------------------------------------
# 1. Creation
# ---------------------------------------------------------------------------

class TestCreateChannel:
    def test_channel_and_session_created(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1", escalation_id="escalation-1")

        assert channel.status == ChannelStatus.ACTIVE
        assert channel.expires_at == NOW + timedelta(hours=24)
        assert channel.encryption.key_id == service.key_ring.current_key_id
        assert [p.type for p in channel.participants] == [ParticipantType.PROFESSIONAL, ParticipantType.USER]

        session = service.session_for_channel(channel.channel_id)
        assert session.status == SessionStatus.ACTIVE
        assert session.message_count == 0
        assert service.get_session(session.session_id) is session

        assert [e.action for e in service.get_audit(channel.channel_id)] == ["channel_created"]
        assert len(audit_log.query(event_type=AuditEventType.CHANNEL_CREATED)) == 1

    def test_user_cannot_moderate_or_end(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        user = channel.participant("user_1")
        assert user.can(Permission.SEND) and user.can(Permission.RECEIVE)
        assert not user.can(Permission.MODERATE)
        assert not user.can(Permission.END)
        assert channel.participant("prof_1").can(Permission.END)

    def test_unknown_channel(self):
        service, _ = _service()
        with pytest.raises(ChannelNotFoundError):
            service.get_channel("channel-missing")
        with pytest.raises(ChannelNotFoundError):
            service.send_message("channel-missing", "user_1", "hello")


# ---------------------------------------------------------------------------
# 2. Messaging
# ---------------------------------------------------------------------------

class TestMessaging:
    def test_send_and_decrypt(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1")

        message = service.send_message(channel.channel_id, "user_1", "I can't stop shaking")

        assert message.sender_type == ParticipantType.USER
        assert message.content.aad == f"{channel.channel_id}:{message.message_id}"
        assert "shaking" not in message.content.ciphertext
        assert service.decrypt_message(message) == "I can't stop shaking"
        assert service.session_for_channel(channel.channel_id).message_count == 1
        assert len(audit_log.query(event_type=AuditEventType.CHANNEL_MESSAGE_SENT)) == 1

    def test_message_at_size_limit_round_trips(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        content = "ü" * 10_000
        message = service.send_message(channel.channel_id, "prof_1", content)
        assert service.decrypt_message(message) == content

    def test_oversized_message_rejected(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        with pytest.raises(MessageTooLargeError):
            service.send_message(channel.channel_id, "prof_1", "x" * 10_001)
        assert service.get_messages(channel.channel_id) == []

    def test_critical_priority_requires_acknowledgment(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        urgent = service.send_message(channel.channel_id, "prof_1", "Are you safe?", priority="critical")
        routine = service.send_message(channel.channel_id, "prof_1", "Checking in")
        assert urgent.requires_acknowledgment is True
        assert routine.requires_acknowledgment is False

    def test_message_moved_to_other_slot_fails(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        message = service.send_message(channel.channel_id, "user_1", "private")
        moved = message.model_copy(update={"message_id": "msg-elsewhere"})
        with pytest.raises(DecryptionError):
            service.decrypt_message(moved)

    def test_outsider_cannot_send(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        with pytest.raises(ChannelPermissionError):
            service.send_message(channel.channel_id, "stranger", "hello")

    def test_expired_channel_rejects_messages(self):
        clock = _Clock()
        service, _ = _service(clock)
        channel = service.create_channel("prof_1", "user_1")

        clock.advance(hours=25)

        with pytest.raises(ChannelInactiveError):
            service.send_message(channel.channel_id, "user_1", "still there?")
        assert channel.status == ChannelStatus.EXPIRED
        assert service.session_for_channel(channel.channel_id).status == SessionStatus.ENDED
        assert service.active_channels() == []


# ---------------------------------------------------------------------------
# 3. Ending
# ---------------------------------------------------------------------------

class TestEnding:
    def test_professional_ends_channel(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1")

        service.end_channel(channel.channel_id, "prof_1", "session_complete")

        assert channel.status == ChannelStatus.INACTIVE
        assert service.get_audit(channel.channel_id)[-1].action == "channel_left"
        with pytest.raises(ChannelInactiveError):
            service.send_message(channel.channel_id, "prof_1", "one more thing")
        assert len(audit_log.query(event_type=AuditEventType.CHANNEL_ENDED)) == 1

    def test_user_cannot_end_channel(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        with pytest.raises(ChannelPermissionError):
            service.end_channel(channel.channel_id, "user_1", "bye")
        assert channel.status == ChannelStatus.ACTIVE

    def test_end_session(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        session = service.session_for_channel(channel.channel_id)

        assert service.end_session(session.session_id, "resolved") is True

        assert session.status == SessionStatus.ENDED
        assert session.end_reason == "resolved"
        assert channel.status == ChannelStatus.INACTIVE
        assert service.active_sessions() == []
        assert service.end_session("session-missing", "x") is False


# ---------------------------------------------------------------------------
# 4. Keys
# ---------------------------------------------------------------------------

class TestKeys:
    def test_rotation_rekeys_active_channels(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1")
        before = service.send_message(channel.channel_id, "user_1", "before")

        new_key_id = service.rotate_keys(actor_id="admin_1", actor_role="ADMIN")
        after = service.send_message(channel.channel_id, "user_1", "after")

        assert channel.encryption.key_id == new_key_id
        assert after.content.key_id == new_key_id
        assert before.content.key_id != new_key_id
        assert service.decrypt_message(before) == "before"
        assert service.decrypt_message(after) == "after"
        entry = audit_log.query(event_type=AuditEventType.KEY_ROTATED)[0]
        assert entry.actor_id == "admin_1"
        assert entry.metadata["active_channels_updated"] == 1

    def test_ended_channels_keep_their_key(self):
        service, _ = _service()
        channel = service.create_channel("prof_1", "user_1")
        old_key = channel.encryption.key_id
        service.end_channel(channel.channel_id, "prof_1", "done")
        service.rotate_keys()
        assert channel.encryption.key_id == old_key

    def test_compromise_blocks_old_messages(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1")
        message = service.send_message(channel.channel_id, "user_1", "sensitive")
        compromised = message.content.key_id

        new_key_id = service.compromise_key(compromised, actor_id="admin_1", actor_role="ADMIN")

        assert new_key_id != compromised
        assert channel.encryption.key_id == new_key_id
        with pytest.raises(KeyCompromisedError):
            service.decrypt_message(message)
        fresh = service.send_message(channel.channel_id, "user_1", "new")
        assert service.decrypt_message(fresh) == "new"
        assert len(audit_log.query(event_type=AuditEventType.KEY_COMPROMISED)) == 1


# ---------------------------------------------------------------------------
# 5. Emergency access
# ---------------------------------------------------------------------------

class TestEmergencyAccess:
    def test_admin_joins_with_full_permissions(self):
        service, audit_log = _service()
        channel = service.create_channel("prof_1", "user_1")

        service.emergency_access(channel.channel_id, "admin_1", "responder unreachable")

        admin = channel.participant("admin_1")
        assert admin.type == ParticipantType.SYSTEM
        assert all(admin.can(p) for p in Permission)
        assert service.get_audit(channel.channel_id)[-1].action == "channel_joined"
        entry = audit_log.query(event_type=AuditEventType.EMERGENCY_ACCESS_GRANTED)[0]
        assert entry.metadata["reason"] == "responder unreachable"

        message = service.send_message(channel.channel_id, "admin_1", "This is the crisis team.")
        assert service.decrypt_message(message) == "This is the crisis team."


# ---------------------------------------------------------------------------
# 6. Expiry sweep and purge
# ---------------------------------------------------------------------------

class TestMaintenance:
    def test_expire_channels_ends_sessions_and_notifies(self):
        clock = _Clock()
        service, _ = _service(clock)
        stale = service.create_channel("prof_1", "user_1")
        ended = []
        service.add_session_listener(lambda s: ended.append(s.channel_id))

        clock.advance(hours=20)
        fresh = service.create_channel("prof_2", "user_2")
        clock.advance(hours=5)

        assert service.expire_channels() == [stale.channel_id]
        assert stale.status == ChannelStatus.EXPIRED
        assert fresh.status == ChannelStatus.ACTIVE
        assert ended == [stale.channel_id]
        assert service.expire_channels() == []

    def test_purge_closed_drops_channel_session_and_messages(self):
        clock = _Clock()
        service, _ = _service(clock)
        closed = service.create_channel("prof_1", "user_1")
        service.send_message(closed.channel_id, "user_1", "thank you")
        session_id = service.session_for_channel(closed.channel_id).session_id
        service.end_channel(closed.channel_id, "prof_1", "session_complete")
        still_open = service.create_channel("prof_2", "user_2")

        clock.advance(hours=2)
        assert service.purge_closed(NOW - timedelta(hours=1)) == []

        assert service.purge_closed(NOW + timedelta(hours=1)) == [closed.channel_id]
        with pytest.raises(ChannelNotFoundError):
            service.get_messages(closed.channel_id)
        assert service.get_session(session_id) is None
        assert service.session_for_channel(closed.channel_id) is None
        assert service.get_channel(still_open.channel_id).status == ChannelStatus.ACTIVE
