"""
Key ring and authenticated encryption for channel messages.

Messages are sealed with AES-256-GCM from ``cryptography``.  Every message
gets a fresh 96-bit IV, and the associated data (channel id + message id)
is bound into the tag, so a ciphertext moved to another channel or message
slot fails to decrypt instead of yielding plaintext.

Key lifecycle::

    active --rotate()--> expired (kept for decryption until retention ends)
    any    --compromise_key()--> compromised (never decrypts again)

Exactly one key is ``active`` at a time; it encrypts all new messages.
"""

from __future__ import annotations

import base64
import enum
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, Field

from crisisbridge.config import ChannelSettings

logger = structlog.get_logger(__name__)

ALGORITHM = "AES-256-GCM"
IV_BYTES = 12


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EncryptionError(Exception):
    """Base class for key ring and cipher failures."""
    pass


class DecryptionError(EncryptionError):
    """Ciphertext, IV or associated data failed authentication."""
    pass


class KeyNotFoundError(EncryptionError):
    """The key id is unknown or its retention period has ended."""
    pass


class KeyCompromisedError(EncryptionError):
    """The key was marked compromised and may not be used."""
    pass


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class KeyStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPROMISED = "compromised"


class EncryptionKey(BaseModel):
    key_id: str = Field(default_factory=lambda: f"key-{uuid.uuid4().hex[:16]}")
    algorithm: str = ALGORITHM
    created_at: datetime
    expires_at: datetime = Field(..., description="When the key should be rotated out.")
    retain_until: Optional[datetime] = Field(
        default=None,
        description="Set on rotation; after this the key can no longer decrypt.",
    )
    status: KeyStatus = KeyStatus.ACTIVE
    rotation_count: int = 0
    material: bytes = Field(..., repr=False, exclude=True)


class EncryptedContent(BaseModel):
    """Base64 ciphertext (with GCM tag), IV and the key that sealed it."""

    ciphertext: str
    iv: str
    key_id: str
    algorithm: str = ALGORITHM
    aad: str = ""


# ---------------------------------------------------------------------------
# Key ring
# ---------------------------------------------------------------------------

class KeyRing:
    """Holds the active key plus superseded keys still inside retention."""

    def __init__(
        self,
        settings: ChannelSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or ChannelSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._keys: dict[str, EncryptionKey] = {}
        self._current_key_id = ""
        self._generate_key(rotation_count=0)

    def _generate_key(self, rotation_count: int) -> EncryptionKey:
        now = self._clock()
        key = EncryptionKey(
            created_at=now,
            expires_at=now + timedelta(days=self._settings.key_rotation_days),
            rotation_count=rotation_count,
            material=AESGCM.generate_key(bit_length=256),
        )
        self._keys[key.key_id] = key
        self._current_key_id = key.key_id
        return key

    @property
    def current_key_id(self) -> str:
        return self._current_key_id

    def get_key(self, key_id: str) -> EncryptionKey:
        """Metadata for one key (material is excluded from dumps)."""
        if key_id not in self._keys:
            raise KeyNotFoundError(f"Unknown encryption key '{key_id}'")
        return self._keys[key_id]

    # -- cipher --

    def encrypt(self, plaintext: str, aad: str) -> EncryptedContent:
        key = self._keys[self._current_key_id]
        if key.status != KeyStatus.ACTIVE:
            raise KeyCompromisedError(f"Current key '{key.key_id}' is not active")

        iv = os.urandom(IV_BYTES)
        sealed = AESGCM(key.material).encrypt(iv, plaintext.encode("utf-8"), aad.encode("utf-8"))
        return EncryptedContent(
            ciphertext=base64.b64encode(sealed).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            key_id=key.key_id,
            aad=aad,
        )

    def decrypt(self, content: EncryptedContent, aad: str) -> str:
        """Open ``content`` with the key that sealed it.

        ``aad`` is the associated data the caller expects; it must equal the
        data used at encryption time.

        Raises:
            KeyNotFoundError: Unknown key or retention over.
            KeyCompromisedError: The key was compromised.
            DecryptionError: Authentication failed.
        """
        key = self._keys.get(content.key_id)
        if key is None:
            raise KeyNotFoundError(f"Unknown encryption key '{content.key_id}'")
        if key.status == KeyStatus.COMPROMISED:
            raise KeyCompromisedError(f"Encryption key '{key.key_id}' is compromised")
        if key.retain_until is not None and key.retain_until < self._clock():
            raise KeyNotFoundError(f"Retention for key '{key.key_id}' has ended")

        try:
            iv = base64.b64decode(content.iv, validate=True)
            sealed = base64.b64decode(content.ciphertext, validate=True)
            plaintext = AESGCM(key.material).decrypt(iv, sealed, aad.encode("utf-8"))
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(
                f"Message sealed with key '{key.key_id}' failed authentication"
            ) from exc
        return plaintext.decode("utf-8")

    # -- lifecycle --

    def rotate(self) -> str:
        """Retire the active key and create a new one.  Returns the new key id."""
        old = self._keys[self._current_key_id]
        now = self._clock()
        if old.status == KeyStatus.ACTIVE:
            old.status = KeyStatus.EXPIRED
        old.retain_until = now + timedelta(days=self._settings.key_retention_days)

        new = self._generate_key(rotation_count=old.rotation_count + 1)
        logger.info(
            "encryption_key_rotated",
            old_key_id=old.key_id,
            new_key_id=new.key_id,
            rotation_count=new.rotation_count,
        )
        return new.key_id

    def compromise_key(self, key_id: str) -> str:
        """Mark a key compromised.  Rotates when it was the active key.

        Returns:
            The id of the key now active.
        """
        key = self.get_key(key_id)
        was_current = key_id == self._current_key_id
        key.status = KeyStatus.COMPROMISED
        logger.warning("encryption_key_compromised", key_id=key_id, was_current=was_current)
        if was_current:
            return self.rotate()
        return self._current_key_id

    def purge_expired(self) -> list[str]:
        """Drop superseded keys whose retention has ended."""
        now = self._clock()
        purged = [
            key_id for key_id, key in self._keys.items()
            if key_id != self._current_key_id
            and key.retain_until is not None
            and key.retain_until < now
        ]
        for key_id in purged:
            del self._keys[key_id]
        if purged:
            logger.info("encryption_keys_purged", count=len(purged))
        return purged

    # -- status --

    def rotation_status(self) -> dict:
        key = self._keys[self._current_key_id]
        remaining = key.expires_at - self._clock()
        days = max(0, remaining.days)
        return {
            "current_key_id": key.key_id,
            "days_until_expiry": days,
            "needs_rotation": days <= self._settings.rotation_warning_days,
            "rotation_count": key.rotation_count,
        }

    def stats(self) -> dict:
        keys = list(self._keys.values())
        return {
            "total_keys": len(keys),
            "active_keys": sum(1 for k in keys if k.status == KeyStatus.ACTIVE),
            "expired_keys": sum(1 for k in keys if k.status == KeyStatus.EXPIRED),
            "compromised_keys": sum(1 for k in keys if k.status == KeyStatus.COMPROMISED),
            "current_key_id": self._current_key_id,
            "algorithm": ALGORITHM,
        }

    def self_test(self) -> bool:
        """Seal and open a sample value with the active key."""
        sample = "crisisbridge-key-ring-self-test"
        aad = f"self-test:{uuid.uuid4()}"
        return self.decrypt(self.encrypt(sample, aad), aad) == sample
