from __future__ import annotations
import json
import os
from base64 import urlsafe_b64decode
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from oauth_vault.core.config import Settings
from oauth_vault.core.errors import DecryptionError, EncryptionError, ValidationError

KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
MAX_PLAINTEXT_BYTES = 64 * 1024

# Values that have shipped in sample .env files; decoded or raw, they are never a real key.
_PLACEHOLDER_KEYS = {
    b"your-32-char-encryption-key-here",
    b"changeme-changeme-changeme-chang",
    b"change-me-change-me-change-me-ch",
    b"00000000000000000000000000000000",
    b"12345678901234567890123456789012",
    b"abcdefghijklmnopqrstuvwxyz123456",
}


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    key_version: int


def load_key(raw_value: str, name: str = "ENCRYPTION_KEY") -> bytes:
    """
    Decode and vet one key. The key must be urlsafe base64 that decodes to exactly 32 bytes
    and must not be a known placeholder or a single repeated byte.
    """
    value = (raw_value or "").strip()
    if not value:
        raise EncryptionError(f"{name} is empty. Set it in .env")
    if value.encode() in _PLACEHOLDER_KEYS:
        raise EncryptionError(f"{name} is a placeholder value; generate a random key")

    try:
        key = urlsafe_b64decode(value.encode() + b"=" * (-len(value) % 4))
    except (ValueError, TypeError) as e:
        raise EncryptionError(f"Invalid {name} format (must be urlsafe base64 of 32 bytes)") from e

    if len(key) != KEY_BYTES:
        raise EncryptionError(f"{name} must decode to exactly {KEY_BYTES} bytes")
    if key in _PLACEHOLDER_KEYS or len(set(key)) == 1:
        raise EncryptionError(f"{name} is a placeholder value; generate a random key")
    return key


class TokenCipher:
    """AES-256-GCM with a fresh random IV per call and versioned keys for rotation."""

    def __init__(self, current_key: bytes, current_version: int, previous_keys: Optional[Mapping[int, bytes]] = None):
        self._keys: Dict[int, AESGCM] = {}
        for version, key in (previous_keys or {}).items():
            self._keys[int(version)] = AESGCM(key)
        self._keys[current_version] = AESGCM(current_key)
        self.key_version = current_version

    @classmethod
    def from_settings(cls, cfg: Settings) -> "TokenCipher":
        current = load_key(cfg.ENCRYPTION_KEY)
        previous = {
            int(version): load_key(value, name=f"ENCRYPTION_PREVIOUS_KEYS[{version}]")
            for version, value in cfg.ENCRYPTION_PREVIOUS_KEYS.items()
        }
        if cfg.ENCRYPTION_KEY_VERSION in previous:
            raise EncryptionError("ENCRYPTION_KEY_VERSION is also listed in ENCRYPTION_PREVIOUS_KEYS")
        return cls(current, cfg.ENCRYPTION_KEY_VERSION, previous)

    def encrypt(self, plaintext: bytes, associated_data: Optional[bytes] = None) -> EncryptedPayload:
        if len(plaintext) > MAX_PLAINTEXT_BYTES:
            raise ValidationError("token payload too large")
        iv = os.urandom(IV_BYTES)
        sealed = self._keys[self.key_version].encrypt(iv, plaintext, associated_data)
        return EncryptedPayload(
            ciphertext=sealed[:-TAG_BYTES],
            iv=iv,
            auth_tag=sealed[-TAG_BYTES:],
            key_version=self.key_version,
        )

    def decrypt(self, payload: EncryptedPayload, associated_data: Optional[bytes] = None) -> bytes:
        aead = self._keys.get(payload.key_version)
        if aead is None:
            raise DecryptionError(f"no key for version {payload.key_version}")
        if len(payload.iv) != IV_BYTES or len(payload.auth_tag) != TAG_BYTES:
            raise DecryptionError("malformed encrypted payload")
        try:
            return aead.decrypt(payload.iv, payload.ciphertext + payload.auth_tag, associated_data)
        except InvalidTag as e:
            raise DecryptionError("authentication failed") from e

    def encrypt_json(self, document: Dict[str, Any], associated_data: Optional[bytes] = None) -> EncryptedPayload:
        return self.encrypt(json.dumps(document, separators=(",", ":")).encode("utf-8"), associated_data)

    def decrypt_json(self, payload: EncryptedPayload, associated_data: Optional[bytes] = None) -> Dict[str, Any]:
        raw = self.decrypt(payload, associated_data)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError("decrypted payload is not a token document") from e

