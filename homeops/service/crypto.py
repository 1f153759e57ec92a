"""AES-256-GCM sealing for MFA secrets.

Ciphertext is serialized as ``iv:tag:ciphertext`` with each part hex encoded.
The key id is kept next to the ciphertext on the owning row rather than inside
it, so keys can be rotated by re-encrypting rows that carry an old id.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from homeops.logging import get_logger

logger = get_logger(__name__)

IV_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

# Non-production only; production refuses to start without MFA_ENCRYPTION_KEY
_DEV_PASSPHRASE = b"dev-mfa-key-fallback"
_DEV_SALT = b"salt"


class InvalidKey(Exception):
    """Key material is missing or unusable."""


class InvalidCiphertext(Exception):
    """Serialized ciphertext is malformed or fails authentication."""


def _decode_key(material: str) -> bytes:
    raw = material.strip()
    candidates = []
    try:
        candidates.append(bytes.fromhex(raw))
    except ValueError:
        pass
    try:
        candidates.append(base64.b64decode(raw + "=" * (-len(raw) % 4), validate=True))
    except (binascii.Error, ValueError):
        pass
    for key in candidates:
        if len(key) >= KEY_BYTES:
            return key[:KEY_BYTES]
    raise InvalidKey("MFA encryption key must decode (hex or base64) to at least 32 bytes")


def derive_dev_key() -> bytes:
    return hashlib.scrypt(_DEV_PASSPHRASE, salt=_DEV_SALT, n=16384, r=8, p=1, dklen=KEY_BYTES)


class MfaCipher:
    def __init__(self, key: bytes, key_id: str = "k1") -> None:
        if len(key) != KEY_BYTES:
            raise InvalidKey("AES-256-GCM requires a 32-byte key")
        self._aead = AESGCM(key)
        self.key_id = key_id

    @classmethod
    def from_settings(
        cls, material: Optional[str], key_id: str, *, production: bool
    ) -> "MfaCipher":
        if material:
            return cls(_decode_key(material), key_id)
        if production:
            raise InvalidKey("MFA_ENCRYPTION_KEY is required in production")
        logger.warning("mfa_dev_key_in_use", key_id="dev")
        return cls(derive_dev_key(), "dev")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{body.hex()}"

    def decrypt(self, serialized: str) -> str:
        parts = (serialized or "").split(":")
        if len(parts) != 3:
            raise InvalidCiphertext("expected iv:tag:ciphertext")
        try:
            iv, tag, body = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise InvalidCiphertext("ciphertext parts must be hex") from exc
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise InvalidCiphertext("bad iv or tag length")
        try:
            return self._aead.decrypt(iv, body + tag, None).decode("utf-8")
        except InvalidTag as exc:
            raise InvalidCiphertext("authentication failed") from exc


__all__ = ["MfaCipher", "InvalidKey", "InvalidCiphertext", "derive_dev_key"]
