"""Signed bearer tokens, opaque secrets, and the refresh-token store."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from homeops.logging import get_logger
from homeops.storage.common import HomeOpsStore

logger = get_logger(__name__)

# Allowance for small clock skew across nodes
CLOCK_SKEW_LEEWAY_SECONDS = 120
OPAQUE_TOKEN_BYTES = 32  # 256 bits


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{_encode_segment(signature)}"


def decode_jwt(
    token: str,
    secret: str,
    *,
    issuer: str,
    audience: str,
    accept_legacy: bool = False,
    leeway_seconds: int = CLOCK_SKEW_LEEWAY_SECONDS,
) -> Optional[dict[str, Any]]:
    """Verify an HS256 token and return its claims, or None.

    Tokens that carry neither ``iss`` nor ``aud`` are legacy tokens and are
    accepted only when ``accept_legacy`` is set.
    """
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except (AttributeError, ValueError):
        return None

    # Reject anything but HS256 to block algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        logger.warning("jwt_header_decode_failed")
        return None
    alg = header.get("alg") if isinstance(header, dict) else None
    if alg != "HS256":
        logger.warning("jwt_invalid_algorithm", alg=alg)
        return None

    signing_input = f"{header_b64}.{payload_b64}"
    expected_sig = _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )
    if not hmac.compare_digest(expected_sig, sig_b64):
        return None
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        return None
    if not isinstance(payload, dict):
        return None

    has_iss = "iss" in payload
    has_aud = "aud" in payload
    if not has_iss and not has_aud:
        if not accept_legacy:
            return None
    else:
        if payload.get("iss") != issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == audience
        elif isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None

    exp = payload.get("exp")
    if not exp:
        return None
    try:
        exp_ts = float(exp)
    except (TypeError, ValueError):
        return None
    if exp_ts <= time.time() - leeway_seconds:
        return None
    return payload


@dataclass
class IssuedRefreshToken:
    raw: str
    expires_at: datetime


class TokenStore:
    """Refresh tokens persisted only as SHA-256 hashes."""

    def __init__(self, store: HomeOpsStore, ttl: timedelta) -> None:
        self.store = store
        self.ttl = ttl

    def issue(self, user_id: int) -> IssuedRefreshToken:
        raw = generate_opaque_token()
        expires_at = datetime.now(timezone.utc) + self.ttl
        self.store.store_refresh_token(sha256_hex(raw), user_id, expires_at)
        return IssuedRefreshToken(raw=raw, expires_at=expires_at)

    def find(self, raw: str) -> Optional[tuple[int, datetime]]:
        if not raw:
            return None
        record = self.store.find_refresh_token(sha256_hex(raw))
        if not record:
            return None
        return record.user_id, record.expires_at

    def delete(self, raw: str) -> bool:
        if not raw:
            return False
        return self.store.delete_refresh_token(sha256_hex(raw))

    def delete_all_for_user(self, user_id: int) -> int:
        return self.store.delete_user_refresh_tokens(user_id)

    def sweep_expired(self) -> int:
        return self.store.sweep_expired_refresh_tokens()


class InvitationTokens:
    """Opaque invitation/activation secrets; only the hash is ever stored."""

    @staticmethod
    def generate() -> tuple[str, str]:
        raw = generate_opaque_token()
        return raw, sha256_hex(raw)

    @staticmethod
    def hash(raw: str) -> str:
        return sha256_hex(raw or "")


__all__ = [
    "encode_jwt",
    "decode_jwt",
    "generate_opaque_token",
    "sha256_hex",
    "TokenStore",
    "IssuedRefreshToken",
    "InvitationTokens",
]
