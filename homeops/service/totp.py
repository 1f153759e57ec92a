from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
import qrcode.constants
from qrcode.image.svg import SvgPathImage

from homeops.logging import get_logger

logger = get_logger(__name__)

SECRET_BYTES = 20  # 160 bits
DIGITS = 6
INTERVAL = 30
DRIFT_STEPS = 1


def generate_secret() -> str:
    """Return a new base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_code(secret: str, timestamp: Optional[float] = None, *, interval: int = INTERVAL) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    ts = time.time() if timestamp is None else timestamp
    counter = int(ts // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**DIGITS)
    return str(code_int).zfill(DIGITS)


def verify(secret: str, code: str, *, timestamp: Optional[float] = None, window: int = DRIFT_STEPS) -> bool:
    """Check a 6-digit code against the current step and +/- ``window`` steps."""
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != DIGITS or not candidate.isdigit():
        return False
    now = time.time() if timestamp is None else timestamp
    for offset in range(-window, window + 1):
        generated = generate_code(secret, now + offset * INTERVAL)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def otpauth_uri(issuer: str, account_label: str, secret: str) -> str:
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='@')}"
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": DIGITS,
            "period": INTERVAL,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


def qr_data_url(uri: str) -> Optional[str]:
    """Render ``uri`` as an SVG QR code data URL; None if rendering fails."""
    try:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
            image_factory=SvgPathImage,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        buffer = io.BytesIO()
        qr.make_image().save(buffer)
    except (ValueError, OSError) as exc:
        logger.warning("totp_qr_render_failed", error=str(exc))
        return None
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


__all__ = ["generate_secret", "generate_code", "verify", "otpauth_uri", "qr_data_url"]
