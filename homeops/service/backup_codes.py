from __future__ import annotations

import hashlib
import secrets
from typing import List

# No 0/1/I/O so codes survive being read aloud or copied by hand
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
DEFAULT_COUNT = 8


def normalize(code: str) -> str:
    return "".join((code or "").split()).upper()


def hash_code(code: str) -> str:
    return hashlib.sha256(normalize(code).encode("utf-8")).hexdigest()


def generate(count: int = DEFAULT_COUNT) -> List[str]:
    """Return ``count`` distinct plaintext codes. Shown to the user once."""
    codes: List[str] = []
    seen = set()
    while len(codes) < count:
        code = "".join(secrets.choice(ALPHABET) for _ in range(CODE_LENGTH))
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


def looks_like_backup_code(value: str) -> bool:
    candidate = normalize(value)
    return len(candidate) == CODE_LENGTH and all(ch in ALPHABET for ch in candidate)


__all__ = ["ALPHABET", "CODE_LENGTH", "DEFAULT_COUNT", "generate", "hash_code", "normalize"]
