# app/core/security.py
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from hashlib import sha256

from app.core.config import settings

RANDOM_BYTES = 32  # 256 bits
PLAINTEXT_TOKEN_LENGTH = 64  # hex-encoded SHA-256


@dataclass(frozen=True)
class GeneratedToken:
    plaintext: str
    storage_hash: str

    def __repr__(self) -> str:
        return f"GeneratedToken(storage_hash={self.storage_hash[:8]}...)"


def _require_token_secret() -> str:
    secret = settings.TOKEN_SECRET or ""
    if not secret.strip():
        raise RuntimeError("TOKEN_SECRET must be set to hash verification tokens.")
    return secret


def generate_token(user_id: int, email: str, purpose: str) -> GeneratedToken:
    """
    Build a fresh verification token for (user, purpose).

    The random bytes go into the digest first so the token's entropy never depends on the
    timestamp or the user context; those only make accidental duplicates impossible in practice.
    The plaintext is handed to the caller once and only its storage hash is ever persisted.
    """
    random_bytes = secrets.token_bytes(RANDOM_BYTES)
    timestamp = str(time.time_ns()).encode("ascii")
    context = f"{user_id}:{email}:{purpose}".encode("utf-8")

    digest = sha256()
    digest.update(random_bytes)
    digest.update(timestamp)
    digest.update(context)
    plaintext = digest.hexdigest()

    return GeneratedToken(plaintext=plaintext, storage_hash=hash_token(plaintext))


def hash_token(plaintext: str) -> str:
    """
    One-way storage hash: SHA-256(plaintext || TOKEN_SECRET).
    """
    secret = _require_token_secret()
    return sha256((plaintext + secret).encode("utf-8")).hexdigest()


def is_well_formed_token(value: str | None) -> bool:
    if not value or len(value) != PLAINTEXT_TOKEN_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)
