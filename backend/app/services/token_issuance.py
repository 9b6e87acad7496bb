from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import IssuanceConflict, ServiceUnavailable, ValidationError
from app.core.security import generate_token
from app.models.verification_token import TokenPurpose
from app.services.token_store import TokenStore, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token_id: int
    user_id: int
    email: str
    purpose: str
    sequence: int
    expires_at: datetime
    superseded_count: int
    # Only ever handed to the dispatcher; never re-derivable from the store.
    plaintext: str = field(repr=False)


def normalize_purpose(purpose: TokenPurpose | str) -> str:
    raw = purpose.value if isinstance(purpose, TokenPurpose) else str(purpose or "").strip().lower()
    try:
        return TokenPurpose(raw).value
    except ValueError:
        allowed = ", ".join(p.value for p in TokenPurpose)
        raise ValidationError(f"Unsupported purpose {raw!r}. Supported: {allowed}")


def _validate_owner(user_id: int, email: str) -> str:
    if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
        raise ValidationError("user_id must be a positive integer")
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValidationError("A valid email is required")
    return normalized


class TokenIssuer:
    """
    Atomic issuance: allocate the next sequence, supersede the live token and insert the new
    one in a single transaction.

    Concurrent issuers for the same (user, purpose) are serialized by the database: the unique
    (user_id, purpose, sequence) constraint and the single-valid partial index make the loser's
    INSERT fail, and the loser retries with a freshly read sequence.
    """

    def __init__(
        self,
        db: Session,
        *,
        ttl: timedelta | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.store = TokenStore(db)
        self.ttl = ttl or timedelta(minutes=settings.VERIFICATION_TOKEN_TTL_MINUTES)
        self.max_attempts = max(1, int(max_attempts or settings.ISSUANCE_MAX_ATTEMPTS))
        self._sleep = sleep

    def issue(
        self,
        *,
        user_id: int,
        email: str,
        purpose: TokenPurpose | str,
        now: datetime | None = None,
    ) -> IssuedToken:
        normalized_email = _validate_owner(user_id, email)
        normalized_purpose = normalize_purpose(purpose)

        conflicts = 0
        transient_failures = 0
        while True:
            try:
                return self._issue_once(
                    user_id=user_id,
                    email=normalized_email,
                    purpose=normalized_purpose,
                    now=now,
                )
            except IntegrityError as exc:
                self.db.rollback()
                conflicts += 1
                logger.warning(
                    "Token issuance conflict (attempt %d/%d): user_id=%s purpose=%s",
                    conflicts,
                    self.max_attempts,
                    user_id,
                    normalized_purpose,
                )
                if conflicts >= self.max_attempts:
                    raise IssuanceConflict(details={"attempts": conflicts}) from exc
            except OperationalError as exc:
                self.db.rollback()
                transient_failures += 1
                if transient_failures >= self.max_attempts:
                    logger.error(
                        "Token issuance failed after %d transient errors: user_id=%s purpose=%s",
                        transient_failures,
                        user_id,
                        normalized_purpose,
                    )
                    raise ServiceUnavailable() from exc
                delay = self._backoff_delay(transient_failures)
                logger.warning(
                    "Transient persistence error (attempt %d/%d): %s. Retrying in %.2fs",
                    transient_failures,
                    self.max_attempts,
                    exc.__class__.__name__,
                    delay,
                )
                self._sleep(delay)

    def _issue_once(self, *, user_id: int, email: str, purpose: str, now: datetime | None) -> IssuedToken:
        issued_at = now or utc_now()
        token = generate_token(user_id, email, purpose)

        sequence = self.store.next_sequence(user_id, purpose)
        superseded = self.store.supersede_valid(user_id, purpose, now=issued_at)
        record = self.store.insert(
            user_id=user_id,
            email=email,
            purpose=purpose,
            sequence=sequence,
            hashed_token=token.storage_hash,
            created_at=issued_at,
            expires_at=issued_at + self.ttl,
        )
        token_id = record.id
        self.db.commit()

        logger.info(
            "Verification token issued: user_id=%s purpose=%s sequence=%s superseded=%s hash_prefix=%s...",
            user_id,
            purpose,
            sequence,
            superseded,
            token.storage_hash[:8],
        )
        return IssuedToken(
            token_id=token_id,
            user_id=user_id,
            email=email,
            purpose=purpose,
            sequence=sequence,
            expires_at=issued_at + self.ttl,
            superseded_count=superseded,
            plaintext=token.plaintext,
        )

    @staticmethod
    def _backoff_delay(attempt: int) -> float:
        # Exponential backoff with jitter, capped.
        base_delay = settings.ISSUANCE_RETRY_BASE_DELAY_MS * (2 ** (attempt - 1))
        jitter = random.uniform(0, base_delay * 0.1)
        return min(base_delay + jitter, settings.ISSUANCE_RETRY_MAX_DELAY_MS) / 1000
