from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.errors import AlreadyUsed, ExpiredToken, InvalidToken
from app.core.security import hash_token, is_well_formed_token
from app.models.verification_token import InvalidationReason, TokenPurpose
from app.services.token_issuance import normalize_purpose
from app.services.token_store import TokenStore, as_aware_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    token_id: int
    user_id: int
    email: str
    purpose: str
    sequence: int
    verified_at: datetime


class TokenVerifier:
    """
    Validates an inbound plaintext token and consumes it exactly once.

    Outcomes: success, ``InvalidToken`` (unknown, malformed, wrong purpose or superseded),
    ``ExpiredToken`` or ``AlreadyUsed``. The conditional update in ``TokenStore.consume`` is the
    only place that decides success, so two concurrent verifiers of the same token can never
    both win.
    """

    def __init__(self, db: Session):
        self.db = db
        self.store = TokenStore(db)

    def verify(
        self,
        plaintext: str,
        *,
        purpose: TokenPurpose | str | None = None,
        now: datetime | None = None,
        commit: bool = True,
    ) -> VerificationResult:
        """
        With ``commit=False`` the consumption is flushed but left for the caller to commit
        together with its dependent effect (e.g. marking the account verified).
        """
        if not is_well_formed_token(plaintext):
            logger.warning("Token verification failed - malformed token")
            raise InvalidToken()

        expected_purpose = normalize_purpose(purpose) if purpose is not None else None
        storage_hash = hash_token(plaintext)
        record = self.store.find_by_hash(storage_hash)

        # Unknown token and wrong purpose look identical to the caller.
        if record is None or not hmac.compare_digest(record.hashed_token, storage_hash):
            logger.warning("Token verification failed - not found hash_prefix=%s...", storage_hash[:8])
            raise InvalidToken()
        if expected_purpose is not None and record.purpose != expected_purpose:
            logger.warning(
                "Token verification failed - purpose mismatch token_id=%s hash_prefix=%s...",
                record.id,
                storage_hash[:8],
            )
            raise InvalidToken()

        if not record.is_valid:
            if record.used_at is not None:
                logger.info("Token verification failed - already used token_id=%s", record.id)
                raise AlreadyUsed()
            # Once expired, a token keeps answering "expired" on every later attempt, not "invalid".
            if record.invalidation_reason == InvalidationReason.EXPIRED.value:
                logger.info("Token verification failed - expired token_id=%s", record.id)
                raise ExpiredToken()
            logger.info(
                "Token verification failed - invalidated token_id=%s reason=%s",
                record.id,
                record.invalidation_reason,
            )
            raise InvalidToken()

        checked_at = now or utc_now()
        token_id = record.id
        user_id = record.user_id
        email = record.email
        token_purpose = record.purpose
        sequence = record.sequence

        if checked_at > as_aware_utc(record.expires_at):
            flipped = self.store.expire(record, now=checked_at)
            # The expiry flip is persisted even though the request itself fails.
            self.db.commit()
            logger.info(
                "Token verification failed - expired token_id=%s sequence=%s flipped=%s",
                token_id,
                sequence,
                flipped,
            )
            raise ExpiredToken()

        if not self.store.consume(record, now=checked_at):
            logger.warning(
                "Token verification lost consume race token_id=%s sequence=%s", token_id, sequence
            )
            raise AlreadyUsed()

        if commit:
            self.db.commit()
        else:
            self.db.flush()

        logger.info(
            "Token verification successful: user_id=%s purpose=%s sequence=%s",
            user_id,
            token_purpose,
            sequence,
        )
        return VerificationResult(
            token_id=token_id,
            user_id=user_id,
            email=email,
            purpose=token_purpose,
            sequence=sequence,
            verified_at=checked_at,
        )
