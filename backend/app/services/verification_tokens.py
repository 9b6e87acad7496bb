from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AlreadyVerified, InvalidToken, UnknownIdentity
from app.models.user import User
from app.models.verification_token import TokenPurpose
from app.services.dispatcher import NotificationDispatcher, build_verification_url, get_dispatcher
from app.services.rate_limiter import RateLimiter, enforce_rate_limit, get_rate_limiter
from app.services.token_issuance import TokenIssuer, normalize_purpose
from app.services.token_store import TokenStore, utc_now
from app.services.token_verifier import TokenVerifier, VerificationResult

logger = logging.getLogger(__name__)

ISSUANCE_ROUTE_KEY = "token_issuance"


@dataclass(frozen=True)
class IssuanceOutcome:
    token_sent: bool
    token_sequence: int
    expires_at: datetime
    message_id: str | None = None


def _resolve_user(db: Session, identity: int | str) -> User | None:
    if isinstance(identity, int) and not isinstance(identity, bool):
        return db.get(User, identity)
    email = str(identity or "").strip().lower()
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def _identity_key(identity: int | str) -> str:
    if isinstance(identity, int) and not isinstance(identity, bool):
        return f"user:{identity}"
    return f"email:{str(identity or '').strip().lower()}"


def request_token(
    db: Session,
    *,
    identity: int | str,
    purpose: TokenPurpose | str,
    client_ip: str | None = None,
    limiter: RateLimiter | None = None,
    dispatcher: NotificationDispatcher | None = None,
    correlation_id: str | None = None,
) -> IssuanceOutcome:
    """
    Issuance entry point: rate limit, resolve the owner, issue, then hand the URL to the
    dispatcher.

    Rate limiting runs before any user lookup or token work, so a rejected request creates no
    row and consumes no sequence number. Dispatch failure is reported through ``token_sent``;
    the committed token stays valid and a resend is simply another issuance.
    """
    normalized_purpose = normalize_purpose(purpose)

    identifiers = [_identity_key(identity)]
    if client_ip:
        identifiers.insert(0, f"ip:{client_ip}")
    enforce_rate_limit(
        limiter or get_rate_limiter(),
        identifiers=identifiers,
        route_key=ISSUANCE_ROUTE_KEY,
        limit=settings.RATE_LIMIT_ISSUANCE_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_ISSUANCE_WINDOW_SECONDS,
        correlation_id=correlation_id,
    )

    user = _resolve_user(db, identity)
    if user is None or not user.is_active:
        logger.warning("Token issuance failed - user not found correlation_id=%s", correlation_id)
        raise UnknownIdentity()
    if normalized_purpose == TokenPurpose.EMAIL_VERIFICATION.value and user.is_email_verified:
        logger.info(
            "Token issuance refused - email already verified user_id=%s correlation_id=%s",
            user.id,
            correlation_id,
        )
        raise AlreadyVerified()

    issued = TokenIssuer(db).issue(user_id=user.id, email=user.email, purpose=normalized_purpose)

    sender = dispatcher or get_dispatcher()
    result = sender.dispatch(
        issued.email,
        build_verification_url(normalized_purpose, issued.plaintext),
        purpose=normalized_purpose,
    )
    if result.success:
        logger.info(
            "Verification message dispatched: user_id=%s purpose=%s sequence=%s msg_id=%s correlation_id=%s",
            issued.user_id,
            normalized_purpose,
            issued.sequence,
            result.message_id,
            correlation_id,
        )
    else:
        logger.error(
            "Verification message not delivered; token stays valid: user_id=%s purpose=%s sequence=%s "
            "error=%s correlation_id=%s",
            issued.user_id,
            normalized_purpose,
            issued.sequence,
            result.error,
            correlation_id,
        )

    return IssuanceOutcome(
        token_sent=result.success,
        token_sequence=issued.sequence,
        expires_at=issued.expires_at,
        message_id=result.message_id,
    )


def confirm_email_verification(db: Session, token: str) -> VerificationResult:
    """
    Consumes an email-verification token and marks the owning account verified in the same
    commit, so the account flag flips exactly once per token.
    """
    result = TokenVerifier(db).verify(token, purpose=TokenPurpose.EMAIL_VERIFICATION, commit=False)

    user = db.get(User, result.user_id)
    if user is None or not user.is_active or (user.email or "").strip().lower() != result.email:
        # Owner disappeared or changed address since issuance; undo the consumption.
        db.rollback()
        logger.warning("Email verification rejected - token owner mismatch token_id=%s", result.token_id)
        raise InvalidToken()

    if not user.is_email_verified:
        user.is_email_verified = True
        user.email_verified_at = result.verified_at
    db.commit()
    return result


def confirm_password_reset(db: Session, token: str) -> VerificationResult:
    """
    Consumes a password-reset token. The caller performs the actual password change.
    """
    return TokenVerifier(db).verify(token, purpose=TokenPurpose.PASSWORD_RESET)


def token_health(db: Session, *, now: datetime | None = None) -> dict:
    checked_at = now or utc_now()
    since = checked_at - timedelta(hours=24)
    return {
        "last_24_hours": TokenStore(db).stats_since(since),
        "rate_limiter": get_rate_limiter().backend_name,
        "dispatcher": get_dispatcher().name,
        "timestamp": checked_at,
    }
