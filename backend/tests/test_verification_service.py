from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.errors import InvalidToken, RateLimited, UnknownIdentity, ValidationError
from app.models.user import User
from app.models.verification_token import VerificationToken
from app.services.rate_limiter import InMemoryRateLimiter
from app.services.token_store import utc_now
from app.services.verification_tokens import confirm_email_verification, request_token, token_health


def test_request_token_dispatches_to_owner(db_session: Session, users, outbox):
    user, _ = users

    outcome = request_token(db_session, identity=user.id, purpose="email_verification", client_ip="10.0.0.1")

    assert outcome.token_sent is True
    assert outcome.token_sequence == 1
    assert outcome.message_id == "msg_1"
    assert outbox.sent == [
        {"email": user.email, "url": outbox.sent[0]["url"], "purpose": "email_verification"},
    ]


def test_rate_limited_request_does_not_touch_the_store(db_session: Session, users):
    user, _ = users
    limiter = InMemoryRateLimiter()
    request_token(db_session, identity=user.email, purpose="password_reset", limiter=limiter)

    with pytest.raises(RateLimited):
        for _ in range(20):
            request_token(db_session, identity=user.email, purpose="password_reset", limiter=limiter)

    assert db_session.query(VerificationToken).count() == 10


def test_inactive_user_is_unknown(db_session: Session, users):
    user, _ = users
    user.is_active = False
    db_session.commit()

    with pytest.raises(UnknownIdentity):
        request_token(db_session, identity=user.email, purpose="email_verification")


def test_email_change_after_issuance_voids_verification(db_session: Session, users, outbox):
    user, _ = users
    request_token(db_session, identity=user.id, purpose="email_verification")
    user.email = "alice.new@example.com"
    db_session.commit()

    with pytest.raises(InvalidToken):
        confirm_email_verification(db_session, outbox.last_token)

    db_session.expire_all()
    refreshed = db_session.get(User, user.id)
    assert refreshed.is_email_verified is False
    # The consumption was rolled back with the rejected verification.
    assert db_session.query(VerificationToken).one().is_valid is True


def test_token_health_only_counts_last_24_hours(db_session: Session, users):
    user, _ = users
    now = utc_now()
    request_token(db_session, identity=user.id, purpose="password_reset")
    old = db_session.query(VerificationToken).one()
    old.created_at = now - timedelta(days=2)
    db_session.commit()
    request_token(db_session, identity=user.id, purpose="password_reset")

    health = token_health(db_session, now=now + timedelta(seconds=1))

    assert health["last_24_hours"] == [{"purpose": "password_reset", "is_valid": True, "count": 1}]
    assert health["rate_limiter"] == "memory"
    assert health["dispatcher"] == "fake"


def test_unsupported_purpose_is_rejected_as_unprocessable(db_session: Session, users):
    user, _ = users

    with pytest.raises(ValidationError) as exc_info:
        request_token(db_session, identity=user.id, purpose="magic_link")

    assert exc_info.value.status_code == 422
    assert exc_info.value.error_code == "VALIDATION_ERROR"
    assert db_session.query(VerificationToken).count() == 0
