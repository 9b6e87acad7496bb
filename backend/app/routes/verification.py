# app/routes/verification.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import RESENDABLE_ERRORS, TokenServiceError
from app.dependencies.rate_limit import check_verification_rate_limit, get_client_ip
from app.dependencies.request_id import get_correlation_id
from app.models.verification_token import TokenPurpose
from app.schemas.verification import (
    IssueTokenIn,
    IssueTokenOut,
    ResendVerifyIn,
    TokenHealthOut,
    TokenIn,
    VerifyFailureOut,
    VerifyOut,
)
from app.services.token_verifier import VerificationResult
from app.services.verification_tokens import (
    confirm_email_verification,
    confirm_password_reset,
    request_token,
    token_health,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["verification"])

_FAILURE_RESPONSES = {
    400: {"model": VerifyFailureOut},
    409: {"model": VerifyFailureOut},
    410: {"model": VerifyFailureOut},
    429: {"model": VerifyFailureOut},
}


def _verification_failure(exc: TokenServiceError) -> JSONResponse:
    body = VerifyFailureOut(
        error_code=exc.error_code,
        message=exc.message,
        resend_available=isinstance(exc, RESENDABLE_ERRORS),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(by_alias=True),
        headers=exc.headers,
    )


def _verified(result: VerificationResult) -> VerifyOut:
    return VerifyOut(email=result.email, verified_at=result.verified_at)


# -----------------------------
# Issuance
# -----------------------------
@router.post("/tokens", response_model=IssueTokenOut)
def issue_token(
    payload: IssueTokenIn,
    request: Request,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
):
    outcome = request_token(
        db,
        identity=payload.identity,
        purpose=payload.purpose,
        client_ip=get_client_ip(request),
        correlation_id=correlation_id,
    )
    return IssueTokenOut(token_sent=outcome.token_sent, token_sequence=outcome.token_sequence)


@router.post("/resend-verification", response_model=IssueTokenOut)
def resend_verification(
    payload: ResendVerifyIn,
    request: Request,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
):
    outcome = request_token(
        db,
        identity=str(payload.email),
        purpose=TokenPurpose.EMAIL_VERIFICATION,
        client_ip=get_client_ip(request),
        correlation_id=correlation_id,
    )
    return IssueTokenOut(token_sent=outcome.token_sent, token_sequence=outcome.token_sequence)


# -----------------------------
# Verification
# -----------------------------
@router.get("/verify-email/{token}", response_model=VerifyOut, responses=_FAILURE_RESPONSES)
def verify_email(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
):
    try:
        check_verification_rate_limit(request, correlation_id=correlation_id)
        result = confirm_email_verification(db, token)
    except TokenServiceError as e:
        logger.info("Email verification failed: error=%s correlation_id=%s", e.error_code, correlation_id)
        return _verification_failure(e)

    logger.info("Email verification successful: user_id=%s correlation_id=%s", result.user_id, correlation_id)
    return _verified(result)


@router.post("/password-reset/verify", response_model=VerifyOut, responses=_FAILURE_RESPONSES)
def verify_password_reset(
    payload: TokenIn,
    request: Request,
    db: Session = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id),
):
    try:
        check_verification_rate_limit(request, correlation_id=correlation_id)
        result = confirm_password_reset(db, payload.token)
    except TokenServiceError as e:
        logger.info("Password reset verification failed: error=%s correlation_id=%s", e.error_code, correlation_id)
        return _verification_failure(e)

    return _verified(result)


@router.get("/tokens/health", response_model=TokenHealthOut)
def get_token_health(db: Session = Depends(get_db)):
    return token_health(db)
