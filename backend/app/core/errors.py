from __future__ import annotations

from typing import Any

from fastapi import status


class TokenServiceError(Exception):
    """
    Base class for typed outcomes of the verification-token core.

    Every subclass carries a stable error code and the HTTP status the API layer uses when
    rendering it. Messages are safe to return to clients.
    """

    error_code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class ValidationError(TokenServiceError):
    error_code = "VALIDATION_ERROR"
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    default_message = "Invalid request"


class IssuanceConflict(TokenServiceError):
    """Sequence allocation kept colliding with concurrent issuers. Safe to retry."""

    error_code = "ISSUANCE_CONFLICT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Token issuance is busy, please retry"

    @property
    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": "1"}


class ServiceUnavailable(TokenServiceError):
    error_code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


class InvalidToken(TokenServiceError):
    error_code = "INVALID_TOKEN"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid verification token"


class ExpiredToken(TokenServiceError):
    error_code = "EXPIRED_TOKEN"
    status_code = status.HTTP_410_GONE
    default_message = "Verification token has expired"


class AlreadyUsed(TokenServiceError):
    error_code = "ALREADY_USED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Verification token has already been used"


class RateLimited(TokenServiceError):
    error_code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests"

    def __init__(self, retry_after_seconds: int, message: str | None = None, *, limit: int | None = None) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        details: dict[str, Any] = {"retry_after_seconds": self.retry_after_seconds}
        if limit is not None:
            details["limit"] = limit
        super().__init__(message, details=details)

    @property
    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class DispatchError(TokenServiceError):
    """Delivery failed. Logged by the caller, never rolls back an issued token."""

    error_code = "DISPATCH_FAILED"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Unable to deliver the verification message"


class UnknownIdentity(TokenServiceError):
    error_code = "USER_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "User not found"


class AlreadyVerified(TokenServiceError):
    error_code = "ALREADY_VERIFIED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Email is already verified"


# Failures a user can fix by requesting a fresh token.
RESENDABLE_ERRORS: tuple[type[TokenServiceError], ...] = (ExpiredToken, AlreadyUsed)
