from __future__ import annotations

from fastapi import Request

from app.core.config import settings
from app.services.rate_limiter import enforce_rate_limit, get_rate_limiter

VERIFICATION_ROUTE_KEY = "token_verification"


def get_client_ip(request: Request) -> str:
    client = request.client
    return (client.host if client else None) or "unknown"


def check_verification_rate_limit(request: Request, *, correlation_id: str | None = None) -> None:
    """
    Per-IP guard for the verification endpoints. Raises ``RateLimited``.

    Limits are read per request so settings changes apply without re-importing routes.
    """
    enforce_rate_limit(
        get_rate_limiter(),
        identifiers=[f"ip:{get_client_ip(request)}"],
        route_key=VERIFICATION_ROUTE_KEY,
        limit=max(1, settings.RATE_LIMIT_VERIFY_MAX_REQUESTS),
        window_seconds=max(1, settings.RATE_LIMIT_VERIFY_WINDOW_SECONDS),
        correlation_id=correlation_id,
        route=request.url.path,
        http_method=request.method,
    )
