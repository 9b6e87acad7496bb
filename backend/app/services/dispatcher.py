from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from html import escape as html_escape
from typing import Protocol

from app.core.config import settings
from app.core.errors import DispatchError
from app.models.verification_token import TokenPurpose
from app.services.email import EmailDeliveryError, EmailNotConfiguredError, send_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationDispatcher(Protocol):
    name: str

    def dispatch(self, email: str, verification_url: str, *, purpose: str) -> DispatchResult:
        """Deliver the URL. Must report failure through the result, never by raising."""
        ...


def build_verification_url(purpose: str, plaintext: str) -> str:
    base = settings.FRONTEND_BASE_URL
    if purpose == TokenPurpose.PASSWORD_RESET.value:
        return f"{base}/reset-password/{plaintext}"
    return f"{base}/verify-email/{plaintext}"


@dataclass(frozen=True)
class MessageTemplate:
    subject: str
    intro: str
    action: str
    footer: str


_TEMPLATES: dict[str, MessageTemplate] = {
    TokenPurpose.EMAIL_VERIFICATION.value: MessageTemplate(
        subject="Verify your email address",
        intro="Please confirm your email address to finish setting up your account.",
        action="Verify email",
        footer="If you did not create an account, you can ignore this email.",
    ),
    TokenPurpose.PASSWORD_RESET.value: MessageTemplate(
        subject="Reset your password",
        intro="We received a request to reset your password.",
        action="Reset password",
        footer="If you did not request a password reset, you can ignore this email.",
    ),
}


def render_message(purpose: str, verification_url: str) -> tuple[str, str, str]:
    """Returns (subject, text body, html body)."""
    template = _TEMPLATES.get(purpose, _TEMPLATES[TokenPurpose.EMAIL_VERIFICATION.value])
    expires = settings.VERIFICATION_TOKEN_TTL_MINUTES
    expires_text = f"{expires} minute{'s' if expires != 1 else ''}"

    text = "\n".join(
        [
            template.intro,
            "",
            f"{template.action}: {verification_url}",
            "",
            f"This link expires in {expires_text} and can only be used once.",
            template.footer,
        ]
    )
    url = html_escape(verification_url, quote=True)
    html = f"""
    <div style="font-family: Arial, sans-serif; line-height: 1.6;">
      <p>{html_escape(template.intro)}</p>
      <p style="margin: 24px 0;">
        <a href="{url}" style="background-color: #2563eb; color: #ffffff; padding: 12px 24px; text-decoration: none; border-radius: 6px;">
          {html_escape(template.action)}
        </a>
      </p>
      <p>This link expires in {expires_text} and can only be used once.</p>
      <p style="color: #64748b;">{html_escape(template.footer)}</p>
    </div>
    """.strip()
    return template.subject, text, html


class _BaseDispatcher:
    name = "base"

    def dispatch(self, email: str, verification_url: str, *, purpose: str) -> DispatchResult:
        try:
            message_id = self._deliver(email, verification_url, purpose=purpose)
        except DispatchError as e:
            logger.warning("Dispatch failed: dispatcher=%s to=%s purpose=%s error=%s", self.name, email, purpose, e)
            return DispatchResult(success=False, error=e.message)
        except Exception as e:  # noqa: BLE001 - the token is already committed; report, never raise
            logger.exception("Dispatch failed unexpectedly: dispatcher=%s to=%s purpose=%s", self.name, email, purpose)
            return DispatchResult(success=False, error=f"Unexpected dispatch error: {e.__class__.__name__}")
        return DispatchResult(success=True, message_id=message_id)

    def _deliver(self, email: str, verification_url: str, *, purpose: str) -> str | None:
        raise NotImplementedError


class EmailDispatcher(_BaseDispatcher):
    name = "email"

    def _deliver(self, email: str, verification_url: str, *, purpose: str) -> str | None:
        subject, text, html = render_message(purpose, verification_url)
        try:
            return send_email(to_email=email, subject=subject, text=text, html=html)
        except EmailNotConfiguredError as e:
            raise DispatchError(f"Email delivery not configured: {e}") from e
        except EmailDeliveryError as e:
            raise DispatchError(str(e)) from e


class LogOnlyDispatcher(_BaseDispatcher):
    """Used when EMAIL_ENABLED=false. Records the delivery without the URL."""

    name = "log"

    def _deliver(self, email: str, verification_url: str, *, purpose: str) -> str | None:
        logger.info("Email delivery disabled; skipping send to=%s purpose=%s", email, purpose)
        return None


_dispatcher: NotificationDispatcher | None = None
_lock = threading.Lock()


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is not None:
        return _dispatcher
    with _lock:
        if _dispatcher is None:
            _dispatcher = EmailDispatcher() if settings.EMAIL_ENABLED else LogOnlyDispatcher()
            logger.info("Notification dispatcher: %s", _dispatcher.name)
    return _dispatcher


def reset_dispatcher() -> None:
    global _dispatcher
    with _lock:
        _dispatcher = None
