from __future__ import annotations

import boto3
import pytest
from botocore.stub import Stubber

from app.core import config as app_config
from app.services import email as email_module
from app.services.email import EmailDeliveryError, EmailNotConfiguredError, send_email


@pytest.fixture()
def email_settings(monkeypatch):
    monkeypatch.setattr(app_config.settings, "FROM_EMAIL", "no-reply@example.com")
    monkeypatch.setattr(app_config.settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(app_config.settings, "AWS_REGION", "us-east-1")
    return monkeypatch


def _send():
    return send_email(to_email="alice@example.com", subject="Verify", text="body", html="<p>body</p>")


def test_unknown_provider_is_not_configured(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "pigeon")

    with pytest.raises(EmailNotConfiguredError):
        _send()


def test_resend_requires_api_key(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "resend")
    email_settings.setattr(app_config.settings, "RESEND_API_KEY", "")

    with pytest.raises(EmailNotConfiguredError):
        _send()


def test_resend_returns_message_id(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "resend")
    captured: dict = {}

    def _fake_send(payload):
        captured.update(payload)
        return {"id": "re_msg_1"}

    email_settings.setattr(email_module.resend.Emails, "send", _fake_send)

    assert _send() == "re_msg_1"
    assert captured["to"] == ["alice@example.com"]
    assert captured["from"] == "no-reply@example.com"


def test_resend_api_error_is_delivery_error(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "resend")
    email_settings.setattr(email_module.resend.Emails, "send", lambda payload: {"error": "invalid_from"})

    with pytest.raises(EmailDeliveryError):
        _send()


def _ses_client_with(stubber_setup):
    client = boto3.client("ses", region_name="us-east-1")
    stubber = Stubber(client)
    stubber_setup(stubber)
    stubber.activate()
    return client


def test_ses_returns_message_id(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "ses")
    client = _ses_client_with(lambda s: s.add_response("send_email", {"MessageId": "ses-1"}))
    email_settings.setattr(email_module.boto3, "client", lambda *args, **kwargs: client)

    assert _send() == "ses-1"


def test_ses_client_error_is_delivery_error(email_settings):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "ses")
    client = _ses_client_with(
        lambda s: s.add_client_error("send_email", service_error_code="MessageRejected", http_status_code=400)
    )
    email_settings.setattr(email_module.boto3, "client", lambda *args, **kwargs: client)

    with pytest.raises(EmailDeliveryError, match="MessageRejected"):
        _send()


def _refuse_connection(*args, **kwargs):
    raise ConnectionRefusedError(111, "Connection refused")


@pytest.mark.parametrize("use_ssl", [False, True])
def test_smtp_connect_failure_is_delivery_error(email_settings, use_ssl):
    email_settings.setattr(app_config.settings, "EMAIL_PROVIDER", "gmail")
    email_settings.setattr(app_config.settings, "SMTP_HOST", "127.0.0.1")
    email_settings.setattr(app_config.settings, "SMTP_PORT", 1)
    email_settings.setattr(app_config.settings, "SMTP_FROM_EMAIL", "no-reply@example.com")
    email_settings.setattr(app_config.settings, "SMTP_USE_SSL", use_ssl)
    email_settings.setattr(email_module.smtplib, "SMTP", _refuse_connection)
    email_settings.setattr(email_module.smtplib, "SMTP_SSL", _refuse_connection)

    with pytest.raises(EmailDeliveryError, match="ConnectionRefusedError"):
        _send()
