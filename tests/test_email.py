import smtplib
from pathlib import Path

import pytest

from building_ledger.core.errors import ExternalActionError
from building_ledger.services import email as email_service


def test_local_backend_writes_outbox_file():
    result = email_service.send_email(
        "Payment reminder for apartment 4",
        "Please pay.",
        ["Resident@example.com", "resident@example.com", ""],
    )

    assert result.backend == "local"
    contents = Path(result.location).read_text()
    assert "Subject: Payment reminder for apartment 4" in contents
    assert "Recipients: Resident@example.com\n" in contents


def test_missing_recipients_raise():
    with pytest.raises(ExternalActionError):
        email_service.send_email("Subject", "Body", [None, "  "])


def test_smtp_failure_is_reported_as_external_action_error(monkeypatch):
    class BrokenSMTP:
        def __init__(self, host, port):
            raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(email_service.settings, "email_backend", "smtp")
    monkeypatch.setattr(email_service.settings, "smtp_host", "mail.example.com")
    monkeypatch.setattr(email_service.smtplib, "SMTP", BrokenSMTP)

    with pytest.raises(ExternalActionError):
        email_service.send_email("Subject", "Body", ["resident@example.com"])


def test_smtp_without_host_is_reported(monkeypatch):
    monkeypatch.setattr(email_service.settings, "email_backend", "smtp")
    monkeypatch.setattr(email_service.settings, "smtp_host", None)

    with pytest.raises(ExternalActionError):
        email_service.send_email("Subject", "Body", ["resident@example.com"])


def test_masking_keeps_domain():
    assert email_service._mask_email("resident@example.com") == "r***t@example.com"
    assert email_service._mask_email("ab@example.com") == "a***@example.com"
