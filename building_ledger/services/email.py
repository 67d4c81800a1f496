import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..config import settings
from ..core.errors import ExternalActionError

logger = logging.getLogger(__name__)

MAX_LOG_RECIPIENTS = 3
MAX_SUBJECT_PREVIEW = 12


@dataclass
class SendResult:
    backend: str
    status_code: Optional[int]
    location: Optional[str]
    error: Optional[str]


def _mask_email(value: str) -> str:
    if "@" not in value:
        return "***"
    name, domain = value.split("@", 1)
    if not name:
        masked = "***"
    elif len(name) <= 2:
        masked = f"{name[0]}***"
    else:
        masked = f"{name[0]}***{name[-1]}"
    return f"{masked}@{domain}"


def _mask_subject(subject: str) -> str:
    if not subject:
        return ""
    preview = subject[:MAX_SUBJECT_PREVIEW]
    return f"{preview}... (len={len(subject)})"


def _backend() -> str:
    return (settings.email_backend or "local").strip().strip("'\"").lower()


def _normalize_recipients(recipients: Iterable[str]) -> List[str]:
    normalized: List[str] = []
    seen = set()
    for email in recipients:
        if not email:
            continue
        cleaned = email.strip()
        if not cleaned:
            continue
        lowered = cleaned.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        normalized.append(cleaned)
    return normalized


def _resolve_sender() -> Tuple[str, str]:
    from_address = settings.email_from_address or "billing@building-ledger.local"
    display_name = settings.email_from_name or "Building Management"
    return from_address, display_name


def _write_local_email(subject: str, body: str, recipients: List[str]) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    safe_subject = "".join(ch for ch in subject if ch.isalnum() or ch in (" ", "_", "-")).strip() or "email"
    filename = f"{timestamp}_{safe_subject.replace(' ', '_')}.txt"
    output_dir = Path(settings.email_output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    contents = "\n".join(
        [
            f"Subject: {subject}",
            f"Recipients: {', '.join(recipients)}",
            "",
            body,
        ]
    )
    path.write_text(contents)
    logger.info("[LOCAL EMAIL] %s", path)
    return str(path)


def _send_via_smtp(subject: str, body: str, recipients: List[str]) -> SendResult:
    if not settings.smtp_host:
        raise RuntimeError("SMTP backend requires SMTP_HOST.")
    from_address, display_name = _resolve_sender()

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((display_name, from_address))
    message["To"] = ", ".join(recipients)
    message.set_content(body)

    context = ssl.create_default_context()
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port or 587) as connection:
        connection.ehlo()
        if settings.smtp_use_tls:
            connection.starttls(context=context)
            connection.ehlo()
        if settings.smtp_username and settings.smtp_password:
            connection.login(settings.smtp_username, settings.smtp_password)
        connection.send_message(message)
    logger.info("Sent email via SMTP to %d recipients.", len(recipients))
    return SendResult(backend="smtp", status_code=250, location=None, error=None)


def _log_send_attempt(backend: str, subject: str, from_address: str, recipients: List[str]) -> None:
    masked_recipients = [_mask_email(addr) for addr in recipients[:MAX_LOG_RECIPIENTS]]
    if len(recipients) > MAX_LOG_RECIPIENTS:
        masked_recipients.append(f"+{len(recipients) - MAX_LOG_RECIPIENTS} more")
    logger.info(
        "Dispatching email backend=%s from=%s to=%s subject=%s",
        backend,
        _mask_email(from_address) if from_address else None,
        masked_recipients,
        _mask_subject(subject),
    )


def send_email(subject: str, body: str, recipients: Iterable[str]) -> SendResult:
    """Dispatch a plain-text email using the configured backend.

    Raises ``ExternalActionError`` when there is nobody to send to or the
    backend fails.
    """
    recipient_list = _normalize_recipients(recipients)
    backend = _backend()
    if not recipient_list:
        logger.info("Email dispatch skipped: no recipients (subject=%s).", _mask_subject(subject))
        raise ExternalActionError("No recipients provided")

    from_address, _ = _resolve_sender()
    _log_send_attempt(backend, subject, from_address, recipient_list)
    try:
        if backend == "smtp":
            return _send_via_smtp(subject, body, recipient_list)
        if backend != "local":
            logger.warning("Unknown EMAIL_BACKEND '%s'. Defaulting to local stub.", backend)
        location = _write_local_email(subject, body, recipient_list)
        return SendResult(backend="local", status_code=200, location=location, error=None)
    except (OSError, RuntimeError, smtplib.SMTPException) as exc:
        logger.exception("Email dispatch failed for backend=%s.", backend)
        raise ExternalActionError(f"Email dispatch failed: {exc}") from exc
