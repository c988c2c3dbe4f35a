from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from config import Settings

logger = logging.getLogger("reviewreply.alerts")


def send_email(settings: Settings, to_address: str, subject: str, body: str) -> None:
    if not settings.smtp_host or not settings.smtp_from:
        raise RuntimeError("SMTP is not configured.")
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = to_address
    message["Subject"] = subject
    message.set_content(body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls()
        if settings.smtp_user and settings.smtp_password:
            smtp.login(settings.smtp_user, settings.smtp_password)
        smtp.send_message(message)


class Alerter:
    """Operator alerts by email, or error logs when no recipient is set."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def alert(self, subject: str, body: str) -> None:
        if not self._settings.alert_email_to:
            logger.error("%s: %s", subject, body)
            return
        try:
            send_email(self._settings, self._settings.alert_email_to, subject, body)
        except Exception:
            logger.exception("Failed to send admin alert: %s", subject)
