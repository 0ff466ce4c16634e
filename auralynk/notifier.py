"""Booking confirmation emails delivered over SMTP."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from .availability import parse_timestamp
from .config import MailSettings

logger = logging.getLogger("auralynk.notifier")

CONFIRMATION_SUBJECT = "Booking Confirmed"


class NotificationError(RuntimeError):
    """Raised when a confirmation email could not be handed to the relay."""


def format_session_time(value: str) -> str:
    instant = parse_timestamp(value)
    return instant.strftime("%d %b %Y • %H:%M UTC")


def build_confirmation_message(sender: str, recipient: str, time: str) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = CONFIRMATION_SUBJECT
    message["From"] = sender
    message["To"] = recipient
    message.set_content(f"Your session is booked for {format_session_time(time)}.")
    return message


class ConfirmationMailer:
    """Send one-off booking confirmations through the configured relay."""

    def __init__(self, settings: Optional[MailSettings] = None) -> None:
        self._settings = settings or MailSettings()

    @property
    def settings(self) -> MailSettings:
        return self._settings

    def send_confirmation(self, email: str, time: str) -> None:
        recipient = (email or "").strip()
        if not recipient or "@" not in recipient:
            raise NotificationError("A valid recipient email address is required")
        try:
            message = build_confirmation_message(self._settings.sender, recipient, time)
        except ValueError as exc:
            raise NotificationError(str(exc)) from exc

        settings = self._settings
        try:
            if settings.use_ssl:
                with smtplib.SMTP_SSL(
                    settings.host,
                    settings.port,
                    timeout=settings.timeout,
                    context=ssl.create_default_context(),
                ) as server:
                    self._deliver(server, message)
            else:
                with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout) as server:
                    if settings.use_starttls:
                        server.starttls(context=ssl.create_default_context())
                    self._deliver(server, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send confirmation email: {exc}") from exc

        logger.info("Sent booking confirmation to %s for %s", recipient, time)

    def _deliver(self, server: smtplib.SMTP, message: EmailMessage) -> None:
        if self._settings.username and self._settings.password:
            server.login(self._settings.username, self._settings.password)
        server.send_message(message)


__all__ = [
    "CONFIRMATION_SUBJECT",
    "ConfirmationMailer",
    "NotificationError",
    "build_confirmation_message",
    "format_session_time",
]
