"""
Notification channels.

Each channel delivers one NotificationEvent and raises NotificationChannelError
when delivery fails.  The dispatcher isolates channels from each other, so a
channel never needs to guard against the others.

Supports:
- Structured log (always on)
- Email (SMTP)
- Slack (incoming webhook, {"text": ...})
- Discord (webhook, {"content": ...})
"""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

import requests
import structlog

from lifecycle.models import NotificationEvent, Severity

logger = logging.getLogger(__name__)


class NotificationChannelError(Exception):
    """Delivery to a single channel failed."""


class Channel(Protocol):
    name: str

    def send(self, event: NotificationEvent) -> None:
        ...


class LogChannel:
    """Emit every event as a structured log line."""

    name = "log"

    def __init__(self) -> None:
        self._log = structlog.get_logger("notifications")

    def send(self, event: NotificationEvent) -> None:
        emit = {
            Severity.INFO: self._log.info,
            Severity.WARNING: self._log.warning,
            Severity.CRITICAL: self._log.error,
        }[event.severity]
        emit(
            "notification",
            kind=event.kind.value,
            domain=event.domain,
            severity=event.severity.value,
            message=event.message,
        )


class EmailChannel:
    name = "email"

    def __init__(
        self,
        to_addr: str,
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        from_addr: str = "",
        username: str = "",
        password: str = "",
        starttls: bool = False,
        timeout: float = 30,
    ) -> None:
        self.to_addr = to_addr
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.from_addr = from_addr or f"cert-lifecycle@{smtp_host}"
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def build_message(self, event: NotificationEvent) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = event.subject
        msg["From"] = self.from_addr
        msg["To"] = self.to_addr
        msg.set_content(
            f"{event.message}\n\n"
            f"Domain:   {event.domain}\n"
            f"Event:    {event.kind.value}\n"
            f"Severity: {event.severity.value}\n"
            f"Time:     {event.timestamp.isoformat()}\n"
        )
        return msg

    def send(self, event: NotificationEvent) -> None:
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(self.build_message(event))
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationChannelError(f"email to {self.to_addr} failed: {exc}") from exc
        logger.info("Email notification sent to %s: %s", self.to_addr, event.subject)


class _WebhookChannel:
    name = "webhook"

    def __init__(self, url: str, timeout: float = 10, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def payload(self, event: NotificationEvent) -> dict:
        raise NotImplementedError

    def send(self, event: NotificationEvent) -> None:
        try:
            resp = self._session.post(self.url, json=self.payload(event), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise NotificationChannelError(f"{self.name} webhook failed: {exc}") from exc
        logger.info("%s notification sent: %s", self.name.capitalize(), event.subject)


class SlackChannel(_WebhookChannel):
    name = "slack"

    def payload(self, event: NotificationEvent) -> dict:
        return {"text": f"{event.subject}: {event.message}"}


class DiscordChannel(_WebhookChannel):
    name = "discord"

    def payload(self, event: NotificationEvent) -> dict:
        return {"content": f"**{event.subject}**\n{event.message}"}
