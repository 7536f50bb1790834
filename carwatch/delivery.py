# carwatch/delivery.py
"""Outbound side channels: notification email and realtime vehicle events.

Both are best effort. Callers log failures and carry on; persisted records
stay the source of truth.
"""
from __future__ import annotations

import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Optional

import requests

from .errors import DeliveryError
from .utils import get_logger

logger = get_logger("carwatch.delivery")


class EmailSender:
    def __init__(self, host: str = "", port: int = 587, user: str = "", password: str = "",
                 sender: str = "noreply@carwatch.app", timeout: float = 10):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASS,
            sender=settings.EMAIL_FROM,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, body: str):
        if not self.configured:
            raise DeliveryError("SMTP is not configured")
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        smtp_cls = smtplib.SMTP_SSL if self.port == 465 else smtplib.SMTP
        try:
            with smtp_cls(self.host, self.port, timeout=self.timeout) as smtp:
                if smtp_cls is smtplib.SMTP:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Email to {to} failed: {e}") from e
        logger.info("Sent email to %s: %s", to, subject)


def vehicle_event(vehicle_id: str, event_type: str, previous_value: Any = None, new_value: Any = None,
                  triggered_by_user_id: Optional[str] = None) -> dict[str, Any]:
    event = {
        "vehicleId": vehicle_id,
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if previous_value is not None:
        event["previousValue"] = previous_value
    if new_value is not None:
        event["newValue"] = new_value
    if triggered_by_user_id is not None:
        event["triggeredByUserId"] = triggered_by_user_id
    return event


class RealtimePublisher:
    """Posts vehicle update events to the realtime fan-out webhook."""

    def __init__(self, webhook_url: str = "", timeout: float = 3):
        self.webhook_url = (webhook_url or "").strip()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "RealtimePublisher":
        return cls(settings.REALTIME_WEBHOOK_URL, settings.REALTIME_TIMEOUT_SECONDS)

    def publish(self, event: dict[str, Any]) -> bool:
        """Returns True if the event was accepted."""
        if not self.webhook_url:
            logger.debug("Realtime channel disabled, dropping %s for %s", event["type"], event["vehicleId"])
            return False
        resp = requests.post(self.webhook_url, json=event, timeout=self.timeout)
        resp.raise_for_status()
        return True
