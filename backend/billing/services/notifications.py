"""Outbound notification clients used to deliver top-up invoices."""

from __future__ import annotations

import abc
import html
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from .. import models

LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when a notification client cannot be configured."""


class NotificationError(RuntimeError):
    """Raised when the external provider rejects a notification."""


@dataclass
class NotificationResult:
    """Outcome returned by a notification provider."""

    success: bool
    status_code: Optional[int] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationClient(abc.ABC):
    """Interface implemented by outbound notification providers."""

    channel: str

    @abc.abstractmethod
    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
    ) -> NotificationResult:
        """Send a message to the destination and return the delivery result."""


class ConsoleNotificationClient(NotificationClient):
    """Fallback client that only logs messages."""

    channel = "console"

    def __init__(self) -> None:
        self.records: list[dict[str, str]] = []

    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
    ) -> NotificationResult:
        self.records.append(
            {
                "destination": destination,
                "subject": subject,
                "plain_text": plain_text,
                "html_text": html_text or "",
            }
        )
        LOGGER.info("[console] %s -> %s", subject, destination)
        return NotificationResult(success=True, status_code=200, provider_message_id="console")


class SendGridEmailClient(NotificationClient):
    """Deliver invoice emails through the SendGrid v3 mail API."""

    channel = "email"
    base_url = "https://api.sendgrid.com"
    send_path = "/v3/mail/send"

    def __init__(
        self,
        *,
        api_key: str | None,
        sender_email: str | None,
        sender_name: str | None = None,
        sandbox_mode: bool = False,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (("SENDGRID_API_KEY", api_key), ("SENDGRID_SENDER_EMAIL", sender_email))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} required to send invoice emails")
        self.sender_email = sender_email
        self.sender_name = sender_name or "Billing"
        self.sandbox_mode = sandbox_mode
        self.http_client = http_client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.http_client.headers["Authorization"] = f"Bearer {api_key}"

    def _payload(
        self, destination: str, subject: str, plain_text: str, html_text: str | None
    ) -> dict[str, object]:
        content = [{"type": "text/plain", "value": plain_text}]
        if html_text:
            content.append({"type": "text/html", "value": html_text})
        payload: dict[str, object] = {
            "personalizations": [{"to": [{"email": destination}]}],
            "from": {"email": self.sender_email, "name": self.sender_name},
            "subject": subject,
            "content": content,
        }
        if self.sandbox_mode:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}
        return payload

    def send_message(
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
    ) -> NotificationResult:
        try:
            response = self.http_client.post(
                self.send_path, json=self._payload(destination, subject, plain_text, html_text)
            )
        except httpx.HTTPError as exc:
            raise NotificationError(f"Network error contacting SendGrid: {exc}") from exc

        if response.is_error:
            return NotificationResult(
                success=False, status_code=response.status_code, error=response.text
            )
        return NotificationResult(
            success=True,
            status_code=response.status_code,
            provider_message_id=response.headers.get("x-message-id"),
        )


def compose_invoice_email(
    invoice: models.Invoice, profile: models.ClientProfile
) -> tuple[str, str, str]:
    """Return ``(subject, plain_text, html_text)`` for a top-up invoice."""

    subject = f"Invoice #{invoice.id[:8]} - prepaid balance top-up"
    rows = [
        f"- {item.description}: ${item.total:,.2f}" for item in invoice.line_items
    ]
    plain_lines = [
        f"Hi {profile.full_name},",
        "",
        "Your prepaid training balance needs a top-up.",
        "",
        *rows,
        "",
        f"Amount due: ${invoice.amount:,.2f}",
        f"Due date: {invoice.due_date.isoformat()}",
    ]
    if invoice.notes:
        plain_lines.extend(["", invoice.notes])
    plain_text = "\n".join(plain_lines)

    html_rows = "".join(
        f"<tr><td>{html.escape(item.description)}</td>"
        f"<td style=\"text-align:right\">${item.total:,.2f}</td></tr>"
        for item in invoice.line_items
    )
    html_text = (
        f"<p>Hi {html.escape(profile.full_name)},</p>"
        "<p>Your prepaid training balance needs a top-up.</p>"
        f"<table>{html_rows}</table>"
        f"<p><strong>Amount due: ${invoice.amount:,.2f}</strong><br/>"
        f"Due date: {invoice.due_date.isoformat()}</p>"
    )
    return subject, plain_text, html_text


def _read_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def build_notification_client_from_env(*, fallback_to_console: bool = True) -> NotificationClient:
    """Instantiate a notification client from environment variables."""

    transport = os.getenv("INVOICE_EMAIL_TRANSPORT", "auto").strip().lower()

    if transport in {"auto", "sendgrid"}:
        try:
            return SendGridEmailClient(
                api_key=os.getenv("SENDGRID_API_KEY"),
                sender_email=os.getenv("SENDGRID_SENDER_EMAIL"),
                sender_name=os.getenv("SENDGRID_SENDER_NAME"),
                sandbox_mode=_read_bool("SENDGRID_SANDBOX_MODE"),
            )
        except ConfigurationError as exc:
            if transport == "sendgrid" and not fallback_to_console:
                raise
            LOGGER.warning("%s; falling back to console delivery.", exc)
            return ConsoleNotificationClient()

    return ConsoleNotificationClient()
