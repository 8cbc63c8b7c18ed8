"""
Email transport used by the tier notifier.

Providers:
- SendGrid (production), over the v3 mail/send HTTP API
- Mock (tests, local development)

Senders report delivery as a bool and never raise: tier notifications are
best-effort.
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

SENDGRID_MAIL_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailMessage:
    """Email message data."""
    to_email: str
    to_name: Optional[str]
    subject: str
    text_body: str
    html_body: Optional[str] = None
    tags: List[str] = field(default_factory=list)


class EmailSender(ABC):
    """Abstract base class for email sending."""

    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """
        Send an email.

        Returns:
            True on success, False on failure
        """
        pass


class SendGridEmailSender(EmailSender):
    """SendGrid email sender."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            api_key: SendGrid API key (or SENDGRID_API_KEY)
            from_email: Sender address (or NOTIFICATION_FROM_EMAIL)
            from_name: Sender name (or NOTIFICATION_FROM_NAME)
            client: Pre-built httpx client (tests inject a MockTransport)
        """
        self.api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.from_email = from_email or os.getenv(
            "NOTIFICATION_FROM_EMAIL", "notifications@stokreal.com"
        )
        self.from_name = from_name or os.getenv(
            "NOTIFICATION_FROM_NAME", "StokReal"
        )
        self._client = client

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    def build_payload(self, message: EmailMessage) -> Dict[str, Any]:
        content = [{"type": "text/plain", "value": message.text_body}]
        if message.html_body:
            content.append({"type": "text/html", "value": message.html_body})

        payload: Dict[str, Any] = {
            "personalizations": [
                {"to": [{"email": message.to_email, "name": message.to_name or ""}]}
            ],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject,
            "content": content,
        }
        if message.tags:
            payload["categories"] = message.tags
        return payload

    def send(self, message: EmailMessage) -> bool:
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured")
            return False

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = self._client.post(
                    SENDGRID_MAIL_URL, headers=headers, json=self.build_payload(message)
                )
            else:
                with httpx.Client(timeout=30.0) as client:
                    response = client.post(
                        SENDGRID_MAIL_URL, headers=headers, json=self.build_payload(message)
                    )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to send email via SendGrid",
                extra={"to_email": message.to_email, "error": str(e)},
                exc_info=True,
            )
            return False

        if response.status_code in (200, 202):
            logger.info(
                "Email sent successfully",
                extra={"to_email": message.to_email, "subject": message.subject},
            )
            return True

        logger.error(
            "SendGrid API error",
            extra={
                "status_code": response.status_code,
                "response": response.text,
                "to_email": message.to_email,
            },
        )
        return False


class MockEmailSender(EmailSender):
    """Records messages instead of sending them."""

    def __init__(self, fail: bool = False):
        self.sent_messages: List[EmailMessage] = []
        self.fail = fail

    def send(self, message: EmailMessage) -> bool:
        if self.fail:
            return False
        self.sent_messages.append(message)
        logger.info(
            "Mock email sent",
            extra={"to_email": message.to_email, "subject": message.subject},
        )
        return True

    def clear(self) -> None:
        self.sent_messages.clear()


def get_email_sender() -> EmailSender:
    """Configured sender based on NOTIFICATION_EMAIL_PROVIDER (sendgrid | mock)."""
    provider = os.getenv("NOTIFICATION_EMAIL_PROVIDER", "sendgrid").lower()
    if provider == "mock":
        return MockEmailSender()
    return SendGridEmailSender()
