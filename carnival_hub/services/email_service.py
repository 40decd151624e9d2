"""
Email delivery using SendGrid, plus the templates the core sends.

The core only depends on the MailSender protocol. SendGridMailSender is the
production transport; RecordingMailSender keeps messages in memory for
tests and dry runs.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Protocol

from pydantic import BaseModel
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, To

from carnival_hub.config import CoreSettings
from carnival_hub.utils.constants import AUSTRALIAN_STATE_NAMES

logger = logging.getLogger(__name__)

SITE_NAME = "Old Man Footy"


class OutgoingMail(BaseModel):
    """A single plain-text message."""

    to: str
    subject: str
    body: str
    category: str = "general"


class MailSender(Protocol):
    async def send(self, message: OutgoingMail) -> None: ...


class MailDeliveryError(RuntimeError):
    """Raised when the transport rejects a message."""


class SendGridMailSender:
    """
    Sends mail through the SendGrid API.

    The SendGrid client is synchronous, so each send runs in a worker thread.
    When email is disabled (ENABLE_EMAIL=false) or no API key is configured,
    messages are logged and skipped rather than failing the caller.
    """

    def __init__(self, settings: CoreSettings, client: Optional[SendGridAPIClient] = None):
        self._settings = settings
        self._client = client
        if self._client is None and settings.sendgrid_api_key:
            self._client = SendGridAPIClient(settings.sendgrid_api_key)

    @property
    def enabled(self) -> bool:
        return self._settings.enable_email and self._client is not None

    async def send(self, message: OutgoingMail) -> None:
        if not self._settings.enable_email:
            logger.info(f"Email sending is disabled. Skipped {message.category} email to {message.to}")
            return
        if self._client is None:
            logger.warning("SENDGRID_API_KEY not configured. Email notification skipped.")
            return

        mail = Mail(
            from_email=Email(self._settings.sendgrid_from_email),
            to_emails=To(message.to),
            subject=message.subject,
            plain_text_content=Content("text/plain", message.body),
        )
        response = await asyncio.to_thread(self._client.send, mail)
        if 200 <= response.status_code < 300:
            logger.info(f"{message.category} email sent successfully to {message.to}")
            return
        logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
        raise MailDeliveryError(f"SendGrid returned status {response.status_code}")


class RecordingMailSender:
    """Collects messages instead of sending them."""

    def __init__(self):
        self.sent: List[OutgoingMail] = []

    async def send(self, message: OutgoingMail) -> None:
        self.sent.append(message)
        logger.debug(f"Recorded {message.category} email to {message.to}")

    def to(self, address: str) -> List[OutgoingMail]:
        address = address.lower()
        return [m for m in self.sent if m.to.lower() == address]

    def clear(self) -> None:
        self.sent.clear()


# --- Templates ---


def _footer() -> List[str]:
    return ["", "---", f"This is an automated message from {SITE_NAME}."]


def _format_date(value) -> str:
    if value is None:
        return "Date to be confirmed"
    return value.strftime("%A %d %B %Y")


def carnival_notification(
    to: str,
    title: str,
    carnival_id: int,
    state: Optional[str],
    carnival_date,
    location: Optional[str],
    is_update: bool,
    site_base_url: str,
    unsubscribe_token: str,
) -> OutgoingMail:
    """New or updated carnival, sent to a state subscriber."""
    state_name = AUSTRALIAN_STATE_NAMES.get(state, state or "Australia")
    heading = "Carnival updated" if is_update else "New carnival"
    lines = [
        f"{heading} in {state_name}:",
        "",
        f"  {title}",
        f"  When: {_format_date(carnival_date)}",
        f"  Where: {location or 'Venue to be confirmed'}",
        "",
        f"Details: {site_base_url}/carnivals/{carnival_id}",
        "",
        f"Unsubscribe: {site_base_url}/unsubscribe/{unsubscribe_token}",
    ]
    lines.extend(_footer())
    return OutgoingMail(
        to=to,
        subject=f"{heading}: {title}",
        body="\n".join(lines),
        category="carnival_notification",
    )


def delegate_invitation(
    to: str,
    club_name: str,
    inviter_name: Optional[str],
    token: str,
    expires_at: datetime,
    site_base_url: str,
) -> OutgoingMail:
    inviter = inviter_name or "A club delegate"
    lines = [
        f"{inviter} has invited you to become a delegate of {club_name}.",
        "",
        f"Accept the invitation: {site_base_url}/auth/invitation/{token}",
        f"This link expires on {expires_at.strftime('%Y-%m-%d %H:%M UTC')}.",
    ]
    lines.extend(_footer())
    return OutgoingMail(
        to=to,
        subject=f"You're invited to join {club_name}",
        body="\n".join(lines),
        category="delegate_invitation",
    )


def proxy_club_invitation(
    to: str,
    club_name: str,
    inviter_name: Optional[str],
    token: str,
    expires_at: datetime,
    site_base_url: str,
    custom_message: Optional[str] = None,
) -> OutgoingMail:
    inviter = inviter_name or "A fellow delegate"
    lines = [
        f"{inviter} has set up a listing for {club_name} on {SITE_NAME} and invited you to take it over.",
        "",
    ]
    if custom_message:
        lines.extend(["Message from the sender:", custom_message, ""])
    lines.extend(
        [
            f"Claim your club: {site_base_url}/clubs/claim/{token}",
            f"This link expires on {expires_at.strftime('%Y-%m-%d %H:%M UTC')}.",
        ]
    )
    lines.extend(_footer())
    return OutgoingMail(
        to=to,
        subject=f"Claim your club listing: {club_name}",
        body="\n".join(lines),
        category="proxy_club_invitation",
    )


def ownership_claimed(
    to: str,
    title: str,
    carnival_id: int,
    owner_name: str,
    owner_email: str,
    club_name: Optional[str],
    site_base_url: str,
) -> OutgoingMail:
    """Tells the organiser address from the import that a delegate took the carnival over."""
    who = f"{owner_name} ({club_name})" if club_name else owner_name
    lines = [
        f"The carnival \"{title}\" has been claimed on {SITE_NAME} by {who}.",
        "",
        f"New contact: {owner_email}",
        f"Listing: {site_base_url}/carnivals/{carnival_id}",
        "",
        "If this was not expected, please reply to this email.",
    ]
    lines.extend(_footer())
    return OutgoingMail(
        to=to,
        subject=f"Your carnival has been claimed: {title}",
        body="\n".join(lines),
        category="ownership_claimed",
    )


def primary_delegate_transferred(
    to: str, new_primary_name: str, club_name: str, site_base_url: str
) -> OutgoingMail:
    lines = [
        f"Hi {new_primary_name},",
        "",
        f"You are now the primary delegate of {club_name}.",
        f"Manage your club: {site_base_url}/clubs/manage",
    ]
    lines.extend(_footer())
    return OutgoingMail(
        to=to,
        subject=f"You are now primary delegate of {club_name}",
        body="\n".join(lines),
        category="primary_delegate_transferred",
    )
