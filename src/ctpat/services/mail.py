"""Outbound mail channels.

A mail channel is a small capability interface: ``send`` one message and
report whether the channel ``is_ready`` at all. One implementation exists per
backend and the right one is chosen once, when the channel is built from
settings:

- ``SmtpMailChannel``: any SMTP relay (Mailpit in development)
- ``SendGridMailChannel``: SendGrid's SMTP relay, authenticated by API key
- ``GmailMailChannel``: Gmail SMTP with an app password
- ``DisabledMailChannel``: never ready; the dispatcher leaves jobs queued

``send`` is blocking (smtplib). The dispatcher runs it in a worker thread
under a timeout and passes the same timeout down, so the socket gives up
no later than the dispatcher does.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import TYPE_CHECKING, Protocol

from ctpat.core.config import MailProvider

if TYPE_CHECKING:
    from ctpat.core.config import SMTPSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MailAttachment:
    """A file attached to an outgoing message."""

    filename: str
    content: bytes
    content_type: str = "application/pdf"


class MailError(Exception):
    """Base exception for mail operations."""


class MailDeliveryError(MailError):
    """Raised when a message cannot be handed to the mail server."""


class MailChannel(Protocol):
    """Delivery channel used by the dispatcher."""

    name: str

    def is_ready(self) -> bool: ...

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: MailAttachment | None = None,
        *,
        timeout: float | None = None,
    ) -> str: ...


def hash_email(email: str) -> str:
    """Short SHA-256 of an address, for logging without exposing it."""
    return hashlib.sha256(email.lower().strip().encode()).hexdigest()[:16]


class SmtpMailChannel:
    """Mail channel for a plain SMTP relay."""

    name = "smtp"

    def __init__(self, settings: SMTPSettings) -> None:
        self.settings = settings

    @property
    def host(self) -> str:
        return self.settings.host

    @property
    def port(self) -> int:
        return self.settings.port

    @property
    def use_tls(self) -> bool:
        return self.settings.use_tls

    @property
    def use_ssl(self) -> bool:
        return self.settings.use_ssl

    def credentials(self) -> tuple[str, str] | None:
        """Login pair, or None for an unauthenticated relay."""
        if self.settings.username and self.settings.password:
            return self.settings.username, self.settings.password.get_secret_value()
        return None

    def is_ready(self) -> bool:
        return bool(self.host and self.settings.from_address)

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: MailAttachment | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        """Send one HTML message, optionally with an attachment.

        Args:
            timeout: Socket timeout in seconds; capped by the configured
                SMTP timeout.

        Returns:
            The Message-ID header of the sent message.

        Raises:
            MailDeliveryError: If the message cannot be sent.
        """
        message_id = f"<{secrets.token_hex(16)}@{self._get_domain()}>"
        msg = self._build_message(recipient, subject, body, attachment, message_id)

        try:
            server = self._connect(timeout)
            try:
                credentials = self.credentials()
                if credentials is not None:
                    server.login(*credentials)
                server.sendmail(self.settings.from_address, [recipient], msg.as_string())
            finally:
                server.quit()
        except smtplib.SMTPException as e:
            msg_text = f"SMTP error: {e}"
            raise MailDeliveryError(msg_text) from e
        except OSError as e:
            msg_text = f"Connection error: {e}"
            raise MailDeliveryError(msg_text) from e

        logger.info(
            "Email sent: channel=%s, recipient_hash=%s, message_id=%s, attachment=%s",
            self.name,
            hash_email(recipient),
            message_id,
            attachment is not None,
        )
        return message_id

    def _connect(self, timeout: float | None = None) -> smtplib.SMTP:
        if timeout is None or timeout > self.settings.timeout:
            timeout = self.settings.timeout
        if self.use_ssl:
            # Implicit TLS (port 465)
            return smtplib.SMTP_SSL(
                self.host,
                self.port,
                timeout=timeout,
                context=ssl.create_default_context(),
            )
        server = smtplib.SMTP(self.host, self.port, timeout=timeout)
        if self.use_tls:
            server.starttls(context=ssl.create_default_context())
        return server

    def _build_message(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: MailAttachment | None,
        message_id: str,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.settings.from_name, self.settings.from_address))
        msg["To"] = recipient
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(body, "html", "utf-8"))

        if attachment is not None:
            subtype = attachment.content_type.split("/", 1)[-1]
            part = MIMEApplication(attachment.content, _subtype=subtype)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(part)
        return msg

    def _get_domain(self) -> str:
        return self.settings.from_address.split("@")[-1]


class SendGridMailChannel(SmtpMailChannel):
    """SendGrid over its SMTP relay; the API key is the password."""

    name = "sendgrid"

    @property
    def host(self) -> str:
        return "smtp.sendgrid.net"

    @property
    def port(self) -> int:
        return 587

    @property
    def use_tls(self) -> bool:
        return True

    @property
    def use_ssl(self) -> bool:
        return False

    def credentials(self) -> tuple[str, str] | None:
        if self.settings.api_key is None:
            return None
        return "apikey", self.settings.api_key.get_secret_value()

    def is_ready(self) -> bool:
        return self.settings.api_key is not None and bool(self.settings.from_address)


class GmailMailChannel(SmtpMailChannel):
    """Gmail SMTP with an app password."""

    name = "gmail"

    @property
    def host(self) -> str:
        return "smtp.gmail.com"

    @property
    def port(self) -> int:
        return 587

    @property
    def use_tls(self) -> bool:
        return True

    @property
    def use_ssl(self) -> bool:
        return False

    def is_ready(self) -> bool:
        return self.credentials() is not None

    def _get_domain(self) -> str:
        return (self.settings.username or self.settings.from_address).split("@")[-1]


class DisabledMailChannel:
    """Channel that is never ready. Sending is a programming error."""

    name = "disabled"

    def is_ready(self) -> bool:
        return False

    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: MailAttachment | None = None,
        *,
        timeout: float | None = None,
    ) -> str:
        raise MailError("Mail channel is disabled")


_CHANNELS: dict[MailProvider, type[SmtpMailChannel]] = {
    MailProvider.SMTP: SmtpMailChannel,
    MailProvider.SENDGRID: SendGridMailChannel,
    MailProvider.GMAIL: GmailMailChannel,
}


def build_mail_channel(settings: SMTPSettings) -> MailChannel:
    """Build the mail channel for the configured provider."""
    if settings.provider == MailProvider.DISABLED:
        logger.warning("Mail channel disabled; delivery jobs will stay queued")
        return DisabledMailChannel()
    channel = _CHANNELS[settings.provider](settings)
    logger.info("Mail channel configured: provider=%s, ready=%s", channel.name, channel.is_ready())
    return channel
