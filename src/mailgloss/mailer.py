"""Outgoing mail assembly and provider transports."""

from __future__ import annotations

import html
import logging
import mimetypes
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

import httpx

from mailgloss.config import ConfigError, ProviderType

if TYPE_CHECKING:
    from mailgloss.config import MailgunSettings, ProviderConfig, SMTPSettings

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Raised when a message cannot be prepared or delivered."""


@dataclass
class EmailData:
    """An email as composed, before provider defaults are applied."""

    to: list[str]
    subject: str
    body: str
    from_addr: str = ""
    from_name: str = ""
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc, *self.bcc]


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class OutgoingMessage:
    """A fully resolved message handed to a transport."""

    from_addr: str
    from_name: str
    to: list[str]
    subject: str
    text: str
    html: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_addr)) if self.from_name else self.from_addr


class Transport(Protocol):
    """Delivers an outgoing message; returns a provider message id if known."""

    def send(self, message: OutgoingMessage) -> str | None: ...


def convert_plain_text_to_html(text: str) -> str:
    """Wrap plain text in minimal HTML, escaping markup and keeping line breaks."""
    escaped = html.escape(text, quote=True).replace("\n", "<br>\n")
    return f"<html><body><p>{escaped}</p></body></html>"


def build_mime_message(message: OutgoingMessage) -> EmailMessage:
    """Build a multipart/alternative MIME message with attachments."""
    mime = EmailMessage()
    mime["From"] = message.sender
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    mime["Subject"] = message.subject
    mime["Message-ID"] = make_msgid(domain=message.from_addr.rpartition("@")[2] or None)

    mime.set_content(message.text)
    mime.add_alternative(message.html, subtype="html")

    for attachment in message.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        mime.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return mime


class SMTPTransport:
    """SMTP delivery through smtplib.

    Port 465 uses implicit TLS; any other port upgrades with STARTTLS
    when the server offers it.
    """

    def __init__(self, settings: SMTPSettings, timeout: int = 30):
        self.settings = settings
        self.timeout = timeout

    def send(self, message: OutgoingMessage) -> str | None:
        mime = build_mime_message(message)
        context = ssl.create_default_context()

        try:
            if self.settings.port == 465:
                server: smtplib.SMTP = smtplib.SMTP_SSL(
                    self.settings.host, self.settings.port, timeout=self.timeout, context=context
                )
            else:
                server = smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.timeout)

            with server:
                if self.settings.port != 465:
                    server.ehlo()
                    if server.has_extn("starttls"):
                        server.starttls(context=context)
                        server.ehlo()
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.send_message(mime, to_addrs=message.to + message.cc + message.bcc)

        except smtplib.SMTPAuthenticationError as e:
            raise MailerError(
                f"Authentication failed for {self.settings.username} - check SMTP credentials"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"SMTP error ({self.settings.host}:{self.settings.port}): {e}") from e

        return mime["Message-ID"]


class MailgunTransport:
    """Mailgun delivery through its HTTP messages endpoint."""

    def __init__(
        self,
        settings: MailgunSettings,
        timeout: int = 30,
        client: httpx.Client | None = None,
    ):
        self.settings = settings
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.settings.url.rstrip("/"),
                timeout=self.timeout,
                auth=("api", self.settings.api_key),
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def send(self, message: OutgoingMessage) -> str | None:
        data: dict[str, str | list[str]] = {
            "from": message.sender,
            "to": message.to,
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        if message.cc:
            data["cc"] = message.cc
        if message.bcc:
            data["bcc"] = message.bcc

        files = [
            ("attachment", (a.filename, a.content, a.content_type))
            for a in message.attachments
        ]

        try:
            response = self._get_client().post(
                f"/v3/{self.settings.domain}/messages",
                data=data,
                files=files or None,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise MailerError("Mailgun request timed out") from e
        except httpx.HTTPStatusError as e:
            raise MailerError(
                f"Mailgun rejected the message ({e.response.status_code}): {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise MailerError(f"Mailgun request failed: {e}") from e

        try:
            return response.json().get("id")
        except ValueError:
            return None


TransportFactory = Callable[["ProviderConfig"], Transport]

DEFAULT_TRANSPORTS: dict[ProviderType, TransportFactory] = {
    ProviderType.SMTP: lambda p: SMTPTransport(p.smtp),
    ProviderType.MAILGUN: lambda p: MailgunTransport(p.mailgun),
}


def create_transport(
    provider: ProviderConfig,
    transports: dict[ProviderType, TransportFactory] | None = None,
) -> Transport:
    """Create the transport for a provider's type.

    Raises:
        MailerError: If no transport is registered for the type
    """
    registry = DEFAULT_TRANSPORTS if transports is None else transports
    factory = registry.get(ProviderType(provider.type))
    if factory is None:
        raise MailerError(f"unsupported provider type: {provider.type}")
    return factory(provider)


class Mailer:
    """Validates composed email and sends it through a provider."""

    def __init__(
        self,
        provider: ProviderConfig,
        max_attachment_mb: int = 25,
        transport: Transport | None = None,
        transports: dict[ProviderType, TransportFactory] | None = None,
    ):
        """Initialize the mailer.

        Args:
            provider: Provider configuration (validated here)
            max_attachment_mb: Per-file attachment size limit
            transport: Explicit transport, bypassing the registry
            transports: Transport factories by provider type

        Raises:
            MailerError: If the provider is invalid or has no transport
        """
        try:
            provider.check()
        except ConfigError as e:
            raise MailerError(f"invalid provider configuration: {e}") from e

        self.provider = provider
        self.max_attachment_mb = max_attachment_mb
        self.transport = transport or create_transport(provider, transports)

    def close(self) -> None:
        """Release the transport's connections, if it holds any."""
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> Mailer:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    @property
    def provider_name(self) -> str:
        return self.provider.name

    @property
    def provider_type(self) -> str:
        return self.provider.type

    def send(self, data: EmailData) -> str | None:
        """Send an email.

        The From address and name fall back to the provider's configured
        values when the composed email leaves them empty.

        Returns:
            Provider message id, when the transport reports one

        Raises:
            MailerError: On invalid input or delivery failure
        """
        logger.debug(
            f"Sending email via {self.provider_name}: to={data.to}, subject={data.subject!r}"
        )

        if not data.to:
            raise MailerError("at least one recipient is required")
        if not data.subject:
            raise MailerError("subject is required")
        if not data.body:
            raise MailerError("body is required")

        attachments = [self._load_attachment(path) for path in data.attachments]

        message = OutgoingMessage(
            from_addr=data.from_addr or self.provider.from_address,
            from_name=data.from_name or self.provider.from_name,
            to=list(data.to),
            cc=list(data.cc),
            bcc=list(data.bcc),
            subject=data.subject,
            text=data.body,
            html=convert_plain_text_to_html(data.body),
            attachments=attachments,
        )

        try:
            message_id = self.transport.send(message)
        except MailerError:
            logger.error(f"Failed to send email via {self.provider_name}", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Failed to send email via {self.provider_name}: {e}")
            raise MailerError(f"failed to send email: {e}") from e

        logger.info(f"Email sent via {self.provider_name} to {len(data.recipients)} recipient(s)")
        return message_id

    def _load_attachment(self, path: str) -> Attachment:
        try:
            self.validate_attachment(path)
            content = Path(path).read_bytes()
        except MailerError as e:
            logger.error(f"Attachment validation failed for {path}: {e}")
            raise MailerError(f"invalid attachment {path}: {e}") from None
        except OSError as e:
            raise MailerError(f"failed to read attachment {path}: {e}") from e

        content_type, _ = mimetypes.guess_type(path)
        filename = Path(path).name
        logger.debug(f"Attachment added: {filename} ({len(content)} bytes)")
        return Attachment(
            filename=filename,
            content=content,
            content_type=content_type or "application/octet-stream",
        )

    def validate_attachment(self, path: str) -> None:
        """Check an attachment path before reading it.

        Raises:
            MailerError: If the file is missing, not regular, too large or
                the path contains a parent-directory reference
        """
        if ".." in Path(path).parts:
            raise MailerError("directory traversal not allowed")

        file_path = Path(path)
        if not file_path.exists():
            raise MailerError("file does not exist")
        if not file_path.is_file():
            raise MailerError("not a regular file")

        max_size = self.max_attachment_mb * 1024 * 1024
        size = file_path.stat().st_size
        if size > max_size:
            raise MailerError(
                f"file too large (max {self.max_attachment_mb}MB, got {size} bytes)"
            )
