"""Compose pipeline: validate the form, render templates, send, record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Callable, Mapping

from mailgloss.address_resolver import (
    AddressParseError,
    parse_from_field,
    parse_mailbox,
    provider_domain,
    split_addresses,
)
from mailgloss.config import ConfigError
from mailgloss.mailer import EmailData, Mailer, MailerError
from mailgloss.storage import SentEmail
from mailgloss.template_engine import (
    build_variable_values,
    render_template,
    system_defaults,
)

if TYPE_CHECKING:
    from mailgloss.config import Config, ProviderConfig
    from mailgloss.storage import Storage, Template
    from mailgloss.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

MailerFactory = Callable[["ProviderConfig", int], Mailer]


class ComposeError(ValueError):
    """A field-level validation failure in the compose form."""

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        super().__init__(f"{field_name} field: {message}")


@dataclass
class ComposeForm:
    """Raw compose form input, exactly as typed."""

    provider: str = ""
    from_field: str = ""
    to: str = ""
    cc: str = ""
    bcc: str = ""
    subject: str = ""
    body: str = ""
    attachments: list[str] = field(default_factory=list)


@dataclass
class SendResult:
    """Outcome of a send attempt."""

    success: bool
    error: str | None = None
    entry: SentEmail | None = None
    message_id: str | None = None


def _default_mailer_factory(provider: ProviderConfig, max_attachment_mb: int) -> Mailer:
    return Mailer(provider, max_attachment_mb=max_attachment_mb)


class ComposeService:
    """Wraps address resolution and template rendering for one session.

    Configuration, storage and the audit logger are passed in; nothing
    here reads global state.
    """

    def __init__(
        self,
        config: Config,
        storage: Storage | None = None,
        audit: StructuredLogger | None = None,
        mailer_factory: MailerFactory = _default_mailer_factory,
    ):
        self.config = config
        self.storage = storage
        self.audit = audit
        self.mailer_factory = mailer_factory

    def provider(self, name: str | None = None) -> ProviderConfig | None:
        """The named provider, or the default one; None if neither exists."""
        name = name or self.config.default_provider
        if not name:
            return None
        try:
            return self.config.get_provider(name)
        except ConfigError:
            return None

    def template_values(
        self,
        template: Template,
        form: ComposeForm,
        user_values: Mapping[str, str] | None = None,
        today: date | None = None,
    ) -> dict[str, str]:
        """Build the substitution map for rendering a template into the form.

        The From field only contributes when it parses; a broken From
        field is reported later by :meth:`build_email`.
        """
        provider = self.provider(form.provider)
        defaults = system_defaults(provider, self.config.date_format, today)

        from_name = from_email = ""
        if form.from_field.strip():
            try:
                override = parse_mailbox(form.from_field.strip())
            except AddressParseError:
                logger.debug("From field not usable as a variable default")
            else:
                from_name, from_email = override.name, override.address

        logger.debug(f"Rendering template '{template.name}' with {len(template.variables)} variables")
        return build_variable_values(defaults, from_name, from_email, user_values)

    def apply_template(
        self,
        template: Template,
        form: ComposeForm,
        user_values: Mapping[str, str] | None = None,
        today: date | None = None,
    ) -> ComposeForm:
        """Render a template into the form's subject and body (in place)."""
        values = self.template_values(template, form, user_values, today)
        form.subject, form.body = render_template(template, values)
        return form

    def build_email(self, form: ComposeForm) -> EmailData:
        """Validate the form and produce the email to send.

        Raises:
            ComposeError: Naming the first offending field
        """
        limits = self.config.limits
        recipients = {}
        for field_name, raw in (("To", form.to), ("CC", form.cc), ("BCC", form.bcc)):
            try:
                addresses = split_addresses(raw)
            except AddressParseError as e:
                raise ComposeError(field_name, str(e)) from e
            if len(addresses) > limits.max_emails_per_field:
                raise ComposeError(
                    field_name,
                    f"too many addresses ({len(addresses)}, max {limits.max_emails_per_field})",
                )
            recipients[field_name] = addresses

        try:
            sender = parse_from_field(form.from_field, provider_domain(self.provider(form.provider)))
        except AddressParseError as e:
            raise ComposeError("From", str(e)) from e

        if len(form.body) > limits.max_body_length:
            raise ComposeError(
                "Body", f"too long ({len(form.body)} characters, max {limits.max_body_length})"
            )

        return EmailData(
            from_addr=sender.address,
            from_name=sender.name,
            to=recipients["To"],
            cc=recipients["CC"],
            bcc=recipients["BCC"],
            subject=form.subject,
            body=form.body,
            attachments=list(form.attachments),
        )

    def send(self, form: ComposeForm) -> SendResult:
        """Validate and send the form, recording the attempt in history.

        Validation failures are returned without touching history;
        delivery failures are recorded with status ``failed``.
        """
        provider_name = form.provider or self.config.default_provider
        if not provider_name:
            return SendResult(success=False, error="Please select a provider")

        try:
            provider = self.config.get_provider(provider_name)
        except ConfigError as e:
            return SendResult(success=False, error=f"Provider error: {e}")

        try:
            data = self.build_email(form)
        except ComposeError as e:
            logger.warning(f"Validation error: {e}")
            return SendResult(success=False, error=f"Validation error: {e}")

        error: str | None = None
        message_id: str | None = None
        try:
            with self.mailer_factory(provider, self.config.limits.max_attachment_size_mb) as mailer:
                message_id = mailer.send(data)
        except MailerError as e:
            error = str(e)
            logger.error(f"Failed to send email via {provider_name}: {error}")

        entry = SentEmail(
            from_addr=data.from_addr,
            to=data.to,
            cc=data.cc,
            bcc=data.bcc,
            subject=data.subject,
            body=data.body,
            attachments=data.attachments,
            provider=provider.type,
            provider_name=provider_name,
            status="failed" if error else "success",
            error=error,
        )
        if self.storage is not None:
            entry = self.storage.add_history(entry)

        if self.audit is not None:
            self.audit.log_send(
                provider_name,
                data.from_addr or provider.from_address,
                data.recipients,
                data.subject,
                error,
            )

        if error:
            return SendResult(success=False, error=f"Failed to send email: {error}", entry=entry)
        return SendResult(success=True, entry=entry, message_id=message_id)
