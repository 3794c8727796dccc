"""Command-line interface for mailgloss."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from mailgloss import __version__
from mailgloss.address_resolver import AddressParseError, parse_mailbox
from mailgloss.compose import ComposeError, ComposeForm, ComposeService
from mailgloss.config import (
    CONFIG_FILENAME,
    PROVIDER_CLASSES,
    Config,
    ConfigError,
    ProviderType,
    default_config_dir,
    load_config,
    save_config,
)
from mailgloss.mailer import DEFAULT_TRANSPORTS
from mailgloss.storage import Contact, Storage, Template
from mailgloss.structured_logger import StructuredLogger
from mailgloss.template_engine import prompt_variables, render_template

console = Console(width=200, soft_wrap=False)
err_console = Console(stderr=True)
logger = logging.getLogger("mailgloss")


def setup_logging(level: str, log_file: Path | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=err_console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class AppContext:
    """Per-invocation state shared by all commands."""

    config_dir: Path
    config: Config
    _storage: Storage | None = None

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def storage(self) -> Storage:
        if self._storage is None:
            db_path = self.config.resolve_path(self.config_dir, self.config.database_path)
            self._storage = Storage(db_path, self.config.limits.max_history_entries)
        return self._storage

    @property
    def audit(self) -> StructuredLogger:
        return StructuredLogger(
            self.config.resolve_path(self.config_dir, self.config.logging.audit_file)
        )

    def save_config(self) -> None:
        save_config(self.config, self.config_path)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _parse_vars(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    parsed: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        parsed[key.strip()] = value
    return parsed


def _read_body(body: str | None, body_file: str | None) -> str | None:
    if body_file:
        return Path(body_file).read_text(encoding="utf-8")
    return body


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="MAILGLOSS_CONFIG_DIR",
    default=None,
    help="Directory holding config.yaml and the database (default: ~/.config/mailgloss)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config_dir: Path | None, verbose: bool) -> None:
    """mailgloss - compose and send email from the terminal."""
    config_dir = (config_dir or default_config_dir()).expanduser()

    try:
        config = load_config(config_dir / CONFIG_FILENAME)
    except (ValidationError, ValueError, OSError) as e:
        _fail(f"failed to load config: {e}")

    log_level = "DEBUG" if verbose else config.logging.level
    setup_logging(log_level, config.resolve_path(config_dir, config.logging.log_file))
    logger.debug(f"Using config directory {config_dir}")

    ctx.obj = AppContext(config_dir=config_dir, config=config)


# Sending


@cli.command()
@click.option("--provider", "-p", default=None, help="Provider name (default: configured default)")
@click.option("--from", "from_field", default="", help='Sender, e.g. "Name <me@example.com>" or "me@"')
@click.option("--to", multiple=True, help="Recipient(s), comma-separated or repeated")
@click.option("--cc", multiple=True, help="CC recipient(s)")
@click.option("--bcc", multiple=True, help="BCC recipient(s)")
@click.option("--subject", "-s", default=None, help="Subject line")
@click.option("--body", "-b", default=None, help="Plain-text body")
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False), help="Read the body from a file")
@click.option("--attach", "-a", multiple=True, type=click.Path(), help="Attach a file (repeatable)")
@click.option("--template", "-t", "template_key", default=None, help="Template id or name")
@click.option("--var", "variables", multiple=True, help="Template variable KEY=VALUE (repeatable)")
@click.option("--interactive", "-i", is_flag=True, help="Prompt for template variables")
@click.option("--dry-run", is_flag=True, help="Validate and preview without sending")
@click.pass_obj
def send(
    app: AppContext,
    provider: str | None,
    from_field: str,
    to: tuple[str, ...],
    cc: tuple[str, ...],
    bcc: tuple[str, ...],
    subject: str | None,
    body: str | None,
    body_file: str | None,
    attach: tuple[str, ...],
    template_key: str | None,
    variables: tuple[str, ...],
    interactive: bool,
    dry_run: bool,
) -> None:
    """Compose and send an email."""
    service = ComposeService(app.config, storage=app.storage, audit=app.audit)
    form = ComposeForm(
        provider=provider or "",
        from_field=from_field,
        to=", ".join(to),
        cc=", ".join(cc),
        bcc=", ".join(bcc),
        attachments=list(attach),
    )

    if template_key:
        template = app.storage.find_template(template_key)
        if template is None:
            _fail(f"template '{template_key}' not found")

        user_values = _parse_vars(variables)
        if interactive:
            defaults = service.template_values(template, form, user_values)
            for name in prompt_variables(template):
                if name not in user_values:
                    user_values[name] = click.prompt(name, default=defaults.get(name, ""), show_default=True)
        service.apply_template(template, form, user_values)

    if subject is not None:
        form.subject = subject
    explicit_body = _read_body(body, body_file)
    if explicit_body is not None:
        form.body = explicit_body

    if dry_run:
        try:
            data = service.build_email(form)
        except ComposeError as e:
            _fail(f"Validation error: {e}")

        resolved = service.provider(form.provider)
        table = Table(title="Dry run", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("Provider", escape(resolved.name if resolved else "-"))
        sender = data.from_addr or (resolved.from_address if resolved else "")
        sender_name = data.from_name or (resolved.from_name if resolved else "")
        table.add_row("From", escape(f"{sender_name} <{sender}>" if sender_name else sender))
        table.add_row("To", escape(", ".join(data.to)))
        if data.cc:
            table.add_row("CC", escape(", ".join(data.cc)))
        if data.bcc:
            table.add_row("BCC", escape(", ".join(data.bcc)))
        table.add_row("Subject", escape(data.subject))
        if data.attachments:
            table.add_row("Attachments", escape(", ".join(data.attachments)))
        console.print(table)
        console.print(escape(data.body))
        return

    result = service.send(form)
    if not result.success:
        _fail(result.error or "send failed")

    console.print("[green][OK] Email sent successfully[/green]")
    if result.message_id:
        console.print(f"  Message-ID: {escape(result.message_id)}")


# Templates


@cli.group()
def templates() -> None:
    """Manage email templates."""


@templates.command("list")
@click.option("--tag", default=None, help="Only templates with this tag")
@click.pass_obj
def templates_list(app: AppContext, tag: str | None) -> None:
    """List templates."""
    items = app.storage.templates_by_tag(tag) if tag else app.storage.list_templates()
    if not items:
        console.print("No templates found")
        return

    table = Table(title=f"Templates ({len(items)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Subject")
    table.add_column("Variables")
    table.add_column("Tags")

    for template in items:
        table.add_row(
            template.id[:8],
            escape(template.name),
            escape(template.subject[:50]),
            escape(", ".join(template.variables)) or "-",
            escape(", ".join(template.tags)) or "-",
        )
    console.print(table)


@templates.command("show")
@click.argument("key")
@click.pass_obj
def templates_show(app: AppContext, key: str) -> None:
    """Show a template."""
    template = app.storage.find_template(key)
    if template is None:
        _fail(f"template '{key}' not found")

    console.print(f"[bold]{escape(template.name)}[/bold] ({template.id})")
    if template.description:
        console.print(f"[dim]{escape(template.description)}[/dim]")
    console.print(f"Subject: {escape(template.subject)}")
    console.print(f"Variables: {escape(', '.join(template.variables)) or '-'}")
    console.print(f"Tags: {escape(', '.join(template.tags)) or '-'}")
    console.print()
    console.print(escape(template.body))


@templates.command("add")
@click.option("--name", "-n", required=True, help="Template name")
@click.option("--subject", "-s", default="", help="Subject, may contain {{variables}}")
@click.option("--body", "-b", default=None, help="Body, may contain {{variables}}")
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False), help="Read the body from a file")
@click.option("--tag", multiple=True, help="Tag (repeatable)")
@click.option("--description", "-d", default="", help="Short description")
@click.pass_obj
def templates_add(
    app: AppContext,
    name: str,
    subject: str,
    body: str | None,
    body_file: str | None,
    tag: tuple[str, ...],
    description: str,
) -> None:
    """Create a template."""
    template = Template(
        name=name,
        subject=subject,
        body=_read_body(body, body_file) or "",
        tags=list(tag),
        description=description,
    )
    template = app.storage.add_template(template)
    app.audit.log_template_saved(template.id, template.name, template.variables)

    console.print(f"[green]Template '{escape(template.name)}' created[/green] ({template.id})")
    if template.variables:
        console.print(f"  Variables: {escape(', '.join(template.variables))}")


@templates.command("edit")
@click.argument("key")
@click.option("--name", "-n", default=None)
@click.option("--subject", "-s", default=None)
@click.option("--body", "-b", default=None)
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False))
@click.option("--tag", multiple=True, help="Replace tags (repeatable)")
@click.option("--description", "-d", default=None)
@click.pass_obj
def templates_edit(
    app: AppContext,
    key: str,
    name: str | None,
    subject: str | None,
    body: str | None,
    body_file: str | None,
    tag: tuple[str, ...],
    description: str | None,
) -> None:
    """Update a template; unspecified fields are kept."""
    existing = app.storage.find_template(key)
    if existing is None:
        _fail(f"template '{key}' not found")

    new_body = _read_body(body, body_file)
    updated = Template(
        name=name if name is not None else existing.name,
        subject=subject if subject is not None else existing.subject,
        body=new_body if new_body is not None else existing.body,
        tags=list(tag) if tag else existing.tags,
        description=description if description is not None else existing.description,
    )
    updated = app.storage.update_template(existing.id, updated)
    app.audit.log_template_saved(updated.id, updated.name, updated.variables)

    console.print(f"[green]Template '{escape(updated.name)}' updated[/green]")
    console.print(f"  Variables: {escape(', '.join(updated.variables)) or '-'}")


@templates.command("delete")
@click.argument("key")
@click.pass_obj
def templates_delete(app: AppContext, key: str) -> None:
    """Delete a template."""
    template = app.storage.find_template(key)
    if template is None:
        _fail(f"template '{key}' not found")

    app.storage.delete_template(template.id)
    app.audit.log_template_deleted(template.id)
    console.print(f"Template '{escape(template.name)}' deleted")


@templates.command("render")
@click.argument("key")
@click.option("--provider", "-p", default=None, help="Provider for from_name/from_email defaults")
@click.option("--from", "from_field", default="", help="From override used for variable defaults")
@click.option("--var", "variables", multiple=True, help="Variable KEY=VALUE (repeatable)")
@click.pass_obj
def templates_render(
    app: AppContext,
    key: str,
    provider: str | None,
    from_field: str,
    variables: tuple[str, ...],
) -> None:
    """Preview a rendered template."""
    template = app.storage.find_template(key)
    if template is None:
        _fail(f"template '{key}' not found")

    service = ComposeService(app.config)
    form = ComposeForm(provider=provider or "", from_field=from_field)
    values = service.template_values(template, form, _parse_vars(variables))
    subject, body = render_template(template, values)

    console.print(f"Subject: {escape(subject)}")
    console.print()
    console.print(escape(body))


# Contacts


@cli.group()
def contacts() -> None:
    """Manage the address book."""


@contacts.command("list")
@click.option("--tag", default=None, help="Only contacts with this tag")
@click.pass_obj
def contacts_list(app: AppContext, tag: str | None) -> None:
    """List contacts."""
    items = app.storage.contacts_by_tag(tag) if tag else app.storage.list_contacts()
    if not items:
        console.print("No contacts found")
        return

    table = Table(title=f"Contacts ({len(items)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Email")
    table.add_column("Tags")

    for contact in items:
        table.add_row(
            contact.id[:8],
            escape(contact.name),
            escape(contact.email),
            escape(", ".join(contact.tags)) or "-",
        )
    console.print(table)


@contacts.command("add")
@click.argument("name")
@click.argument("email")
@click.option("--notes", default="", help="Free-form notes")
@click.option("--tag", multiple=True, help="Tag (repeatable)")
@click.pass_obj
def contacts_add(app: AppContext, name: str, email: str, notes: str, tag: tuple[str, ...]) -> None:
    """Add a contact."""
    try:
        address = parse_mailbox(email.strip())
    except AddressParseError as e:
        _fail(str(e))

    contact = app.storage.add_contact(
        Contact(name=name, email=address.address, notes=notes, tags=list(tag))
    )
    console.print(f"[green]Contact added:[/green] {escape(str(contact))} ({contact.id})")


@contacts.command("delete")
@click.argument("contact_id")
@click.pass_obj
def contacts_delete(app: AppContext, contact_id: str) -> None:
    """Delete a contact by id."""
    if not app.storage.delete_contact(contact_id):
        _fail(f"contact '{contact_id}' not found")
    console.print("Contact deleted")


# History


@cli.group()
def history() -> None:
    """View sent-mail history."""


@history.command("list")
@click.option("--limit", "-l", type=int, default=20, help="Number of entries")
@click.pass_obj
def history_list(app: AppContext, limit: int) -> None:
    """List recent sends, newest first."""
    entries = app.storage.get_recent(limit)
    if not entries:
        console.print("No emails sent yet")
        return

    table = Table(title=f"History (last {len(entries)} entries)")
    table.add_column("Time", style="dim")
    table.add_column("ID", style="dim")
    table.add_column("Provider")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("OK", justify="center")

    for entry in entries:
        status = "[red][X][/red]" if entry.failed else "[green][OK][/green]"
        table.add_row(
            entry.sent_at.strftime("%Y-%m-%d %H:%M") if entry.sent_at else "",
            entry.id[:8],
            escape(entry.provider_name),
            escape(", ".join(entry.to)[:40]),
            escape(entry.subject[:50]),
            status,
        )
    console.print(table)


@history.command("show")
@click.argument("entry_id")
@click.pass_obj
def history_show(app: AppContext, entry_id: str) -> None:
    """Show one history entry."""
    entry = app.storage.get_history_entry(entry_id)
    if entry is None:
        _fail(f"history entry '{entry_id}' not found")

    console.print(f"Sent: {entry.sent_at:%Y-%m-%d %H:%M:%S} via {escape(entry.provider_name)} ({entry.provider})")
    console.print(f"From: {escape(entry.from_addr) or '(provider default)'}")
    console.print(f"To: {escape(', '.join(entry.to))}")
    if entry.cc:
        console.print(f"CC: {escape(', '.join(entry.cc))}")
    if entry.bcc:
        console.print(f"BCC: {escape(', '.join(entry.bcc))}")
    console.print(f"Subject: {escape(entry.subject)}")
    if entry.attachments:
        console.print(f"Attachments: {escape(', '.join(entry.attachments))}")
    if entry.failed:
        console.print(f"[red]Status: failed - {escape(entry.error or '')}[/red]")
    else:
        console.print("[green]Status: success[/green]")
    console.print()
    console.print(escape(entry.body))


@history.command("clear")
@click.confirmation_option(prompt="Delete all history entries?")
@click.pass_obj
def history_clear(app: AppContext) -> None:
    """Delete all history entries."""
    count = app.storage.clear_history()
    console.print(f"Removed {count} entries")


# Providers


@cli.group()
def providers() -> None:
    """Manage sending providers."""


@providers.command("list")
@click.pass_obj
def providers_list(app: AppContext) -> None:
    """List configured providers."""
    names = app.config.list_providers()
    if not names:
        console.print("No providers configured. Add one with: mailgloss providers add")
        return

    table = Table(title="Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("From")
    table.add_column("Domain")
    table.add_column("Default", justify="center")

    for name in names:
        provider = app.config.providers[name]
        sender = f"{provider.from_name} <{provider.from_address}>" if provider.from_name else provider.from_address
        table.add_row(
            escape(name),
            provider.type,
            escape(sender),
            escape(provider.domain or "-"),
            "*" if name == app.config.default_provider else "",
        )
    console.print(table)


@providers.command("add")
@click.argument("name")
@click.option(
    "--type",
    "provider_type",
    required=True,
    type=click.Choice([t.value for t in ProviderType]),
    help="Transport kind",
)
@click.option("--from-address", required=True, help="Default sender address")
@click.option("--from-name", default="", help="Default sender name")
@click.option("--host", default=None, help="SMTP host")
@click.option("--port", type=int, default=None, help="SMTP port")
@click.option("--username", default=None, help="SMTP username")
@click.option("--password", default=None, help="SMTP password")
@click.option("--api-key", default=None, help="API key (HTTP providers)")
@click.option("--domain", default=None, help="Sending domain (mailgun)")
@click.option("--url", default=None, help="API base URL (mailgun, sparkpost, postal)")
@click.pass_obj
def providers_add(
    app: AppContext,
    name: str,
    provider_type: str,
    from_address: str,
    from_name: str,
    host: str | None,
    port: int | None,
    username: str | None,
    password: str | None,
    api_key: str | None,
    domain: str | None,
    url: str | None,
) -> None:
    """Add or replace a provider."""
    ptype = ProviderType(provider_type)
    settings = {
        key: value
        for key, value in {
            "host": host,
            "port": port,
            "username": username,
            "password": password,
            "api_key": api_key,
            "domain": domain,
            "url": url,
        }.items()
        if value is not None
    }

    try:
        provider = PROVIDER_CLASSES[ptype](
            name=name,
            from_address=from_address,
            from_name=from_name,
            **{ptype.value: settings},
        )
        app.config.add_provider(provider)
    except (ConfigError, ValidationError) as e:
        _fail(f"provider '{name}': {e}")

    app.save_config()
    console.print(f"[green]Provider '{escape(name)}' saved[/green] ({ptype.value})")


@providers.command("remove")
@click.argument("name")
@click.pass_obj
def providers_remove(app: AppContext, name: str) -> None:
    """Remove a provider."""
    try:
        app.config.delete_provider(name)
    except ConfigError as e:
        _fail(str(e))

    app.save_config()
    console.print(f"Provider '{escape(name)}' removed")
    if app.config.default_provider:
        console.print(f"Default provider: {escape(app.config.default_provider)}")


@providers.command("default")
@click.argument("name")
@click.pass_obj
def providers_default(app: AppContext, name: str) -> None:
    """Set the default provider."""
    try:
        app.config.get_provider(name)
    except ConfigError as e:
        _fail(str(e))

    app.config.default_provider = name
    app.save_config()
    console.print(f"Default provider: {escape(name)}")


# Setup


@cli.command()
@click.pass_obj
def check(app: AppContext) -> None:
    """Check the configuration."""
    console.print(f"Configuration: {app.config_path}")
    try:
        app.config.check()
    except ConfigError as e:
        _fail(str(e))
    console.print("[green][OK] Configuration valid[/green]")

    names = app.config.list_providers()
    console.print(f"\n{len(names)} providers configured")
    unsendable = []
    for name in names:
        provider = app.config.providers[name]
        marker = " (default)" if name == app.config.default_provider else ""
        if ProviderType(provider.type) not in DEFAULT_TRANSPORTS:
            unsendable.append(name)
            marker += " [yellow](no transport)[/yellow]"
        console.print(f"  - {escape(name)}: {provider.type}{marker}")

    if unsendable:
        console.print(
            f"\n[yellow]Warning: no transport for {escape(', '.join(unsendable))}; "
            "sending through these providers will fail[/yellow]"
        )

    limits = app.config.limits
    console.print(
        f"\nLimits: attachments {limits.max_attachment_size_mb}MB, "
        f"history {limits.max_history_entries}, body {limits.max_body_length} chars, "
        f"{limits.max_emails_per_field} addresses per field"
    )


SAMPLE_CONFIG = """# mailgloss configuration

default_provider: work

# strftime format for the {{date}} template variable
date_format: "%d.%m.%Y"

providers:
  work:
    name: work
    type: smtp
    from_address: me@example.com
    from_name: Jane Doe
    smtp:
      host: smtp.example.com
      port: 587
      username: me@example.com
      password: app-password

  newsletter:
    name: newsletter
    type: mailgun
    from_address: news@mg.example.com
    from_name: Example News
    mailgun:
      api_key: key-xxxxxxxxxxxxxxxx
      # "news@" in the From field is completed with this domain
      domain: mg.example.com
      url: https://api.mailgun.net

limits:
  max_attachment_size_mb: 25
  max_history_entries: 100
  max_body_length: 10000
  max_emails_per_field: 500

logging:
  level: INFO
  log_file: mailgloss.log
  # audit_file: audit.jsonl

database_path: mailgloss.db
"""


@cli.command("init-config")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path), required=False)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_obj
def init_config(app: AppContext, output: Path | None, force: bool) -> None:
    """Generate a sample configuration file."""
    output = output or app.config_path
    if output.exists() and not force:
        _fail(f"{output} already exists (use --force to overwrite)")

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(SAMPLE_CONFIG, encoding="utf-8")
    output.chmod(0o600)
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. Edit the provider settings")
    console.print("2. Run: mailgloss check")
    console.print("3. Run: mailgloss send --to someone@example.com -s Hello -b Hi")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
