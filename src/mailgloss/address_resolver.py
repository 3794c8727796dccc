"""From-field and recipient address parsing."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.utils import formataddr
from typing import TYPE_CHECKING

from email_validator import SPECIAL_USE_DOMAIN_NAMES, EmailNotValidError, validate_email

if TYPE_CHECKING:
    from mailgloss.config import ProviderConfig

logger = logging.getLogger(__name__)

_VALIDATOR_OPTIONS = {
    "check_deliverability": False,
    "globally_deliverable": False,
    "allow_quoted_local": True,
    "allow_domain_literal": True,
}

_HOSTNAME_LABEL_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

# Display name (quoted string or plain words) followed by <addr-spec>
_NAME_ADDR_RE = re.compile(
    r'^\s*(?:"(?P<quoted>(?:[^"\\]|\\.)*)"|(?P<plain>[^<>"]*?))\s*<(?P<addr>[^<>]*)>\s*$'
)


class AddressParseError(ValueError):
    """An address that does not follow the mailbox grammar."""

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"invalid email '{value}': {reason}")


@dataclass(frozen=True)
class ResolvedAddress:
    """A validated address with its display name."""

    address: str
    name: str = ""

    def __str__(self) -> str:
        if not self.address:
            return ""
        return formataddr((self.name, self.address)) if self.name else self.address


def provider_domain(provider: ProviderConfig | None) -> str | None:
    """Domain the provider can complete ``user@`` addresses with."""
    if provider is None:
        return None
    return provider.domain


def _decode_name(value: str) -> str:
    """Decode RFC 2047 encoded words in a display name."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return value


def _validate_addr_spec(value: str) -> str:
    """Validate a bare ``local@domain`` address.

    Returns:
        The address exactly as typed, surrounding whitespace removed

    Raises:
        AddressParseError: With the validator's reason
    """
    candidate = value.strip()
    if not candidate:
        raise AddressParseError(value, "no address")
    if "<" in candidate or ">" in candidate:
        raise AddressParseError(value, "unexpected angle bracket in address")

    try:
        validate_email(candidate, **_VALIDATOR_OPTIONS)
    except EmailNotValidError as e:
        local, _, domain = candidate.rpartition("@")
        if not (local and _is_special_use_domain(domain)):
            raise AddressParseError(value, str(e)) from None

        # Dotless and reserved domains (localhost, .local, .test) are valid
        # mailbox syntax; check the local part on its own
        try:
            validate_email(f"{local}@example.com", **_VALIDATOR_OPTIONS)
        except EmailNotValidError as local_error:
            raise AddressParseError(value, str(local_error)) from None

    return candidate


def _is_special_use_domain(domain: str) -> bool:
    """Whether a well-formed hostname is dotless or under a reserved TLD."""
    labels = domain.split(".")
    if not domain or not all(_HOSTNAME_LABEL_RE.match(label) for label in labels):
        return False
    if len(labels) == 1:
        return True
    lowered = domain.lower()
    return any(
        lowered == name or lowered.endswith("." + name) for name in SPECIAL_USE_DOMAIN_NAMES
    )


def parse_mailbox(value: str) -> ResolvedAddress:
    """Parse ``addr@host`` or ``Display Name <addr@host>``.

    The display name may be a quoted string (``"Doe, Jane" <j@x.com>``)
    or contain RFC 2047 encoded words.

    Raises:
        AddressParseError: If the value is not a single valid mailbox
    """
    match = _NAME_ADDR_RE.match(value)
    if match is None:
        return ResolvedAddress(address=_validate_addr_spec(value))

    try:
        address = _validate_addr_spec(match.group("addr"))
    except AddressParseError as e:
        raise AddressParseError(value, e.reason) from None

    quoted = match.group("quoted")
    if quoted is not None:
        name = re.sub(r"\\(.)", r"\1", quoted)
    else:
        name = _decode_name(match.group("plain").strip())

    return ResolvedAddress(address=address, name=name)


def parse_from_field(value: str | None, domain: str | None = None) -> ResolvedAddress:
    """Resolve the From field of the compose form.

    Accepted forms:
        - ``user@example.com``
        - ``Jane Doe <user@example.com>``
        - ``<user@example.com> Jane Doe``
        - ``user@`` (completed with ``domain`` when one is given)

    Args:
        value: Raw From input
        domain: Provider domain for completing a trailing ``@``

    Returns:
        Resolved address; empty when the input is blank, meaning the
        provider's configured sender should be used

    Raises:
        AddressParseError: Carrying the error from the standard parse,
            even when the reversed-form attempt also failed
    """
    value = (value or "").strip()
    if not value:
        return ResolvedAddress(address="", name="")

    if value.endswith("@") and domain:
        value += domain

    try:
        return parse_mailbox(value)
    except AddressParseError as primary_error:
        resolved = _parse_bracketed(value, domain)
        if resolved is None:
            raise AddressParseError(value, primary_error.reason) from None
        logger.debug(f"From field parsed in bracketed form: {resolved.address}")
        return resolved


def _parse_bracketed(value: str, domain: str | None) -> ResolvedAddress | None:
    """Parse ``<addr> Name`` or ``Name <addr>`` with lenient name placement."""
    start = value.find("<")
    end = value.find(">")
    if start == -1 or end == -1 or start > end:
        return None

    address = value[start + 1 : end].strip()
    name = value[:start].strip() or value[end + 1 :].strip()

    if address.endswith("@") and domain:
        address += domain

    try:
        address = _validate_addr_spec(address)
    except AddressParseError:
        return None

    return ResolvedAddress(address=address, name=name)


def split_addresses(value: str | None) -> list[str]:
    """Split a comma-separated recipient field and validate every entry.

    Returns:
        The trimmed entries, in input order

    Raises:
        AddressParseError: For the first invalid entry; nothing is
            accepted from a field that contains one
    """
    if not value:
        return []

    addresses = []
    for part in value.split(","):
        entry = part.strip()
        if not entry:
            continue
        parse_mailbox(entry)
        addresses.append(entry)

    return addresses
