"""Template variable extraction and rendering.

Templates carry ``{{name}}`` placeholders in their subject and body.
Interior whitespace is ignored (``{{ name }}`` is the same variable) and
names are case-sensitive. Placeholders without a value are left in the
rendered text as-is.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from functools import lru_cache
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from mailgloss.config import ProviderConfig
    from mailgloss.storage import Template

logger = logging.getLogger(__name__)

OPEN_DELIMITER = "{{"
CLOSE_DELIMITER = "}}"

# Offered in the variable prompt even when a template does not use them
SYSTEM_VARIABLES = ("date", "from_name", "from_email")


def extract_variables(*texts: str) -> list[str]:
    """Find the distinct placeholder names used in the given texts.

    Each text is scanned left to right: find the next ``{{``, then the
    next ``}}`` after it. An opening delimiter without a closing one ends
    the scan of that text. Empty names (``{{}}``) are skipped.

    Returns:
        Sorted list of unique variable names
    """
    names: set[str] = set()

    for text in texts:
        if not text:
            continue
        pos = 0
        while pos < len(text):
            start = text.find(OPEN_DELIMITER, pos)
            if start == -1:
                break

            end = text.find(CLOSE_DELIMITER, start)
            if end == -1:
                break

            name = text[start + len(OPEN_DELIMITER) : end].strip()
            if name:
                names.add(name)

            pos = end + len(CLOSE_DELIMITER)

    return sorted(names)


@lru_cache(maxsize=256)
def _placeholder_pattern(name: str) -> re.Pattern[str]:
    return re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")


def render_text(text: str, values: Mapping[str, str]) -> str:
    """Substitute values into a single text."""
    for name, value in values.items():
        # Callable replacement so backslashes in the value are kept literally
        text = _placeholder_pattern(name).sub(lambda _m, v=value: v, text)
    return text


def render_template(template: Template, values: Mapping[str, str]) -> tuple[str, str]:
    """Render a template's subject and body.

    Args:
        template: Template to render (not modified)
        values: Variable name to replacement text

    Returns:
        Tuple of (subject, body)
    """
    subject = render_text(template.subject, values)
    body = render_text(template.body, values)
    return subject, body


def prompt_variables(template: Template) -> list[str]:
    """Variables to ask the user for: the template's own, then system ones."""
    variables = list(template.variables)
    for name in SYSTEM_VARIABLES:
        if name not in variables:
            variables.append(name)
    return variables


def system_defaults(
    provider: ProviderConfig | None,
    date_format: str = "%d.%m.%Y",
    today: date | None = None,
) -> dict[str, str]:
    """Default values derived from the clock and the active provider."""
    today = today or date.today()
    defaults = {"date": today.strftime(date_format)}

    if provider is not None:
        if provider.from_name:
            defaults["from_name"] = provider.from_name
        if provider.from_address:
            defaults["from_email"] = provider.from_address

    return defaults


def build_variable_values(
    defaults: Mapping[str, str],
    from_name: str = "",
    from_email: str = "",
    user_values: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge the value sources for a render.

    Priority, lowest first: system defaults, the From field override
    typed in the compose form, explicit user values.
    """
    values = dict(defaults)

    if from_name:
        values["from_name"] = from_name
    if from_email:
        values["from_email"] = from_email

    if user_values:
        values.update(user_values)

    logger.debug(f"Variable values resolved for: {', '.join(sorted(values))}")
    return values
