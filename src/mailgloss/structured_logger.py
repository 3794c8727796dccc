"""Structured audit logging for mailgloss."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """Append-only JSONL audit trail of sends and template changes."""

    def __init__(self, log_file: str | Path | None = None):
        """Initialize structured logger.

        Args:
            log_file: Path to JSONL audit file; auditing is off when None
        """
        self.log_file = Path(log_file) if log_file else None

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Log a structured event.

        Args:
            event_type: Type of event (e.g. 'email_sent', 'template_saved')
            data: Event data
        """
        if not self.log_file:
            return

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to audit log: {e}")

    def log_send(
        self,
        provider_name: str,
        from_addr: str,
        recipients: list[str],
        subject: str,
        error: str | None = None,
    ) -> None:
        """Log a send attempt.

        Message bodies are never written to the audit trail.
        """
        self.log_event(
            "email_failed" if error else "email_sent",
            {
                "provider": provider_name,
                "from": self._sanitize(from_addr),
                "recipient_count": len(recipients),
                "subject": self._sanitize(subject),
                "error": self._sanitize(error) if error else None,
            },
        )

    def log_template_saved(self, template_id: str, name: str, variables: list[str]) -> None:
        self.log_event(
            "template_saved",
            {"template_id": template_id, "name": self._sanitize(name), "variables": variables},
        )

    def log_template_deleted(self, template_id: str) -> None:
        self.log_event("template_deleted", {"template_id": template_id})

    def _sanitize(self, value: str) -> str:
        """Drop control characters and cap the length."""
        sanitized = "".join(c for c in value if c.isprintable() or c in (" ", "\t"))
        if len(sanitized) > 500:
            sanitized = sanitized[:497] + "..."
        return sanitized
