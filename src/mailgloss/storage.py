"""SQLite storage for templates, contacts and sent-mail history."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Generator

from mailgloss.template_engine import extract_variables

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Template:
    """A reusable subject and body with ``{{variable}}`` placeholders."""

    name: str
    subject: str = ""
    body: str = ""
    id: str = ""
    variables: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class Contact:
    """An address book entry."""

    name: str
    email: str
    id: str = ""
    notes: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>" if self.name else self.email


@dataclass
class SentEmail:
    """A history entry for a send attempt."""

    from_addr: str
    to: list[str]
    subject: str
    body: str
    provider: str
    provider_name: str
    status: str = "success"
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)
    error: str | None = None
    id: str = ""
    sent_at: datetime | None = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sent_at"] = self.sent_at.isoformat() if self.sent_at else None
        return data


class Storage:
    """SQLite-based storage for templates, contacts and history."""

    SCHEMA_VERSION = 1
    DEFAULT_MAX_HISTORY = 100

    def __init__(self, db_path: str | Path, max_history_entries: int = DEFAULT_MAX_HISTORY):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self.max_history_entries = max_history_entries or self.DEFAULT_MAX_HISTORY
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS templates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    variables_json TEXT NOT NULL,
                    tags_json TEXT NOT NULL,
                    description TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    notes TEXT NOT NULL,
                    tags_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                -- seq preserves insertion order for trimming and listing
                CREATE TABLE IF NOT EXISTS history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    from_addr TEXT NOT NULL,
                    to_json TEXT NOT NULL,
                    cc_json TEXT NOT NULL,
                    bcc_json TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    attachments_json TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    provider_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
                CREATE INDEX IF NOT EXISTS idx_templates_name ON templates(name);
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Templates

    def add_template(self, template: Template) -> Template:
        """Store a new template. Assigns id and timestamps, derives variables."""
        now = datetime.now()
        template.id = template.id or _new_id()
        template.created_at = now
        template.updated_at = now
        template.variables = extract_variables(template.subject, template.body)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO templates (
                    id, name, subject, body, variables_json, tags_json,
                    description, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.id,
                    template.name,
                    template.subject,
                    template.body,
                    json.dumps(template.variables),
                    json.dumps(template.tags),
                    template.description,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )

        logger.info(f"Template added: {template.name} (variables: {template.variables})")
        return template

    def update_template(self, template_id: str, updated: Template) -> Template | None:
        """Replace a template's content, keeping its id and creation time.

        Returns:
            The stored template, or None if no template has that id
        """
        existing = self.get_template(template_id)
        if existing is None:
            logger.warning(f"Template not found for update: {template_id}")
            return None

        updated.id = template_id
        updated.created_at = existing.created_at
        updated.updated_at = datetime.now()
        updated.variables = extract_variables(updated.subject, updated.body)

        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE templates
                SET name = ?, subject = ?, body = ?, variables_json = ?,
                    tags_json = ?, description = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.name,
                    updated.subject,
                    updated.body,
                    json.dumps(updated.variables),
                    json.dumps(updated.tags),
                    updated.description,
                    updated.updated_at.isoformat(),
                    template_id,
                ),
            )

        logger.info(f"Template updated: {updated.name}")
        return updated

    def delete_template(self, template_id: str) -> bool:
        """Delete a template. Returns False if it did not exist."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
            deleted = cursor.rowcount > 0

        if not deleted:
            logger.warning(f"Template not found for deletion: {template_id}")
        return deleted

    def get_template(self, template_id: str) -> Template | None:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,))
            row = cursor.fetchone()
            return self._row_to_template(row) if row else None

    def find_template(self, key: str) -> Template | None:
        """Look a template up by id, then by name."""
        template = self.get_template(key)
        if template is not None:
            return template
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM templates WHERE name = ? ORDER BY created_at LIMIT 1",
                (key,),
            )
            row = cursor.fetchone()
            return self._row_to_template(row) if row else None

    def list_templates(self) -> list[Template]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM templates ORDER BY created_at, name")
            return [self._row_to_template(row) for row in cursor.fetchall()]

    def templates_by_tag(self, tag: str) -> list[Template]:
        return [t for t in self.list_templates() if tag in t.tags]

    def _row_to_template(self, row: sqlite3.Row) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            subject=row["subject"],
            body=row["body"],
            variables=json.loads(row["variables_json"]),
            tags=json.loads(row["tags_json"]),
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Contacts

    def add_contact(self, contact: Contact) -> Contact:
        now = datetime.now()
        contact.id = contact.id or _new_id()
        contact.created_at = now
        contact.updated_at = now

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO contacts (id, name, email, notes, tags_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    contact.id,
                    contact.name,
                    contact.email,
                    contact.notes,
                    json.dumps(contact.tags),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )

        logger.info(f"Contact added: {contact.name} <{contact.email}>")
        return contact

    def update_contact(self, contact_id: str, updated: Contact) -> Contact | None:
        existing = self.get_contact(contact_id)
        if existing is None:
            logger.warning(f"Contact not found for update: {contact_id}")
            return None

        updated.id = contact_id
        updated.created_at = existing.created_at
        updated.updated_at = datetime.now()

        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE contacts
                SET name = ?, email = ?, notes = ?, tags_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.name,
                    updated.email,
                    updated.notes,
                    json.dumps(updated.tags),
                    updated.updated_at.isoformat(),
                    contact_id,
                ),
            )

        logger.info(f"Contact updated: {updated.name} <{updated.email}>")
        return updated

    def delete_contact(self, contact_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
            deleted = cursor.rowcount > 0

        if not deleted:
            logger.warning(f"Contact not found for deletion: {contact_id}")
        return deleted

    def get_contact(self, contact_id: str) -> Contact | None:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,))
            row = cursor.fetchone()
            return self._row_to_contact(row) if row else None

    def get_contact_by_email(self, email: str) -> Contact | None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM contacts WHERE email = ? LIMIT 1", (email,)
            )
            row = cursor.fetchone()
            return self._row_to_contact(row) if row else None

    def list_contacts(self) -> list[Contact]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM contacts ORDER BY name, email")
            return [self._row_to_contact(row) for row in cursor.fetchall()]

    def contacts_by_tag(self, tag: str) -> list[Contact]:
        return [c for c in self.list_contacts() if tag in c.tags]

    def _row_to_contact(self, row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            notes=row["notes"],
            tags=json.loads(row["tags_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # History

    def add_history(self, entry: SentEmail) -> SentEmail:
        """Append a history entry and drop the oldest beyond the limit."""
        entry.id = entry.id or _new_id()
        entry.sent_at = entry.sent_at or datetime.now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO history (
                    id, from_addr, to_json, cc_json, bcc_json, subject, body,
                    attachments_json, sent_at, provider, provider_name, status, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.from_addr,
                    json.dumps(entry.to),
                    json.dumps(entry.cc),
                    json.dumps(entry.bcc),
                    entry.subject,
                    entry.body,
                    json.dumps(entry.attachments),
                    entry.sent_at.isoformat(),
                    entry.provider,
                    entry.provider_name,
                    entry.status,
                    entry.error,
                ),
            )
            conn.execute(
                """
                DELETE FROM history WHERE seq NOT IN (
                    SELECT seq FROM history ORDER BY seq DESC LIMIT ?
                )
                """,
                (self.max_history_entries,),
            )

        logger.debug(f"Added email to history: {entry.id} ({entry.status})")
        return entry

    def get_recent(self, limit: int) -> list[SentEmail]:
        """Most recent entries first."""
        if limit <= 0:
            return []
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM history ORDER BY seq DESC LIMIT ?", (limit,)
            )
            return [self._row_to_sent_email(row) for row in cursor.fetchall()]

    def get_history(self) -> list[SentEmail]:
        return self.get_recent(self.max_history_entries)

    def get_history_entry(self, entry_id: str) -> SentEmail | None:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM history WHERE id = ?", (entry_id,))
            row = cursor.fetchone()
            return self._row_to_sent_email(row) if row else None

    def clear_history(self) -> int:
        """Remove all history entries. Returns the number removed."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM history")
            count = cursor.rowcount
        logger.info(f"History cleared ({count} entries)")
        return count

    def _row_to_sent_email(self, row: sqlite3.Row) -> SentEmail:
        return SentEmail(
            id=row["id"],
            from_addr=row["from_addr"],
            to=json.loads(row["to_json"]),
            cc=json.loads(row["cc_json"]),
            bcc=json.loads(row["bcc_json"]),
            subject=row["subject"],
            body=row["body"],
            attachments=json.loads(row["attachments_json"]),
            sent_at=datetime.fromisoformat(row["sent_at"]),
            provider=row["provider"],
            provider_name=row["provider_name"],
            status=row["status"],
            error=row["error"],
        )
