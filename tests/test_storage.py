"""Tests for storage module."""

import pytest

from mailgloss.storage import Contact, SentEmail, Storage, Template


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "data" / "mailgloss.db", max_history_entries=3)


def sent(subject: str, status: str = "success") -> SentEmail:
    return SentEmail(
        from_addr="me@example.com",
        to=["a@example.com"],
        cc=["c@example.com"],
        subject=subject,
        body="Hello",
        provider="smtp",
        provider_name="work",
        status=status,
        error="boom" if status == "failed" else None,
    )


class TestTemplates:
    """Tests for template storage."""

    def test_add_assigns_id_and_variables(self, storage):
        template = storage.add_template(
            Template(name="welcome", subject="Hi {{name}}", body="Welcome to {{ company }}")
        )
        assert template.id
        assert template.created_at == template.updated_at
        assert template.variables == ["company", "name"]

        loaded = storage.get_template(template.id)
        assert loaded.name == "welcome"
        assert loaded.variables == ["company", "name"]

    def test_update_keeps_id_and_created_at(self, storage):
        original = storage.add_template(Template(name="t", subject="{{a}}", body=""))

        updated = storage.update_template(
            original.id, Template(name="t2", subject="{{b}}", body="{{c}}", tags=["x"])
        )

        assert updated.id == original.id
        assert updated.created_at == original.created_at
        loaded = storage.get_template(original.id)
        assert loaded.name == "t2"
        assert loaded.variables == ["b", "c"]
        assert loaded.tags == ["x"]

    def test_update_missing(self, storage):
        assert storage.update_template("nope", Template(name="x")) is None

    def test_delete(self, storage):
        template = storage.add_template(Template(name="t"))
        assert storage.delete_template(template.id) is True
        assert storage.delete_template(template.id) is False
        assert storage.get_template(template.id) is None

    def test_find_by_id_or_name(self, storage):
        template = storage.add_template(Template(name="welcome", subject="s", body="b"))
        assert storage.find_template(template.id).name == "welcome"
        assert storage.find_template("welcome").id == template.id
        assert storage.find_template("missing") is None

    def test_list_and_tags(self, storage):
        storage.add_template(Template(name="a", tags=["news"]))
        storage.add_template(Template(name="b", tags=["work", "news"]))
        storage.add_template(Template(name="c"))

        assert [t.name for t in storage.list_templates()] == ["a", "b", "c"]
        assert [t.name for t in storage.templates_by_tag("news")] == ["a", "b"]
        assert storage.templates_by_tag("none") == []

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "m.db"
        Storage(path).add_template(Template(name="kept"))
        assert [t.name for t in Storage(path).list_templates()] == ["kept"]


class TestContacts:
    """Tests for contact storage."""

    def test_add_get_update_delete(self, storage):
        contact = storage.add_contact(Contact(name="Jane", email="jane@example.com", tags=["vip"]))
        assert storage.get_contact(contact.id).email == "jane@example.com"
        assert storage.get_contact_by_email("jane@example.com").name == "Jane"

        storage.update_contact(contact.id, Contact(name="Janet", email="janet@example.com"))
        loaded = storage.get_contact(contact.id)
        assert loaded.name == "Janet"
        assert loaded.created_at == contact.created_at

        assert storage.delete_contact(contact.id) is True
        assert storage.list_contacts() == []

    def test_update_missing(self, storage):
        assert storage.update_contact("nope", Contact(name="x", email="x@example.com")) is None

    def test_list_sorted_and_by_tag(self, storage):
        storage.add_contact(Contact(name="Zed", email="z@example.com", tags=["team"]))
        storage.add_contact(Contact(name="Amy", email="a@example.com"))

        assert [c.name for c in storage.list_contacts()] == ["Amy", "Zed"]
        assert [c.name for c in storage.contacts_by_tag("team")] == ["Zed"]

    def test_str(self):
        assert str(Contact(name="Jane", email="j@example.com")) == "Jane <j@example.com>"
        assert str(Contact(name="", email="j@example.com")) == "j@example.com"


class TestHistory:
    """Tests for sent-mail history."""

    def test_add_and_get(self, storage):
        entry = storage.add_history(sent("one"))
        assert entry.id
        assert entry.sent_at is not None

        loaded = storage.get_history_entry(entry.id)
        assert loaded.subject == "one"
        assert loaded.to == ["a@example.com"]
        assert loaded.cc == ["c@example.com"]
        assert loaded.failed is False

    def test_failed_entry(self, storage):
        entry = storage.add_history(sent("bad", status="failed"))
        loaded = storage.get_history_entry(entry.id)
        assert loaded.failed
        assert loaded.error == "boom"

    def test_bounded_oldest_dropped(self, storage):
        for subject in ["1", "2", "3", "4", "5"]:
            storage.add_history(sent(subject))

        assert [e.subject for e in storage.get_history()] == ["5", "4", "3"]

    def test_get_recent(self, storage):
        for subject in ["1", "2", "3"]:
            storage.add_history(sent(subject))

        assert [e.subject for e in storage.get_recent(2)] == ["3", "2"]
        assert [e.subject for e in storage.get_recent(10)] == ["3", "2", "1"]
        assert storage.get_recent(0) == []

    def test_clear(self, storage):
        storage.add_history(sent("1"))
        storage.add_history(sent("2"))

        assert storage.clear_history() == 2
        assert storage.get_history() == []

    def test_to_dict(self, storage):
        entry = storage.add_history(sent("1"))
        data = entry.to_dict()
        assert data["subject"] == "1"
        assert isinstance(data["sent_at"], str)
