"""Tests for the compose pipeline."""

import json
from datetime import date

import httpx
import pytest

from mailgloss.compose import ComposeError, ComposeForm, ComposeService
from mailgloss.config import (
    Config,
    Limits,
    MailgunProvider,
    MailgunSettings,
    SMTPProvider,
    SMTPSettings,
)
from mailgloss.mailer import Mailer, MailerError, MailgunTransport, OutgoingMessage
from mailgloss.storage import Storage, Template
from mailgloss.structured_logger import StructuredLogger


class RecordingTransport:
    def __init__(self, error: Exception | None = None):
        self.messages: list[OutgoingMessage] = []
        self.error = error

    def send(self, message: OutgoingMessage) -> str | None:
        if self.error:
            raise self.error
        self.messages.append(message)
        return "msg-1"


@pytest.fixture
def config():
    config = Config()
    config.add_provider(
        MailgunProvider(
            name="news",
            from_address="news@mg.example.com",
            from_name="Example News",
            mailgun=MailgunSettings(api_key="key-123", domain="mg.example.com"),
        )
    )
    config.add_provider(
        SMTPProvider(
            name="work",
            from_address="me@example.com",
            smtp=SMTPSettings(host="smtp.example.com"),
        )
    )
    return config


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "mailgloss.db")


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def service(config, storage, transport):
    def factory(provider, max_attachment_mb):
        return Mailer(provider, max_attachment_mb=max_attachment_mb, transport=transport)

    return ComposeService(config, storage=storage, mailer_factory=factory)


def form(**kwargs) -> ComposeForm:
    values = {"to": "a@example.com", "subject": "Hello", "body": "Hi"}
    values.update(kwargs)
    return ComposeForm(**values)


class TestTemplateValues:
    """Tests for variable resolution when applying a template."""

    def test_defaults_from_provider(self, service):
        template = Template(name="t", subject="{{date}}", body="{{from_name}} <{{from_email}}>")
        values = service.template_values(template, ComposeForm(), today=date(2024, 3, 7))
        assert values == {
            "date": "07.03.2024",
            "from_name": "Example News",
            "from_email": "news@mg.example.com",
        }

    def test_from_field_overrides_provider(self, service):
        values = service.template_values(
            Template(name="t"), ComposeForm(from_field="Jane <jane@example.com>")
        )
        assert values["from_name"] == "Jane"
        assert values["from_email"] == "jane@example.com"

    def test_user_values_win(self, service):
        values = service.template_values(
            Template(name="t"),
            ComposeForm(from_field="Jane <jane@example.com>"),
            user_values={"from_name": "Janet", "topic": "Q1"},
        )
        assert values["from_name"] == "Janet"
        assert values["topic"] == "Q1"

    def test_unparseable_from_field_is_ignored(self, service):
        values = service.template_values(Template(name="t"), ComposeForm(from_field="not-valid"))
        assert values["from_email"] == "news@mg.example.com"

    def test_selected_provider(self, service):
        values = service.template_values(Template(name="t"), ComposeForm(provider="work"))
        assert values["from_email"] == "me@example.com"
        assert "from_name" not in values

    def test_apply_template(self, service):
        template = Template(name="t", subject="Hi {{name}}", body="Sent by {{from_name}}, {{unset}}")
        result = service.apply_template(template, ComposeForm(), {"name": "Ann"})
        assert result.subject == "Hi Ann"
        assert result.body == "Sent by Example News, {{unset}}"


class TestBuildEmail:
    """Tests for form validation."""

    def test_valid_form(self, service):
        data = service.build_email(
            form(to="a@example.com, Bob <b@example.com>", cc="c@example.com", from_field="Jane <jane@example.com>")
        )
        assert data.to == ["a@example.com", "Bob <b@example.com>"]
        assert data.cc == ["c@example.com"]
        assert data.bcc == []
        assert data.from_addr == "jane@example.com"
        assert data.from_name == "Jane"

    @pytest.mark.parametrize("field_name, key", [("To", "to"), ("CC", "cc"), ("BCC", "bcc")])
    def test_invalid_recipient(self, service, field_name, key):
        with pytest.raises(ComposeError) as exc_info:
            service.build_email(form(**{key: "a@x.com, not-valid"}))
        assert exc_info.value.field_name == field_name
        assert "not-valid" in str(exc_info.value)
        assert str(exc_info.value).startswith(f"{field_name} field:")

    def test_from_domain_completion(self, service):
        data = service.build_email(form(from_field="user@"))
        assert data.from_addr == "user@mg.example.com"

    def test_from_without_domain_completion(self, service):
        with pytest.raises(ComposeError) as exc_info:
            service.build_email(form(provider="work", from_field="user@"))
        assert exc_info.value.field_name == "From"

    def test_empty_from_uses_provider_later(self, service):
        data = service.build_email(form())
        assert data.from_addr == ""

    def test_too_many_addresses(self, config, storage):
        config.limits = Limits(max_emails_per_field=2)
        service = ComposeService(config, storage)
        with pytest.raises(ComposeError, match="too many addresses"):
            service.build_email(form(to="a@x.com, b@x.com, c@x.com"))

    def test_body_too_long(self, config, storage):
        config.limits = Limits(max_body_length=5)
        service = ComposeService(config, storage)
        with pytest.raises(ComposeError) as exc_info:
            service.build_email(form(body="too long body"))
        assert exc_info.value.field_name == "Body"


class TestSend:
    """Tests for sending and history recording."""

    def test_success_recorded(self, service, storage, transport):
        result = service.send(form(to="a@example.com", bcc="b@example.com"))

        assert result.success
        assert result.message_id == "msg-1"
        assert transport.messages[0].from_addr == "news@mg.example.com"
        assert transport.messages[0].bcc == ["b@example.com"]

        history = storage.get_history()
        assert len(history) == 1
        assert history[0].status == "success"
        assert history[0].provider == "mailgun"
        assert history[0].provider_name == "news"
        assert history[0].id == result.entry.id

    def test_delivery_failure_recorded(self, config, storage):
        def factory(provider, max_attachment_mb):
            return Mailer(provider, transport=RecordingTransport(error=MailerError("server down")))

        service = ComposeService(config, storage, mailer_factory=factory)
        result = service.send(form())

        assert not result.success
        assert result.error == "Failed to send email: server down"
        entry = storage.get_history()[0]
        assert entry.failed
        assert entry.error == "server down"

    @pytest.mark.parametrize("status, success", [(200, True), (500, False)])
    def test_http_client_closed_after_send(self, config, storage, status, success):
        client = httpx.Client(
            base_url="https://api.mailgun.net",
            transport=httpx.MockTransport(lambda request: httpx.Response(status, json={"id": "<1@mg>"})),
        )

        def factory(provider, max_attachment_mb):
            return Mailer(provider, transport=MailgunTransport(provider.mailgun, client=client))

        result = ComposeService(config, storage, mailer_factory=factory).send(form())

        assert result.success is success
        assert client.is_closed

    def test_validation_failure_not_recorded(self, service, storage, transport):
        result = service.send(form(to="not-valid"))

        assert not result.success
        assert result.error.startswith("Validation error: To field:")
        assert storage.get_history() == []
        assert transport.messages == []

    def test_no_provider(self, storage):
        result = ComposeService(Config(), storage).send(form())
        assert result.error == "Please select a provider"

    def test_unknown_provider(self, service):
        result = service.send(form(provider="ghost"))
        assert result.error.startswith("Provider error:")

    def test_without_storage(self, config, transport):
        def factory(provider, max_attachment_mb):
            return Mailer(provider, transport=transport)

        result = ComposeService(config, mailer_factory=factory).send(form())
        assert result.success
        assert result.entry.id == ""

    def test_audit_written(self, config, storage, transport, tmp_path):
        audit_path = tmp_path / "audit.jsonl"

        def factory(provider, max_attachment_mb):
            return Mailer(provider, transport=transport)

        service = ComposeService(config, storage, StructuredLogger(audit_path), factory)
        service.send(form(to="a@example.com, b@example.com", body="secret body"))

        event = json.loads(audit_path.read_text().splitlines()[0])
        assert event["event_type"] == "email_sent"
        assert event["provider"] == "news"
        assert event["recipient_count"] == 2
        assert "secret body" not in audit_path.read_text()
