"""Configuration management for mailgloss."""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


class ConfigError(ValueError):
    """Raised when a configuration is structurally valid but unusable."""


class ProviderType(str, Enum):
    """Supported outbound transport kinds."""

    SMTP = "smtp"
    MAILGUN = "mailgun"
    SENDGRID = "sendgrid"
    POSTMARK = "postmark"
    SPARKPOST = "sparkpost"
    POSTAL = "postal"


class SMTPSettings(BaseModel):
    """SMTP server settings."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = Field(default="", repr=False)


class MailgunSettings(BaseModel):
    """Mailgun API settings."""

    api_key: str = Field(default="", repr=False)
    domain: str = ""
    url: str = Field(
        default="https://api.mailgun.net",
        description="API base URL, e.g. https://api.eu.mailgun.net for the EU region",
    )


class SendGridSettings(BaseModel):
    """SendGrid API settings."""

    api_key: str = Field(default="", repr=False)


class PostmarkSettings(BaseModel):
    """Postmark API settings."""

    api_key: str = Field(default="", repr=False)


class SparkPostSettings(BaseModel):
    """SparkPost API settings."""

    api_key: str = Field(default="", repr=False)
    url: str = "https://api.sparkpost.com"


class PostalSettings(BaseModel):
    """Postal server settings."""

    url: str = ""
    api_key: str = Field(default="", repr=False)


class _ProviderBase(BaseModel):
    """Fields shared by every provider."""

    name: str
    from_address: str = ""
    from_name: str = ""

    @property
    def domain(self) -> str | None:
        """Domain used to complete a bare ``user@`` From address."""
        return None

    def check(self) -> None:
        """Validate required fields.

        Raises:
            ConfigError: If a required field is missing
        """
        if not self.name:
            raise ConfigError("name is required")
        if not self.from_address:
            raise ConfigError("from_address is required")
        self._check_settings()

    def _check_settings(self) -> None:
        """Provider-specific required fields; none by default."""


class SMTPProvider(_ProviderBase):
    type: Literal["smtp"] = "smtp"
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)

    def _check_settings(self) -> None:
        if not self.smtp.host:
            raise ConfigError("smtp.host is required")
        if not self.smtp.port:
            raise ConfigError("smtp.port is required")


class MailgunProvider(_ProviderBase):
    type: Literal["mailgun"] = "mailgun"
    mailgun: MailgunSettings = Field(default_factory=MailgunSettings)

    @property
    def domain(self) -> str | None:
        return self.mailgun.domain or None

    def _check_settings(self) -> None:
        if not self.mailgun.api_key:
            raise ConfigError("mailgun.api_key is required")
        if not self.mailgun.domain:
            raise ConfigError("mailgun.domain is required")


class SendGridProvider(_ProviderBase):
    type: Literal["sendgrid"] = "sendgrid"
    sendgrid: SendGridSettings = Field(default_factory=SendGridSettings)

    def _check_settings(self) -> None:
        if not self.sendgrid.api_key:
            raise ConfigError("sendgrid.api_key is required")


class PostmarkProvider(_ProviderBase):
    type: Literal["postmark"] = "postmark"
    postmark: PostmarkSettings = Field(default_factory=PostmarkSettings)

    def _check_settings(self) -> None:
        if not self.postmark.api_key:
            raise ConfigError("postmark.api_key is required")


class SparkPostProvider(_ProviderBase):
    type: Literal["sparkpost"] = "sparkpost"
    sparkpost: SparkPostSettings = Field(default_factory=SparkPostSettings)

    def _check_settings(self) -> None:
        if not self.sparkpost.api_key:
            raise ConfigError("sparkpost.api_key is required")


class PostalProvider(_ProviderBase):
    type: Literal["postal"] = "postal"
    postal: PostalSettings = Field(default_factory=PostalSettings)

    def _check_settings(self) -> None:
        if not self.postal.url:
            raise ConfigError("postal.url is required")
        if not self.postal.api_key:
            raise ConfigError("postal.api_key is required")


ProviderConfig = Annotated[
    Union[
        SMTPProvider,
        MailgunProvider,
        SendGridProvider,
        PostmarkProvider,
        SparkPostProvider,
        PostalProvider,
    ],
    Field(discriminator="type"),
]

PROVIDER_CLASSES: dict[ProviderType, type[_ProviderBase]] = {
    ProviderType.SMTP: SMTPProvider,
    ProviderType.MAILGUN: MailgunProvider,
    ProviderType.SENDGRID: SendGridProvider,
    ProviderType.POSTMARK: PostmarkProvider,
    ProviderType.SPARKPOST: SparkPostProvider,
    ProviderType.POSTAL: PostalProvider,
}


class Limits(BaseModel):
    """Configurable limits. Zero means "use the default"."""

    max_attachment_size_mb: int = 25
    max_history_entries: int = 100
    max_body_length: int = 10000
    max_emails_per_field: int = 500

    @model_validator(mode="after")
    def _fill_defaults(self) -> Limits:
        for name, field in type(self).model_fields.items():
            if not getattr(self, name):
                setattr(self, name, field.default)
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = "mailgloss.log"
    audit_file: str | None = None


class Config(BaseModel):
    """Main configuration."""

    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    default_provider: str = ""
    limits: Limits = Field(default_factory=Limits)
    date_format: str = Field(
        default="%d.%m.%Y",
        description="strftime format used for the {{date}} system variable",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database_path: str = "mailgloss.db"

    def check(self) -> None:
        """Validate every provider and the default provider reference.

        An empty configuration is valid; the user is expected to add a
        provider before sending.

        Raises:
            ConfigError: On the first invalid provider or a dangling default
        """
        for name, provider in self.providers.items():
            try:
                provider.check()
            except ConfigError as e:
                raise ConfigError(f"provider '{name}': {e}") from e

        if self.default_provider and self.default_provider not in self.providers:
            raise ConfigError(
                f"default provider '{self.default_provider}' does not exist"
            )

    def get_provider(self, name: str) -> ProviderConfig:
        """Get a provider by name."""
        try:
            return self.providers[name]
        except KeyError:
            raise ConfigError(f"provider '{name}' not found") from None

    def add_provider(self, provider: ProviderConfig) -> None:
        """Add or replace a provider. The first provider becomes the default."""
        provider.check()
        self.providers[provider.name] = provider
        if len(self.providers) == 1:
            self.default_provider = provider.name
        logger.info(f"Provider '{provider.name}' ({provider.type}) saved")

    def delete_provider(self, name: str) -> None:
        """Remove a provider, promoting another one if it was the default."""
        if name not in self.providers:
            raise ConfigError(f"provider '{name}' not found")

        del self.providers[name]

        if self.default_provider == name:
            self.default_provider = next(iter(self.providers), "")
        logger.info(f"Provider '{name}' removed")

    def list_providers(self) -> list[str]:
        """Provider names, sorted."""
        return sorted(self.providers)

    def resolve_path(self, config_dir: str | Path, value: str | None) -> Path | None:
        """Resolve a configured file path relative to the config directory."""
        if not value:
            return None
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = Path(config_dir) / path
        return path


def default_config_dir() -> Path:
    """Default location for config, database and logs."""
    return Path.home() / ".config" / "mailgloss"


def load_config(config_path: str | Path, missing_ok: bool = True) -> Config:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file
        missing_ok: Return the default configuration when the file is absent

    Returns:
        Parsed configuration
    """
    config_path = Path(config_path)

    if not config_path.exists():
        if missing_ok:
            logger.info(f"Config file not found at {config_path}, using defaults")
            return Config()
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.debug(f"Loading config from {config_path}")
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    config = Config(**data)
    logger.info(f"Config loaded ({len(config.providers)} providers)")
    return config


def save_config(config: Config, config_path: str | Path) -> None:
    """Write the configuration to a YAML file readable only by the owner."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json", exclude_none=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
    os.chmod(config_path, 0o600)

    logger.debug(f"Config saved to {config_path}")
