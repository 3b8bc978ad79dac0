"""
Configuration dataclasses for the certificate lifecycle engine.

This module defines all configuration structures used throughout the system:
ACME account and polling settings, renewal policy, retry logic,
notifications, persistence, site bindings, and logging.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


ACME_DIRECTORY_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"


@dataclass
class AcmeConfig:
    """ACME service, account and challenge polling configuration."""

    contact_email: str = ""
    directory_url: str = ACME_DIRECTORY_PRODUCTION
    staging: bool = False
    account_key_path: Path = field(
        default_factory=lambda: Path.home() / ".acme_keeper" / "account_key.pem"
    )
    http_timeout_seconds: float = 30.0
    challenge_initial_delay_seconds: float = 3.0
    challenge_poll_interval_seconds: float = 5.0
    challenge_poll_attempts: int = 6
    order_poll_attempts: int = 10
    order_poll_interval_seconds: float = 2.0
    key_size: int = 2048

    @property
    def effective_directory_url(self) -> str:
        """Directory URL, switched to staging when ``staging`` is set."""
        if self.staging and self.directory_url == ACME_DIRECTORY_PRODUCTION:
            return ACME_DIRECTORY_STAGING
        return self.directory_url


@dataclass
class RenewalConfig:
    """Renewal scheduler policy."""

    interval_hours: float = 24.0
    initial_delay_seconds: float = 5.0
    backoff_hours: float = 6.0
    validity_days: int = 60
    default_max_attempts: int = 5
    provider: str = "lets_encrypt"


@dataclass
class RetryConfig:
    """Retry behavior configuration for transient failures."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    retryable_errors: list[str] = field(
        default_factory=lambda: ["timeout", "server_error", "bad_nonce"]
    )


@dataclass
class TelegramConfig:
    """Telegram notification channel configuration."""

    bot_token: str
    chat_id: str


@dataclass
class DiscordConfig:
    """Discord notification channel configuration."""

    webhook_url: str


@dataclass
class EmailConfig:
    """Email notification channel configuration."""

    smtp_host: str
    smtp_port: int
    username: str
    password: str
    from_address: str
    to_addresses: list[str] = field(default_factory=list)


@dataclass
class WebhookConfig:
    """Generic webhook notification channel configuration."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class NotificationConfig:
    """Notification channels configuration."""

    telegram: Optional[TelegramConfig] = None
    discord: Optional[DiscordConfig] = None
    email: Optional[EmailConfig] = None
    webhook: Optional[WebhookConfig] = None

    def has_channels(self) -> bool:
        return any([self.telegram, self.discord, self.email, self.webhook])


@dataclass
class PersistenceConfig:
    """Certificate request store location and integrity settings."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".acme_keeper")
    requests_file: str = "CertificateRequests.json"
    legacy_file: str = "CertificateRequests.xml"
    hmac_secret: Optional[str] = None

    @property
    def requests_path(self) -> Path:
        return self.data_dir / self.requests_file

    @property
    def legacy_path(self) -> Path:
        return self.data_dir / self.legacy_file


@dataclass
class BindingConfig:
    """Site registry and certificate delivery settings."""

    sites_file: Optional[Path] = None
    central_certificate_store: Optional[Path] = None


@dataclass
class LoggingConfig:
    """Logging and audit configuration."""

    level: str = "info"
    audit_mode: bool = False
    audit_signing_key: Optional[str] = None
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    acme: AcmeConfig = field(default_factory=AcmeConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    bindings: BindingConfig = field(default_factory=BindingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    language: str = "de"  # 'de' or 'en'
    startup_self_test: bool = False
