"""
acme-keeper - ACME certificate lifecycle engine.

This package issues, binds and renews HTTP-01 validated certificates for
hosted sites: a durable request store, domain coverage checks, port 80
binding enforcement, an ACME issuance session and a self-rescheduling
renewal loop with retry and backoff policy.
"""

__version__ = "0.1.0"
__author__ = "acme-keeper Team"

from acme_keeper.exceptions import (
    AcmeKeeperError,
    ValidationError,
    AlreadyCoveredError,
    NotFoundError,
    NetworkError,
    ProtocolError,
    ChallengeInvalidError,
    ChallengeTimeoutError,
    PreconditionError,
    UnsupportedProviderError,
    BindingError,
    PersistenceError,
    TamperingError,
    NotificationError,
)
from acme_keeper.enums import (
    CertificateRequestStatus,
    CertificateAuthorityProvider,
    AcmeStatus,
    LogLevel,
    AlertLevel,
    DomainValidationErrorCode,
)
from acme_keeper.config import (
    ACME_DIRECTORY_PRODUCTION,
    ACME_DIRECTORY_STAGING,
    AcmeConfig,
    RenewalConfig,
    RetryConfig,
    TelegramConfig,
    DiscordConfig,
    EmailConfig,
    WebhookConfig,
    NotificationConfig,
    PersistenceConfig,
    BindingConfig,
    LoggingConfig,
    SystemConfig,
)
from acme_keeper.models import (
    CertificateRequest,
    WebSite,
    WebSiteBinding,
    RenewalFailure,
    RetryingCertificate,
    RenewalReport,
    IssuanceResult,
)
from acme_keeper.audit_logger import (
    AuditLogger,
    LogEntry,
)
from acme_keeper.domain_validator import (
    DomainValidator,
    DomainValidationResult,
)
from acme_keeper.certificate_store import (
    CertificateRequestStore,
    parse_legacy_document,
)
from acme_keeper.coverage import (
    covered_domains,
    residual_domains,
    resolve_coverage,
)
from acme_keeper.bindings import (
    BindingProvider,
    SiteRegistry,
)
from acme_keeper.preconditions import HttpBindingEnforcer
from acme_keeper.challenge import ChallengeWriter
from acme_keeper.retry_manager import (
    RetryManager,
    RetryResult,
)
from acme_keeper.acme_client import (
    AcmeClient,
    AcmeOrder,
    Http01Challenge,
)
from acme_keeper.issuance import IssuanceSession
from acme_keeper.scheduler import RenewalScheduler
from acme_keeper.notifications import (
    AlertMessage,
    AlertSection,
    NotificationResult,
    NotificationChannel,
    TelegramChannel,
    DiscordChannel,
    EmailChannel,
    WebhookChannel,
    NotificationRouter,
    Notifier,
    CertificateNotifier,
)
from acme_keeper.i18n import (
    get_message,
    get_missing_translations,
    validate_translations,
    TRANSLATIONS,
    SUPPORTED_LANGUAGES,
    DEFAULT_LANGUAGE,
)
from acme_keeper.service import CertificateService
from acme_keeper.self_test import (
    SelfTest,
    SelfTestResult,
    DirectoryTestResult,
    ConfigValidationResult,
    run_self_test,
)
from acme_keeper.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Exceptions
    "AcmeKeeperError",
    "ValidationError",
    "AlreadyCoveredError",
    "NotFoundError",
    "NetworkError",
    "ProtocolError",
    "ChallengeInvalidError",
    "ChallengeTimeoutError",
    "PreconditionError",
    "UnsupportedProviderError",
    "BindingError",
    "PersistenceError",
    "TamperingError",
    "NotificationError",
    # Enums
    "CertificateRequestStatus",
    "CertificateAuthorityProvider",
    "AcmeStatus",
    "LogLevel",
    "AlertLevel",
    "DomainValidationErrorCode",
    # Configuration
    "ACME_DIRECTORY_PRODUCTION",
    "ACME_DIRECTORY_STAGING",
    "AcmeConfig",
    "RenewalConfig",
    "RetryConfig",
    "TelegramConfig",
    "DiscordConfig",
    "EmailConfig",
    "WebhookConfig",
    "NotificationConfig",
    "PersistenceConfig",
    "BindingConfig",
    "LoggingConfig",
    "SystemConfig",
    # Models
    "CertificateRequest",
    "WebSite",
    "WebSiteBinding",
    "RenewalFailure",
    "RetryingCertificate",
    "RenewalReport",
    "IssuanceResult",
    # Logging
    "AuditLogger",
    "LogEntry",
    # Domain Validator
    "DomainValidator",
    "DomainValidationResult",
    # Store
    "CertificateRequestStore",
    "parse_legacy_document",
    # Coverage
    "covered_domains",
    "residual_domains",
    "resolve_coverage",
    # Bindings
    "BindingProvider",
    "SiteRegistry",
    "HttpBindingEnforcer",
    "ChallengeWriter",
    # ACME
    "RetryManager",
    "RetryResult",
    "AcmeClient",
    "AcmeOrder",
    "Http01Challenge",
    "IssuanceSession",
    "RenewalScheduler",
    # Notifications
    "AlertMessage",
    "AlertSection",
    "NotificationResult",
    "NotificationChannel",
    "TelegramChannel",
    "DiscordChannel",
    "EmailChannel",
    "WebhookChannel",
    "NotificationRouter",
    "Notifier",
    "CertificateNotifier",
    # i18n
    "get_message",
    "get_missing_translations",
    "validate_translations",
    "TRANSLATIONS",
    "SUPPORTED_LANGUAGES",
    "DEFAULT_LANGUAGE",
    # Service
    "CertificateService",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "DirectoryTestResult",
    "ConfigValidationResult",
    "run_self_test",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_file",
    "save_config_to_file",
]
