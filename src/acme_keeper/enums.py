"""
Enumeration types for the certificate lifecycle engine.

These enums provide type-safe constants for request status, certificate
authorities, ACME object states and configuration options.
"""

from enum import Enum


class CertificateRequestStatus(Enum):
    """Lifecycle status of a certificate request."""

    NEW = "new"
    ISSUED = "issued"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


class CertificateAuthorityProvider(Enum):
    """Certificate authority that issues a request."""

    LETS_ENCRYPT = "lets_encrypt"
    MANUAL = "manual"

    @property
    def display_name(self) -> str:
        return {
            CertificateAuthorityProvider.LETS_ENCRYPT: "LetsEncrypt",
            CertificateAuthorityProvider.MANUAL: "Manual",
        }[self]


class AcmeStatus(Enum):
    """Status values reported for ACME orders, authorizations and challenges."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AlertLevel(Enum):
    """Severity of an operator alert."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class DomainValidationErrorCode(Enum):
    """Error codes for hostname validation failures."""

    EMPTY_INPUT = "empty_input"
    FORBIDDEN_CHARS = "forbidden_chars"
    WILDCARD = "wildcard"
    IDNA_ERROR = "idna_error"
    INVALID_LABEL = "invalid_label"
    TOO_LONG = "too_long"
    MISSING_TLD = "missing_tld"
