"""
Exception classes for the certificate lifecycle engine.

All exceptions inherit from AcmeKeeperError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class AcmeKeeperError(Exception):
    """Base exception for all acme-keeper errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(AcmeKeeperError):
    """Raised when caller input is rejected (bad hostname, missing data)."""

    pass


class AlreadyCoveredError(ValidationError):
    """Raised when every requested domain is covered by an active certificate."""

    def __init__(self, domains: list[str]) -> None:
        super().__init__(
            code="already_covered",
            message="Domains requested are already covered by existing active certificates",
            details={"domains": sorted(domains)},
        )


class NotFoundError(AcmeKeeperError):
    """Raised when a certificate request id is unknown."""

    pass


class NetworkError(AcmeKeeperError):
    """Raised when network operations fail after retries."""

    pass


class ProtocolError(AcmeKeeperError):
    """Raised when the ACME service rejects or fails an operation."""

    pass


class ChallengeInvalidError(ProtocolError):
    """Raised when the ACME service reports a challenge as invalid."""

    pass


class ChallengeTimeoutError(ProtocolError):
    """Raised when challenge validation does not settle within the poll budget."""

    pass


class PreconditionError(AcmeKeeperError):
    """Raised when HTTP-01 prerequisites cannot be met (site lookup, port 80 binding)."""

    pass


class UnsupportedProviderError(AcmeKeeperError):
    """Raised when a request names a certificate authority with no issuer."""

    pass


class BindingError(AcmeKeeperError):
    """Raised by binding providers when a binding change fails."""

    pass


class PersistenceError(AcmeKeeperError):
    """Raised when persistence operations fail (file I/O, parsing)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass


class NotificationError(AcmeKeeperError):
    """Raised when notification delivery fails."""

    pass
