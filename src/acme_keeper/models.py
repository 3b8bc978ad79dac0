"""
Data models for the certificate lifecycle engine.

This module defines the certificate request record owned by the store, the
website and binding shapes consumed from the binding provider, and the
ephemeral results produced by issuance sessions and renewal passes.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .enums import CertificateAuthorityProvider, CertificateRequestStatus


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_hostname(value: str) -> str:
    """Lower-case and trim a hostname."""
    return value.strip().lower()


@dataclass
class CertificateRequest:
    """
    One desired or issued certificate.

    The SAN list always contains the common name once
    ``fix_subject_alternative_names`` has run; the store and the
    service call it before any request is persisted.
    """

    common_name: str
    subject_alternative_names: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    provider: CertificateAuthorityProvider = CertificateAuthorityProvider.LETS_ENCRYPT
    status: CertificateRequestStatus = CertificateRequestStatus.NEW
    key_length: int = 4096
    private_key: Optional[str] = None  # PEM
    certificate: Optional[str] = None  # PEM chain, leaf first
    csr: Optional[str] = None
    expiration_date: Optional[datetime] = None
    date_created: datetime = field(default_factory=utc_now)
    auto_renew: bool = True
    renewal_attempts: int = 0
    last_renewal_attempt: Optional[datetime] = None
    max_renewal_attempts: int = 5
    last_renewal_error: Optional[str] = None
    can_add_www_binding: bool = False
    # CSR subject and contact metadata
    country: str = ""
    state: str = ""
    city: str = ""
    organization_name: str = ""
    organizational_unit: str = ""
    address_line1: str = ""
    address_line2: str = ""
    postal_code: str = ""
    phone_number: str = ""
    email_address: str = ""
    admin_first_name: str = ""
    admin_last_name: str = ""

    def fix_subject_alternative_names(self) -> None:
        """
        Normalize the SAN list in place.

        Lower-cases and trims every entry, drops empties and duplicates,
        makes sure the common name is present and, when requested, adds
        ``www.<common name>`` once.
        """
        self.common_name = normalize_hostname(self.common_name)
        names: list[str] = []
        for name in self.subject_alternative_names:
            name = normalize_hostname(name)
            if name and name not in names:
                names.append(name)

        if self.common_name and self.common_name not in names:
            names.insert(0, self.common_name)

        if self.can_add_www_binding and self.common_name:
            www = f"www.{self.common_name}"
            if not self.common_name.startswith("www.") and www not in names:
                names.append(www)
            self.can_add_www_binding = False

        self.subject_alternative_names = names

    def is_active(self, now: datetime) -> bool:
        """True when the certificate has an expiration in the future."""
        return self.expiration_date is not None and self.expiration_date > now

    @property
    def renewal_exhausted(self) -> bool:
        return self.renewal_attempts >= self.max_renewal_attempts

    def to_dict(self) -> dict:
        """Convert to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "common_name": self.common_name,
            "subject_alternative_names": list(self.subject_alternative_names),
            "provider": self.provider.value,
            "status": self.status.value,
            "key_length": self.key_length,
            "private_key": self.private_key,
            "certificate": self.certificate,
            "csr": self.csr,
            "expiration_date": _format_datetime(self.expiration_date),
            "date_created": _format_datetime(self.date_created),
            "auto_renew": self.auto_renew,
            "renewal_attempts": self.renewal_attempts,
            "last_renewal_attempt": _format_datetime(self.last_renewal_attempt),
            "max_renewal_attempts": self.max_renewal_attempts,
            "last_renewal_error": self.last_renewal_error,
            "can_add_www_binding": self.can_add_www_binding,
            "country": self.country,
            "state": self.state,
            "city": self.city,
            "organization_name": self.organization_name,
            "organizational_unit": self.organizational_unit,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "postal_code": self.postal_code,
            "phone_number": self.phone_number,
            "email_address": self.email_address,
            "admin_first_name": self.admin_first_name,
            "admin_last_name": self.admin_last_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateRequest":
        """Rebuild a request from ``to_dict`` output."""
        return cls(
            id=data["id"],
            common_name=data.get("common_name", ""),
            subject_alternative_names=list(data.get("subject_alternative_names", [])),
            provider=CertificateAuthorityProvider(
                data.get("provider", CertificateAuthorityProvider.LETS_ENCRYPT.value)
            ),
            status=CertificateRequestStatus(
                data.get("status", CertificateRequestStatus.NEW.value)
            ),
            key_length=data.get("key_length", 4096),
            private_key=data.get("private_key"),
            certificate=data.get("certificate"),
            csr=data.get("csr"),
            expiration_date=_parse_datetime(data.get("expiration_date")),
            date_created=_parse_datetime(data.get("date_created")) or utc_now(),
            auto_renew=data.get("auto_renew", True),
            renewal_attempts=data.get("renewal_attempts", 0),
            last_renewal_attempt=_parse_datetime(data.get("last_renewal_attempt")),
            max_renewal_attempts=data.get("max_renewal_attempts", 5),
            last_renewal_error=data.get("last_renewal_error"),
            can_add_www_binding=data.get("can_add_www_binding", False),
            country=data.get("country", ""),
            state=data.get("state", ""),
            city=data.get("city", ""),
            organization_name=data.get("organization_name", ""),
            organizational_unit=data.get("organizational_unit", ""),
            address_line1=data.get("address_line1", ""),
            address_line2=data.get("address_line2", ""),
            postal_code=data.get("postal_code", ""),
            phone_number=data.get("phone_number", ""),
            email_address=data.get("email_address", ""),
            admin_first_name=data.get("admin_first_name", ""),
            admin_last_name=data.get("admin_last_name", ""),
        )


@dataclass
class WebSiteBinding:
    """A hostname/port/protocol tuple routed to a site."""

    hostname: str
    port: int
    protocol: str = "http"
    ip_address: str = "*"
    ssl_flags: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # SNI (1) combined with the centralized certificate store (2)
    SNI_CENTRAL_STORE = 3

    @property
    def uses_central_store(self) -> bool:
        return self.protocol == "https" and self.ssl_flags == self.SNI_CENTRAL_STORE

    def matches(self, hostname: str, protocol: str, port: int) -> bool:
        return (
            self.hostname.lower() == hostname.lower()
            and self.protocol.lower() == protocol.lower()
            and self.port == port
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "port": self.port,
            "protocol": self.protocol,
            "ip_address": self.ip_address,
            "ssl_flags": self.ssl_flags,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebSiteBinding":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            hostname=data["hostname"],
            port=int(data["port"]),
            protocol=data.get("protocol", "http"),
            ip_address=data.get("ip_address", "*"),
            ssl_flags=int(data.get("ssl_flags", 0)),
        )


@dataclass
class WebSite:
    """A hosted site: identifier, document root and bindings."""

    id: str
    name: str
    physical_path: str
    bindings: list[WebSiteBinding] = field(default_factory=list)

    def get_binding(self, binding_id: str) -> Optional[WebSiteBinding]:
        for binding in self.bindings:
            if binding.id == binding_id:
                return binding
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "physical_path": self.physical_path,
            "bindings": [binding.to_dict() for binding in self.bindings],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebSite":
        return cls(
            id=str(data["id"]),
            name=data.get("name", str(data["id"])),
            physical_path=data["physical_path"],
            bindings=[WebSiteBinding.from_dict(b) for b in data.get("bindings", [])],
        )


@dataclass
class RenewalFailure:
    """A domain that failed in a renewal pass, with the reason."""

    domain: str
    error: str


@dataclass
class RetryingCertificate:
    """A certificate with failed attempts that will be retried."""

    domain: str
    attempts: int
    max_attempts: int
    last_attempt: Optional[datetime]
    last_error: Optional[str] = None


@dataclass
class RenewalReport:
    """Outcome of one scheduler pass; handed to the notifier and discarded."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    attempted: int = 0
    renewed: list[str] = field(default_factory=list)
    renewed_with_fix: list[str] = field(default_factory=list)
    failed: list[RenewalFailure] = field(default_factory=list)
    retrying: list[RetryingCertificate] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        return bool(self.renewed or self.renewed_with_fix or self.failed)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "started_at": _format_datetime(self.started_at),
            "finished_at": _format_datetime(self.finished_at),
            "attempted": self.attempted,
            "renewed": list(self.renewed),
            "renewed_with_fix": list(self.renewed_with_fix),
            "failed": [{"domain": f.domain, "error": f.error} for f in self.failed],
            "retrying": [
                {
                    "domain": r.domain,
                    "attempts": r.attempts,
                    "max_attempts": r.max_attempts,
                    "last_attempt": _format_datetime(r.last_attempt),
                    "last_error": r.last_error,
                }
                for r in self.retrying
            ],
        }


@dataclass
class IssuanceResult:
    """Result of a completed issuance session."""

    request: CertificateRequest
    port80_fixes: list[str] = field(default_factory=list)
    attach_failures: dict[str, str] = field(default_factory=dict)

    @property
    def fully_bound(self) -> bool:
        return not self.attach_failures
