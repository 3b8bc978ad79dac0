"""
Operator-facing certificate operations.

Creating a request validates the hostnames, drops domains already covered by
an active certificate and hands the rest to the issuer registered for the
request's certificate authority. Renewal by id goes straight to the issuer
without the scheduler's backoff.
"""

import copy
from datetime import datetime
from typing import Callable, Iterable, Optional

from .audit_logger import AuditLogger
from .bindings import BindingProvider
from .certificate_store import CertificateRequestStore
from .config import SystemConfig
from .coverage import residual_domains, resolve_coverage
from .domain_validator import DomainValidator
from .enums import CertificateAuthorityProvider, LogLevel
from .exceptions import NotFoundError, PreconditionError, UnsupportedProviderError, ValidationError
from .issuance import IssuanceSession
from .models import CertificateRequest, IssuanceResult, WebSite, utc_now


class CertificateService:
    """Create, secure, renew, delete and list certificate requests."""

    COMPONENT = "CertificateService"

    def __init__(
        self,
        config: SystemConfig,
        store: CertificateRequestStore,
        bindings: BindingProvider,
        session: IssuanceSession,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._bindings = bindings
        self._logger = logger
        self._clock = clock
        self._validator = DomainValidator()
        self._issuers = {CertificateAuthorityProvider.LETS_ENCRYPT: session}

    async def create_request(
        self,
        website_id: str,
        binding_id: str,
        request: Optional[CertificateRequest] = None,
        extra_names: Iterable[str] = (),
        add_www: bool = False,
    ) -> IssuanceResult:
        """
        Request a certificate for one binding of a site.

        Args:
            website_id: Site owning the binding
            binding_id: Binding whose hostname becomes the common name
                unless ``request`` names one
            request: Optional CSR data (identity fields, common name, SANs)
            extra_names: Additional SANs
            add_www: Also cover ``www.<common name>``

        Raises:
            ValidationError: Unknown site or binding, or an invalid hostname
            AlreadyCoveredError: Every requested domain is already covered
            UnsupportedProviderError: No issuer for the request's provider
        """
        site = await self._require_site(website_id)
        binding = site.get_binding(binding_id)
        if binding is None:
            raise ValidationError(
                code="invalid_binding",
                message="Invalid Website Binding",
                details={"website_id": website_id, "binding_id": binding_id},
            )

        if request is None:
            request = CertificateRequest(
                common_name=binding.hostname,
                max_renewal_attempts=self._config.renewal.default_max_attempts,
            )
        else:
            request = copy.deepcopy(request)
            if not request.common_name:
                request.common_name = binding.hostname

        request.subject_alternative_names = list(request.subject_alternative_names) + list(extra_names)
        request.can_add_www_binding = request.can_add_www_binding or add_www

        self._normalize(request)
        residual = resolve_coverage(request.subject_alternative_names, self._store.get_all(), self._clock())
        return await self._issue_new(request, residual)

    async def secure_bindings(self, website_id: str, binding_ids: Iterable[str]) -> IssuanceResult:
        """
        Secure several bindings of one site with a single certificate.

        Raises:
            ValidationError: Unknown site, no matching bindings, or nothing
                left to secure
        """
        site = await self._require_site(website_id)
        bindings = [b for b in (site.get_binding(binding_id) for binding_id in binding_ids) if b is not None]
        if not bindings:
            raise ValidationError(
                code="no_bindings",
                message="No bindings found to secure",
                details={"website_id": website_id},
            )

        request = CertificateRequest(
            common_name=bindings[0].hostname,
            subject_alternative_names=[b.hostname for b in bindings],
            max_renewal_attempts=self._config.renewal.default_max_attempts,
        )
        self._normalize(request)

        residual = residual_domains(request.subject_alternative_names, self._store.get_all(), self._clock())
        if not residual:
            raise ValidationError(
                code="no_new_domains",
                message="No new domains to secure",
                details={"website_id": website_id, "domains": request.subject_alternative_names},
            )
        return await self._issue_new(request, residual)

    async def renew(self, request_id: str) -> IssuanceResult:
        """
        Re-issue a certificate now, bypassing the renewal backoff.

        Raises:
            NotFoundError: Unknown request id
            PreconditionError: No site hosts any of the request's names
        """
        request = self._require_request(request_id)

        site = None
        for domain in request.subject_alternative_names:
            site = await self._bindings.find_site_for_hostname(domain)
            if site is not None:
                break
        if site is None:
            raise PreconditionError(
                code="site_not_found",
                message="Unable to find site to renew with this certificate",
                details={"request_id": request_id},
            )

        self._log(LogLevel.INFO, f"Manual renewal of {request.common_name}", {"request_id": request_id})
        return await self._issuer(request.provider).issue(request)

    def delete(self, request_id: str) -> CertificateRequest:
        """
        Delete a request and persist.

        Raises:
            NotFoundError: Unknown request id
        """
        request = self._require_request(request_id)
        self._store.delete(request_id)
        self._store.save()
        self._log(LogLevel.INFO, f"Deleted certificate request for {request.common_name}", {"request_id": request_id})
        return request

    def list_requests(self) -> list[dict]:
        """All requests, newest first, with display fields."""
        requests = sorted(self._store.get_all(), key=lambda r: r.date_created, reverse=True)
        return [
            {
                "id": r.id,
                "common_name": r.common_name,
                "expiration_date": r.expiration_date.isoformat() if r.expiration_date else None,
                "date_created": r.date_created.isoformat(),
                "status": r.status.display_name,
                "provider": r.provider.display_name,
                "subject_alternative_names": ",".join(r.subject_alternative_names),
                "auto_renew": r.auto_renew,
                "renewal_attempts": r.renewal_attempts,
                "max_renewal_attempts": r.max_renewal_attempts,
                "last_renewal_error": r.last_renewal_error,
            }
            for r in requests
        ]

    async def _issue_new(self, request: CertificateRequest, residual: list[str]) -> IssuanceResult:
        if request.common_name not in residual:
            request.common_name = residual[0]
        request.subject_alternative_names = residual

        issuer = self._issuer(request.provider)
        self._log(LogLevel.INFO, f"Creating certificate request for {request.common_name}", {
            "request_id": request.id,
            "domains": residual,
            "provider": request.provider.value,
        })
        return await issuer.issue(request)

    def _normalize(self, request: CertificateRequest) -> None:
        request.common_name = self._validator.require_valid(request.common_name)
        request.subject_alternative_names = [
            self._validator.require_valid(name)
            for name in request.subject_alternative_names
            if name and name.strip()
        ]
        request.fix_subject_alternative_names()

    def _issuer(self, provider: CertificateAuthorityProvider) -> IssuanceSession:
        issuer = self._issuers.get(provider)
        if issuer is None:
            raise UnsupportedProviderError(
                code="unsupported_provider",
                message=f"No issuer for certificate authority {provider.display_name}",
                details={"provider": provider.value},
            )
        return issuer

    async def _require_site(self, website_id: str) -> WebSite:
        site = await self._bindings.get_site(website_id)
        if site is None:
            raise ValidationError(
                code="invalid_website",
                message="Invalid Website",
                details={"website_id": website_id},
            )
        return site

    def _require_request(self, request_id: str) -> CertificateRequest:
        request = self._store.get_by_id(request_id)
        if request is None:
            raise NotFoundError(
                code="not_found",
                message="Unable to find a certificate with that id",
                details={"request_id": request_id},
            )
        return request

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
