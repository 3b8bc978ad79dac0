"""
ACME Issuance Session.

Drives one end-to-end certificate acquisition for a CertificateRequest:

1. Ensure port 80 bindings exist for every SAN.
2. Create an order and fulfil each authorization's HTTP-01 challenge by
   writing the key authorization under the hosting site's document root.
3. Trigger validation and poll: an initial delay, then a bounded number of
   polls at a fixed interval. ``invalid`` aborts with the service's reason;
   running out of polls is a timeout.
4. Generate a fresh key, submit the CSR, wait for the order and download
   the chain.
5. Bundle key and chain as PKCS#12 and persist the request as Issued with
   the new key, chain and expiration in one store update.
6. Attach the bundle to each domain's binding. Per-domain failures are
   logged and reported; the request only becomes Completed when every
   domain was attached.

Any failure before step 5 leaves the stored request untouched.
"""

import asyncio
import copy
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncContextManager, Awaitable, Callable, Optional

from .acme_client import AcmeClient, AcmeOrder, Http01Challenge
from .audit_logger import AuditLogger
from .bindings import BindingProvider
from .certificate_store import CertificateRequestStore
from .challenge import ChallengeWriter
from .config import SystemConfig
from .crypto import build_csr, build_pkcs12, generate_private_key, private_key_to_pem
from .enums import AcmeStatus, CertificateAuthorityProvider, CertificateRequestStatus, LogLevel
from .exceptions import (
    ChallengeInvalidError,
    ChallengeTimeoutError,
    PreconditionError,
    ProtocolError,
    UnsupportedProviderError,
)
from .i18n import get_message
from .models import CertificateRequest, IssuanceResult, utc_now
from .notifications import Notifier
from .preconditions import HttpBindingEnforcer
from .retry_manager import RetryManager


ClientFactory = Callable[[], AsyncContextManager[AcmeClient]]


class IssuanceSession:
    """Issues certificates for requests of the ACME provider."""

    COMPONENT = "IssuanceSession"
    SUPPORTED_PROVIDERS = frozenset({CertificateAuthorityProvider.LETS_ENCRYPT})

    def __init__(
        self,
        config: SystemConfig,
        store: CertificateRequestStore,
        bindings: BindingProvider,
        notifier: Optional[Notifier] = None,
        logger: Optional[AuditLogger] = None,
        client_factory: Optional[ClientFactory] = None,
        challenge_writer: Optional[ChallengeWriter] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._store = store
        self._bindings = bindings
        self._notifier = notifier
        self._logger = logger
        self._clock = clock
        self._sleep = sleep
        self._enforcer = HttpBindingEnforcer(bindings, notifier, logger)
        self._writer = challenge_writer or ChallengeWriter(logger)
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> AcmeClient:
        return AcmeClient(self._config.acme, RetryManager(self._config.retry), self._logger)

    async def issue(self, request: CertificateRequest) -> IssuanceResult:
        """
        Run a full issuance for ``request``.

        The caller's object is not modified; the returned result carries
        the updated copy that was persisted.

        Raises:
            UnsupportedProviderError: If the request's provider has no issuer
            PreconditionError: If a site is missing or port 80 cannot be bound
            ProtocolError: On order, validation or finalization failure
            ChallengeTimeoutError: If validation does not settle in time
        """
        if request.provider not in self.SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(
                code="unsupported_provider",
                message=f"No issuer for certificate authority {request.provider.display_name}",
                details={"request_id": request.id, "provider": request.provider.value},
            )

        domains = list(request.subject_alternative_names)
        self._log(LogLevel.INFO, f"Starting issuance for {request.common_name}", {
            "request_id": request.id,
            "domains": domains,
        })

        port80_fixes = await self._enforcer.ensure(domains)

        key = generate_private_key(self._config.acme.key_size)
        async with self._client_factory() as client:
            order = await client.new_order(domains)
            await self._fulfil_authorizations(client, order)

            order = await self._wait_for_order(client, order, {AcmeStatus.READY, AcmeStatus.VALID})
            if order.status != AcmeStatus.VALID.value:
                order = await client.finalize(order, build_csr(request, key))
                order = await self._wait_for_order(client, order, {AcmeStatus.VALID})
            if not order.certificate:
                raise ProtocolError(
                    code="order_error",
                    message="No certificate URL in order",
                    details={"order_url": order.url},
                )
            chain_pem = await client.download_certificate(order.certificate)

        key_pem = private_key_to_pem(key)
        pkcs12 = build_pkcs12(key_pem, chain_pem, friendly_name=request.common_name)

        issued = self._mark_issued(request, key_pem, chain_pem)
        self._log(LogLevel.INFO, f"Certificate issued for {issued.common_name}", {
            "request_id": issued.id,
            "expiration_date": issued.expiration_date.isoformat(),
        })

        attach_failures = await self._attach(issued, pkcs12)
        if not attach_failures:
            issued.status = CertificateRequestStatus.COMPLETED
            self._persist(issued)
            await self._notify(issued.common_name, "action.issued", ", ".join(domains), is_error=False)
        else:
            details = "\n".join(f"{domain}: {error}" for domain, error in attach_failures.items())
            await self._notify(issued.common_name, "action.bind_failed", details, is_error=True)

        return IssuanceResult(request=issued, port80_fixes=port80_fixes, attach_failures=attach_failures)

    async def bind(self, request: CertificateRequest) -> IssuanceResult:
        """
        Re-attach an already issued certificate from its stored key and chain.

        Used to reconcile requests left in Issued status.
        """
        if not request.private_key or not request.certificate:
            raise PreconditionError(
                code="not_issued",
                message=f"Certificate {request.id} has no stored key and chain",
                details={"request_id": request.id},
            )
        bound = copy.deepcopy(request)
        pkcs12 = build_pkcs12(bound.private_key, bound.certificate, friendly_name=bound.common_name)
        attach_failures = await self._attach(bound, pkcs12)
        if not attach_failures:
            bound.status = CertificateRequestStatus.COMPLETED
            self._persist(bound)
        return IssuanceResult(request=bound, attach_failures=attach_failures)

    async def _fulfil_authorizations(self, client: AcmeClient, order: AcmeOrder) -> None:
        written: list[Path] = []
        try:
            for authorization_url in order.authorizations:
                authorization = await client.get_authorization(authorization_url)
                if authorization.get("status") == AcmeStatus.VALID.value:
                    continue

                challenge = client.http01_challenge(authorization)
                site = await self._bindings.find_site_for_hostname(challenge.domain)
                if site is None:
                    raise PreconditionError(
                        code="site_not_found",
                        message=f"Could not find a site with a binding of {challenge.domain}",
                        details={"domain": challenge.domain},
                    )
                written.append(self._writer.write(site.physical_path, challenge.token, challenge.key_authorization))

                await client.respond_to_challenge(challenge.url)
                await self._await_validation(client, challenge)
        finally:
            for path in written:
                self._writer.remove(path)

    async def _await_validation(self, client: AcmeClient, challenge: Http01Challenge) -> None:
        acme = self._config.acme
        await self._sleep(acme.challenge_initial_delay_seconds)

        status = AcmeStatus.PENDING.value
        for attempt in range(acme.challenge_poll_attempts):
            body = await client.get_challenge(challenge.url)
            status = body.get("status", "")

            if status == AcmeStatus.VALID.value:
                self._log(LogLevel.INFO, f"Domain {challenge.domain} validated", {"attempt": attempt + 1})
                return

            if status == AcmeStatus.INVALID.value:
                error = body.get("error") or {}
                detail = error.get("detail") or error.get("type") or "no reason given"
                raise ChallengeInvalidError(
                    code="challenge_invalid",
                    message=f"Unable to validate domain {challenge.domain}. {detail}",
                    details={"domain": challenge.domain, "error": error},
                )

            if attempt < acme.challenge_poll_attempts - 1:
                await self._sleep(acme.challenge_poll_interval_seconds)

        raise ChallengeTimeoutError(
            code="challenge_timeout",
            message=f"Timed out validating domain {challenge.domain}, last status '{status}'",
            details={"domain": challenge.domain, "attempts": acme.challenge_poll_attempts},
        )

    async def _wait_for_order(
        self,
        client: AcmeClient,
        order: AcmeOrder,
        accepted: set[AcmeStatus],
    ) -> AcmeOrder:
        acme = self._config.acme
        wanted = {status.value for status in accepted}
        for attempt in range(acme.order_poll_attempts):
            if order.status in wanted:
                return order
            if order.status in (AcmeStatus.INVALID.value, AcmeStatus.EXPIRED.value, AcmeStatus.REVOKED.value):
                raise ProtocolError(
                    code="order_failed",
                    message=f"Order failed: {order.status}",
                    details={"order_url": order.url},
                )
            await self._sleep(acme.order_poll_interval_seconds)
            order = await client.get_order(order.url)

        if order.status in wanted:
            return order
        raise ProtocolError(
            code="order_timeout",
            message=f"Timed out waiting for order, last status '{order.status}'",
            details={"order_url": order.url},
        )

    def _mark_issued(self, request: CertificateRequest, key_pem: str, chain_pem: str) -> CertificateRequest:
        issued = copy.deepcopy(request)
        issued.status = CertificateRequestStatus.ISSUED
        issued.private_key = key_pem
        issued.certificate = chain_pem
        issued.key_length = self._config.acme.key_size
        issued.expiration_date = self._clock() + timedelta(days=self._config.renewal.validity_days)
        issued.renewal_attempts = 0
        issued.last_renewal_attempt = None
        issued.last_renewal_error = None
        self._persist(issued)
        return issued

    def _persist(self, request: CertificateRequest) -> None:
        if not self._store.update(request):
            self._store.add(request)
        self._store.save()

    async def _attach(self, request: CertificateRequest, pkcs12: bytes) -> dict[str, str]:
        failures: dict[str, str] = {}
        for domain in request.subject_alternative_names:
            try:
                await self._bindings.attach_certificate(domain, pkcs12)
            except Exception as e:
                failures[domain] = str(e)
                if self._logger:
                    self._logger.log_error(self.COMPONENT, f"Failed to bind certificate for {domain}", e, {
                        "request_id": request.id,
                    })
        return failures

    async def _notify(self, domain: str, action_key: str, details: str, is_error: bool) -> None:
        if self._notifier is None:
            return
        action = get_message(action_key, self._config.language)
        try:
            await self._notifier.notify_certificate_outcome(domain, action, details, is_error)
        except Exception as e:
            if self._logger:
                self._logger.log_error(self.COMPONENT, f"Could not send certificate alert for {domain}", e, {
                    "action": action,
                })

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
