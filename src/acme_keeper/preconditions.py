"""
Challenge Precondition Enforcer.

HTTP-01 validation needs a plain-HTTP port 80 binding for every domain on
the certificate. Missing bindings are created through the binding provider
and reported to the operator; a domain with no hosting site, or a binding
that cannot be created, aborts the issuance attempt.
"""

from typing import Optional

from .audit_logger import AuditLogger
from .bindings import BindingProvider
from .enums import LogLevel
from .exceptions import PreconditionError
from .notifications import Notifier


HTTP_PORT = 80
HTTP_PROTOCOL = "http"


class HttpBindingEnforcer:
    """Ensures port 80 bindings exist before challenges are written."""

    COMPONENT = "HttpBindingEnforcer"

    def __init__(
        self,
        bindings: BindingProvider,
        notifier: Optional[Notifier] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._bindings = bindings
        self._notifier = notifier
        self._logger = logger

    async def ensure(self, domains: list[str]) -> list[str]:
        """
        Make sure each domain has an ``http`` binding on port 80.

        Args:
            domains: SAN list about to be validated

        Returns:
            Domains whose binding had to be created

        Raises:
            PreconditionError: If a domain has no hosting site or a binding
                cannot be created
        """
        created: list[str] = []
        for domain in domains:
            site = await self._bindings.find_site_for_hostname(domain)
            if site is None:
                raise PreconditionError(
                    code="site_not_found",
                    message=f"Cannot ensure port 80 binding for {domain} - no website found with this binding",
                    details={"domain": domain},
                )

            if await self._bindings.has_binding(site, domain, HTTP_PROTOCOL, HTTP_PORT):
                continue

            self._log(
                LogLevel.WARN,
                f"Port 80 binding missing for {domain} on site {site.name}, adding it for HTTP-01 validation",
                {"domain": domain, "site": site.name},
            )
            try:
                await self._bindings.add_binding(site, domain, HTTP_PORT, HTTP_PROTOCOL)
            except Exception as e:
                raise PreconditionError(
                    code="port80_binding_failed",
                    message=f"Could not ensure port 80 binding for {domain} - HTTP-01 validation will fail",
                    details={"domain": domain, "site": site.name, "cause": str(e)},
                ) from e

            created.append(domain)
            if self._notifier is not None:
                try:
                    await self._notifier.notify_binding_auto_created(domain, site.name)
                except Exception as e:
                    if self._logger:
                        self._logger.log_error(self.COMPONENT, f"Could not send port 80 alert for {domain}", e, {
                            "site": site.name,
                        })

        return created

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
