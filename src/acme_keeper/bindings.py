"""
Binding provider interface and the bundled in-memory site registry.

The engine never owns the authoritative site list. It queries and mutates
bindings through a BindingProvider; ``SiteRegistry`` is the implementation
used by the CLI, backed by a JSON site list and a centralized certificate
store directory that receives one ``<domain>.pfx`` per bound hostname.
"""

import json
import os
import threading
from abc import abstractmethod
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .audit_logger import AuditLogger
from .config import BindingConfig
from .enums import LogLevel
from .exceptions import BindingError, PersistenceError
from .models import WebSite, WebSiteBinding


@runtime_checkable
class BindingProvider(Protocol):
    """Host binding management as seen by the certificate engine."""

    @abstractmethod
    async def find_site_for_hostname(self, domain: str) -> Optional[WebSite]:
        """Site that has any binding for ``domain`` (case-insensitive), or None."""
        ...

    @abstractmethod
    async def get_site(self, site_id: str) -> Optional[WebSite]:
        ...

    @abstractmethod
    async def has_binding(self, site: WebSite, hostname: str, protocol: str, port: int) -> bool:
        ...

    @abstractmethod
    async def add_binding(self, site: WebSite, hostname: str, port: int, protocol: str) -> WebSiteBinding:
        """
        Create a binding on ``site``.

        Raises:
            BindingError: If the binding cannot be created
        """
        ...

    @abstractmethod
    async def attach_certificate(self, domain: str, pkcs12: bytes) -> None:
        """
        Attach a PKCS#12 bundle to the TLS binding for ``domain``.

        Raises:
            BindingError: If the certificate cannot be attached
        """
        ...

    @abstractmethod
    async def list_sites(self) -> list[WebSite]:
        ...


class SiteRegistry:
    """In-memory BindingProvider persisted to an optional JSON site list."""

    COMPONENT = "SiteRegistry"
    HTTPS_PORT = 443

    def __init__(
        self,
        config: BindingConfig,
        sites: Optional[list[WebSite]] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._lock = threading.Lock()
        self._sites: list[WebSite] = list(sites) if sites is not None else []

    def load(self) -> int:
        """
        Read the site list from ``sites_file``.

        Returns:
            Number of sites loaded

        Raises:
            PersistenceError: If the file exists but cannot be parsed
        """
        path = self._config.sites_file
        if path is None or not Path(path).exists():
            return len(self._sites)

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            sites = [WebSite.from_dict(item) for item in raw]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                code="sites_parse_error",
                message=f"Failed to load site list: {e}",
                details={"file_path": str(path)},
            )

        with self._lock:
            self._sites = sites
        return len(sites)

    def _save_locked(self) -> None:
        path = self._config.sites_file
        if path is None:
            return
        path = Path(path)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump([site.to_dict() for site in self._sites], f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise BindingError(
                code="sites_write_failed",
                message=f"Failed to save site list: {e}",
                details={"file_path": str(path)},
            )

    async def list_sites(self) -> list[WebSite]:
        with self._lock:
            return list(self._sites)

    async def get_site(self, site_id: str) -> Optional[WebSite]:
        with self._lock:
            for site in self._sites:
                if site.id == str(site_id):
                    return site
        return None

    async def find_site_for_hostname(self, domain: str) -> Optional[WebSite]:
        with self._lock:
            return self._find_site_locked(domain)

    def _find_site_locked(self, domain: str) -> Optional[WebSite]:
        wanted = domain.strip().lower()
        for site in self._sites:
            if any(b.hostname.lower() == wanted for b in site.bindings):
                return site
        return None

    async def has_binding(self, site: WebSite, hostname: str, protocol: str, port: int) -> bool:
        with self._lock:
            return any(b.matches(hostname, protocol, port) for b in site.bindings)

    async def add_binding(self, site: WebSite, hostname: str, port: int, protocol: str) -> WebSiteBinding:
        hostname = hostname.strip().lower()
        with self._lock:
            for other in self._sites:
                if any(b.hostname.lower() == hostname and b.port == port for b in other.bindings):
                    raise BindingError(
                        code="binding_exists",
                        message=f"A binding for {hostname}:{port} already exists on site {other.name}",
                        details={"hostname": hostname, "port": port, "site": other.name},
                    )

            binding = WebSiteBinding(hostname=hostname, port=port, protocol=protocol)
            site.bindings.append(binding)
            self._save_locked()

        self._log(LogLevel.INFO, f"Added {protocol} binding {hostname}:{port} to site {site.name}", {
            "site_id": site.id,
        })
        return binding

    async def attach_certificate(self, domain: str, pkcs12: bytes) -> None:
        domain = domain.strip().lower()
        with self._lock:
            site = self._find_site_locked(domain)
            if site is None:
                raise BindingError(
                    code="site_not_found",
                    message=f"Could not find a site with a binding of {domain}",
                    details={"domain": domain},
                )

            store = self._config.central_certificate_store
            if store is not None:
                self._write_pfx(Path(store) / f"{domain}.pfx", pkcs12)

            https = [
                b for b in site.bindings
                if b.hostname.lower() == domain and b.protocol == "https"
            ]
            if any(b.uses_central_store for b in https):
                self._log(LogLevel.INFO, f"Site {site.name} already has correct binding for {domain}", {})
                return

            for binding in https:
                self._log(
                    LogLevel.INFO,
                    f"Replacing non-centralized https binding for {domain} on site {site.name}",
                    {"binding_id": binding.id},
                )
                site.bindings.remove(binding)

            site.bindings.append(WebSiteBinding(
                hostname=domain,
                port=self.HTTPS_PORT,
                protocol="https",
                ssl_flags=WebSiteBinding.SNI_CENTRAL_STORE,
            ))
            self._save_locked()

        self._log(LogLevel.INFO, f"Bound certificate for {domain} to site {site.name}", {"site_id": site.id})

    def _write_pfx(self, path: Path, pkcs12: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(pkcs12)
        except OSError as e:
            raise BindingError(
                code="pfx_write_failed",
                message=f"Failed to write certificate bundle: {e}",
                details={"file_path": str(path)},
            )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
