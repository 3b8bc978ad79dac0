"""
Certificate Request Store.

Owns the durable collection of certificate requests: thread-safe CRUD,
provider/status queries, JSON persistence with optional HMAC protection,
and a one-time migration from the legacy XML document.

A single re-entrant lock guards both the in-memory collection and the file
write, so the scheduler and operator calls can mutate concurrently. Reads
return copies; callers change a record by handing an updated copy back
through ``update``.
"""

import copy
import hashlib
import hmac
import json
import os
import re
import threading
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .config import PersistenceConfig
from .enums import CertificateAuthorityProvider, CertificateRequestStatus, LogLevel
from .exceptions import PersistenceError, TamperingError
from .models import CertificateRequest, utc_now


# Legacy element name -> CertificateRequest attribute
LEGACY_FIELD_MAP = {
    "CertificateRequestId": "id",
    "CommonName": "common_name",
    "Csr": "csr",
    "Key": "private_key",
    "Certificate": "certificate",
    "City": "city",
    "State": "state",
    "Country": "country",
    "OrganizationalUnit": "organizational_unit",
    "OrganizationName": "organization_name",
    "AdminFirstName": "admin_first_name",
    "AdminLastName": "admin_last_name",
    "AddressLine1": "address_line1",
    "AddressLine2": "address_line2",
    "PostalCode": "postal_code",
    "PhoneNumber": "phone_number",
    "EmailAddressForCert": "email_address",
}

# Leading fractional-second digits, then any UTC offset
LEGACY_FRACTION = re.compile(r"(\d+)(.*)")

LEGACY_PROVIDERS = {
    "letsencrypt": CertificateAuthorityProvider.LETS_ENCRYPT,
}


class CertificateRequestStore:
    """
    Durable, thread-safe collection of CertificateRequest records.

    Loaded once at startup via ``load`` and rewritten wholesale by ``save``.
    """

    VERSION = 1
    COMPONENT = "CertificateRequestStore"

    def __init__(
        self,
        config: PersistenceConfig,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._logger = logger
        self._clock = clock
        self._lock = threading.RLock()
        self._requests: list[CertificateRequest] = []
        self._hmac_secret = config.hmac_secret.encode("utf-8") if config.hmac_secret else None

    @property
    def file_path(self) -> Path:
        return self._config.requests_path

    # Loading

    def load(self) -> int:
        """
        Load the collection from disk, migrating the legacy document first.

        Returns:
            Number of requests loaded

        Raises:
            PersistenceError: If a document cannot be read or parsed
            TamperingError: If HMAC protection is enabled and does not verify
        """
        with self._lock:
            legacy_path = self._config.legacy_path
            if legacy_path.exists():
                self._migrate_legacy(legacy_path)

            if self.file_path.exists():
                self._requests = self._read_document(self.file_path)

            count = len(self._requests)
            now = self._clock()
            expired = [r for r in self._requests if r.expiration_date is not None and r.expiration_date < now]

        for request in expired:
            self._log(
                LogLevel.WARN,
                f"Certificate {request.id} for domain {request.common_name} has expired",
                {"request_id": request.id, "expiration_date": request.expiration_date.isoformat()},
            )
        self._log(LogLevel.INFO, "Certificate requests loaded", {"count": count})
        return count

    def _migrate_legacy(self, legacy_path: Path) -> None:
        self._log(LogLevel.WARN, "Converting legacy XML database to JSON", {"file_path": str(legacy_path)})
        migrated = parse_legacy_document(legacy_path)
        self._requests = migrated
        self._write_locked()
        try:
            legacy_path.unlink()
        except OSError as e:
            if self._logger:
                self._logger.log_error(self.COMPONENT, "Unable to delete legacy XML database", e)

    def _read_document(self, path: Path) -> list[CertificateRequest]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse certificate store: {e}",
                details={"file_path": str(path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read certificate store: {e}",
                details={"file_path": str(path)},
            )

        # A bare list is the unversioned document layout
        if isinstance(raw, list):
            records = raw
        else:
            records = raw.get("requests", [])
            if self._hmac_secret is not None:
                self._verify(raw, path)

        try:
            return [CertificateRequest.from_dict(record) for record in records]
        except (KeyError, ValueError, TypeError) as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Invalid certificate request record: {e}",
                details={"file_path": str(path)},
            )

    def _verify(self, raw: dict, path: Path) -> None:
        stored = raw.get("hmac") or ""
        expected = self.compute_hmac({
            "version": raw.get("version"),
            "updated_at": raw.get("updated_at"),
            "requests": raw.get("requests", []),
        })
        if not hmac.compare_digest(stored, expected):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - certificate store may have been tampered with",
                details={"file_path": str(path)},
            )

    # Mutation

    def add(self, request: CertificateRequest) -> bool:
        """
        Insert a request unless one with the same id exists.

        Returns:
            True if inserted, False on a duplicate id
        """
        with self._lock:
            if self._index_of(request.id) is not None:
                return False
            self._requests.append(copy.deepcopy(request))

        self._log(
            LogLevel.INFO,
            f"Adding certificate request {request.id} for host {request.common_name}",
            {"request_id": request.id},
        )
        return True

    def update(self, request: CertificateRequest) -> bool:
        """
        Replace the stored record that shares ``request.id``.

        Returns:
            True if a record was replaced, False if none exists
        """
        with self._lock:
            index = self._index_of(request.id)
            if index is None:
                return False
            self._requests[index] = copy.deepcopy(request)
            return True

    def delete(self, request_id: str) -> bool:
        """
        Remove a request by id; no-op if absent.

        Returns:
            True if a record was removed
        """
        with self._lock:
            index = self._index_of(request_id)
            if index is None:
                return False
            removed = self._requests.pop(index)

        self._log(
            LogLevel.INFO,
            f"Deleting certificate request {removed.id} for host {removed.common_name}",
            {"request_id": removed.id},
        )
        return True

    def save(self) -> None:
        """
        Persist the full collection.

        Raises:
            PersistenceError: If the document cannot be written
        """
        with self._lock:
            self._write_locked()
        self._log(LogLevel.DEBUG, "Saved certificate database", {"file_path": str(self.file_path)})

    def _write_locked(self) -> None:
        records = [request.to_dict() for request in self._requests]
        document = {
            "version": self.VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "requests": records,
        }
        if self._hmac_secret is not None:
            document["hmac"] = self.compute_hmac(document)

        path = self.file_path
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write certificate store: {e}",
                details={"file_path": str(path)},
            )

    # Queries

    def get_all(self) -> list[CertificateRequest]:
        """Point-in-time copy of every request."""
        with self._lock:
            return copy.deepcopy(self._requests)

    def get_by_status(
        self,
        provider: CertificateAuthorityProvider,
        status: CertificateRequestStatus,
    ) -> list[CertificateRequest]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._requests
                if r.provider == provider and r.status == status
            ]

    def get_by_id(self, request_id: str) -> Optional[CertificateRequest]:
        with self._lock:
            index = self._index_of(request_id)
            return copy.deepcopy(self._requests[index]) if index is not None else None

    def count(self, status: Optional[CertificateRequestStatus] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._requests)
            return sum(1 for r in self._requests if r.status == status)

    def has_request(
        self,
        common_name: str,
        provider: Optional[CertificateAuthorityProvider] = None,
    ) -> bool:
        name = common_name.strip().lower()
        with self._lock:
            return any(
                r.common_name.lower() == name and (provider is None or r.provider == provider)
                for r in self._requests
            )

    def _index_of(self, request_id: str) -> Optional[int]:
        for index, request in enumerate(self._requests):
            if request.id == request_id:
                return index
        return None

    def compute_hmac(self, document: dict) -> str:
        """HMAC-SHA256 over the document without its ``hmac`` field."""
        if self._hmac_secret is None:
            raise PersistenceError(code="no_secret", message="HMAC secret is not configured")
        signable = {k: v for k, v in document.items() if k != "hmac"}
        serialized = json.dumps(signable, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_secret, serialized.encode("utf-8"), hashlib.sha256).hexdigest()

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)


def _legacy_datetime(text: Optional[str]) -> Optional[datetime]:
    if not text or text.startswith("9999") or text.startswith("0001"):
        return None
    # Seven fractional digits are not accepted by fromisoformat on every version
    value = text.strip()
    if "." in value:
        head, _, tail = value.partition(".")
        match = LEGACY_FRACTION.match(tail)
        if match:
            digits, zone = match.groups()
            value = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _legacy_bool(text: Optional[str], default: bool) -> bool:
    if text is None:
        return default
    return text.strip().lower() == "true"


def parse_legacy_document(path: Path) -> list[CertificateRequest]:
    """
    Read the legacy ``ArrayOfCertificateRequest`` XML document.

    Raises:
        PersistenceError: If the document is not well-formed
    """
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        raise PersistenceError(
            code="legacy_parse_error",
            message=f"Failed to parse legacy certificate store: {e}",
            details={"file_path": str(path)},
        )

    requests = []
    for node in root.findall("CertificateRequest"):
        def text(tag: str) -> Optional[str]:
            child = node.find(tag)
            return child.text if child is not None else None

        values = {}
        for tag, attribute in LEGACY_FIELD_MAP.items():
            value = text(tag)
            if value is not None:
                values[attribute] = value

        sans_node = node.find("SubjectAlternativeNames")
        sans = [item.text for item in sans_node.findall("string") if item.text] if sans_node is not None else []

        provider_name = (text("CertificateAuthorityProvider") or "").lower()
        status_name = (text("CertificateRequestStatus") or "New").lower()
        try:
            status = CertificateRequestStatus(status_name)
        except ValueError:
            status = CertificateRequestStatus.NEW

        try:
            request = CertificateRequest(
                common_name=values.pop("common_name", ""),
                subject_alternative_names=sans,
                provider=LEGACY_PROVIDERS.get(provider_name, CertificateAuthorityProvider.MANUAL),
                status=status,
                key_length=int(text("KeyLength") or 4096),
                expiration_date=_legacy_datetime(text("ExpirationDate")),
                date_created=_legacy_datetime(text("DateCreated")) or utc_now(),
                auto_renew=_legacy_bool(text("CanAutoRenew"), True),
                can_add_www_binding=_legacy_bool(text("CanAddWwwBinding"), False),
                renewal_attempts=int(text("RenewalAttempts") or 0),
                last_renewal_attempt=_legacy_datetime(text("LastRenewalAttempt")),
                max_renewal_attempts=int(text("MaxRenewalAttempts") or 5),
                **values,
            )
        except ValueError as e:
            raise PersistenceError(
                code="legacy_parse_error",
                message=f"Invalid value in legacy certificate store: {e}",
                details={"file_path": str(path), "common_name": text("CommonName")},
            ) from e
        for attribute in ("private_key", "certificate", "csr"):
            if getattr(request, attribute) == "":
                setattr(request, attribute, None)
        request.fix_subject_alternative_names()
        requests.append(request)

    return requests
