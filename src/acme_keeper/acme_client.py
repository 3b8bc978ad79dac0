"""
ACME v2 protocol client.

A small RFC 8555 client over httpx: directory discovery, ES256-signed JWS
requests with nonce handling, account registration, orders, authorizations,
HTTP-01 challenges, finalization and certificate download.

Transient failures (transport errors, 5xx, 429, badNonce) are retried
through the RetryManager; anything else surfaces as ProtocolError.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from .audit_logger import AuditLogger
from .config import AcmeConfig
from .enums import AcmeStatus, LogLevel
from .exceptions import NetworkError, ProtocolError
from .retry_manager import RetryManager


BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
RATE_LIMITED = "urn:ietf:params:acme:error:rateLimited"


def b64url(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def jwk_thumbprint(jwk: dict) -> str:
    """RFC 7638 thumbprint of an EC or RSA public JWK."""
    if jwk.get("kty") == "EC":
        canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
    elif jwk.get("kty") == "RSA":
        canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
    else:
        raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
    digest = hashlib.sha256(json.dumps(canonical, separators=(",", ":"), sort_keys=True).encode("utf-8")).digest()
    return b64url(digest)


def parse_problem(response: httpx.Response) -> tuple[str, str]:
    """(type, detail) from an RFC 7807 problem document."""
    try:
        problem = response.json()
    except ValueError:
        return "", response.text
    if not isinstance(problem, dict):
        return "", response.text
    return problem.get("type", ""), problem.get("detail", "") or response.text


@dataclass
class AcmeOrder:
    """An ACME order as returned by the service."""

    url: str
    status: str
    authorizations: list[str]
    finalize: str
    identifiers: list[str] = field(default_factory=list)
    certificate: Optional[str] = None

    @classmethod
    def from_response(cls, url: str, body: dict) -> "AcmeOrder":
        return cls(
            url=url,
            status=body.get("status", ""),
            authorizations=list(body.get("authorizations", [])),
            finalize=body.get("finalize", ""),
            identifiers=[i.get("value", "") for i in body.get("identifiers", [])],
            certificate=body.get("certificate"),
        )


@dataclass
class Http01Challenge:
    """HTTP-01 challenge for one authorization."""

    domain: str
    url: str
    token: str
    key_authorization: str
    status: str
    authorization_status: str


class AcmeClient:
    """
    ACME v2 client bound to one directory and one account key.

    Use as an async context manager; ``open`` is called on entry and
    registers (or re-uses) the account.
    """

    COMPONENT = "AcmeClient"

    def __init__(
        self,
        config: AcmeConfig,
        retry_manager: RetryManager,
        logger: Optional[AuditLogger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._retry = retry_manager
        self._logger = logger
        self._http = http_client
        self._owns_http = http_client is None
        self.directory: dict = {}
        self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
        self.account_url: Optional[str] = None
        self._nonce: Optional[str] = None

    async def __aenter__(self) -> "AcmeClient":
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._config.http_timeout_seconds)
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def directory_url(self) -> str:
        return self._config.effective_directory_url

    @property
    def account_url_path(self) -> Path:
        key_path = Path(self._config.account_key_path)
        suffix = "-staging.url" if self._config.staging else ".url"
        return key_path.with_name(key_path.stem + suffix)

    async def open(self) -> None:
        await self.fetch_directory()
        self.account_key = self.load_or_create_account_key()
        await self.register_account(self._config.contact_email)

    # Transport

    async def fetch_directory(self) -> dict:
        async def do_fetch() -> dict:
            try:
                response = await self._http.get(self.directory_url)
            except httpx.HTTPError as e:
                raise NetworkError(code="network_error", message=f"ACME directory unreachable: {e}")
            if response.status_code >= 500:
                raise ProtocolError(code="server_error", message=f"ACME directory returned {response.status_code}")
            if response.status_code != 200:
                raise ProtocolError(
                    code="directory_error",
                    message=f"ACME directory returned {response.status_code}",
                    details={"url": self.directory_url},
                )
            return response.json()

        self.directory = await self._retry.run(do_fetch)
        for key in ("newNonce", "newAccount", "newOrder"):
            if key not in self.directory:
                raise ProtocolError(code="directory_error", message=f"ACME directory lacks {key}")
        return self.directory

    async def _new_nonce(self) -> str:
        if self._nonce:
            nonce, self._nonce = self._nonce, None
            return nonce
        try:
            response = await self._http.head(self.directory["newNonce"])
        except httpx.HTTPError as e:
            raise NetworkError(code="network_error", message=f"Failed to obtain ACME nonce: {e}")
        nonce = response.headers.get("Replay-Nonce")
        if not nonce:
            raise ProtocolError(code="server_error", message="Failed to obtain ACME nonce")
        return nonce

    def load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
        """Read the EC P-256 account key, creating it (mode 0600) on first use."""
        path = Path(self._config.account_key_path)
        if path.exists():
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
            if not isinstance(key, ec.EllipticCurvePrivateKey):
                raise ProtocolError(code="account_key_invalid", message="Account key is not an EC key")
            return key

        key = ec.generate_private_key(ec.SECP256R1())
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))
        path.chmod(0o600)
        self._log(LogLevel.INFO, "Created new ACME account key", {"path": str(path)})
        return key

    def jwk(self) -> dict:
        if self.account_key is None:
            raise ProtocolError(code="account_key_missing", message="Account key not loaded")
        numbers = self.account_key.public_key().public_numbers()
        return {
            "kty": "EC",
            "crv": "P-256",
            "x": b64url(numbers.x.to_bytes(32, "big")),
            "y": b64url(numbers.y.to_bytes(32, "big")),
        }

    def _sign(self, signing_input: bytes) -> bytes:
        der = self.account_key.sign(signing_input, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        # ES256 is r || s, 32 bytes each
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    async def _post_once(self, url: str, payload: Optional[dict], use_jwk: bool) -> httpx.Response:
        protected = {"alg": "ES256", "nonce": await self._new_nonce(), "url": url}
        if use_jwk or not self.account_url:
            protected["jwk"] = self.jwk()
        else:
            protected["kid"] = self.account_url

        protected_b64 = b64url(json.dumps(protected).encode("utf-8"))
        # POST-as-GET carries an empty payload
        payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode("utf-8"))
        signature = self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))

        try:
            response = await self._http.post(
                url,
                json={"protected": protected_b64, "payload": payload_b64, "signature": b64url(signature)},
                headers={"Content-Type": "application/jose+json"},
            )
        except httpx.HTTPError as e:
            raise NetworkError(code="network_error", message=f"ACME request failed: {e}", details={"url": url})

        nonce = response.headers.get("Replay-Nonce")
        if nonce:
            self._nonce = nonce

        if response.status_code >= 400:
            problem_type, detail = parse_problem(response)
            if problem_type == BAD_NONCE:
                code = "bad_nonce"
            elif problem_type == RATE_LIMITED or response.status_code == 429:
                code = "rate_limited"
            elif response.status_code >= 500:
                code = "server_error"
            else:
                code = "acme_error"
            raise ProtocolError(
                code=code,
                message=f"{detail} ({problem_type})" if problem_type else detail,
                details={"url": url, "status_code": response.status_code, "type": problem_type},
            )
        return response

    async def post(self, url: str, payload: Optional[dict], use_jwk: bool = False) -> httpx.Response:
        """Signed POST with retry on transient failures."""
        async def do_post() -> httpx.Response:
            return await self._post_once(url, payload, use_jwk)

        return await self._retry.run(do_post)

    # Account

    async def register_account(self, email: str) -> str:
        """Register the account, or re-use the URL cached next to the key."""
        cache = self.account_url_path
        if cache.exists():
            self.account_url = cache.read_text(encoding="utf-8").strip()
            if self.account_url:
                return self.account_url

        payload: dict = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]
        response = await self.post(self.directory["newAccount"], payload, use_jwk=True)
        account_url = response.headers.get("Location")
        if not account_url:
            raise ProtocolError(code="account_error", message="No account URL in response")

        self.account_url = account_url
        cache.parent.mkdir(parents=True, exist_ok=True)
        cache.write_text(account_url, encoding="utf-8")
        self._log(LogLevel.INFO, "Registered ACME account", {"account_url": account_url})
        return account_url

    # Orders

    async def new_order(self, domains: list[str]) -> AcmeOrder:
        response = await self.post(
            self.directory["newOrder"],
            {"identifiers": [{"type": "dns", "value": domain} for domain in domains]},
        )
        order_url = response.headers.get("Location")
        if not order_url:
            raise ProtocolError(code="order_error", message="No order URL in response")
        order = AcmeOrder.from_response(order_url, response.json())
        self._log(LogLevel.INFO, "Created ACME order", {"order_url": order_url, "domains": domains})
        return order

    async def get_authorization(self, url: str) -> dict:
        return (await self.post(url, None)).json()

    def http01_challenge(self, authorization: dict) -> Http01Challenge:
        """
        HTTP-01 challenge of an authorization with its key authorization.

        Raises:
            ProtocolError: If the authorization offers no HTTP-01 challenge
        """
        domain = authorization.get("identifier", {}).get("value", "")
        for challenge in authorization.get("challenges", []):
            if challenge.get("type") == "http-01":
                token = challenge["token"]
                return Http01Challenge(
                    domain=domain,
                    url=challenge["url"],
                    token=token,
                    key_authorization=f"{token}.{jwk_thumbprint(self.jwk())}",
                    status=challenge.get("status", AcmeStatus.PENDING.value),
                    authorization_status=authorization.get("status", AcmeStatus.PENDING.value),
                )
        raise ProtocolError(
            code="no_http01_challenge",
            message=f"No HTTP-01 challenge offered for {domain}",
            details={"domain": domain},
        )

    async def respond_to_challenge(self, challenge_url: str) -> dict:
        return (await self.post(challenge_url, {})).json()

    async def get_challenge(self, challenge_url: str) -> dict:
        return (await self.post(challenge_url, None)).json()

    async def get_order(self, order_url: str) -> AcmeOrder:
        return AcmeOrder.from_response(order_url, (await self.post(order_url, None)).json())

    async def finalize(self, order: AcmeOrder, csr_der: bytes) -> AcmeOrder:
        response = await self.post(order.finalize, {"csr": b64url(csr_der)})
        return AcmeOrder.from_response(order.url, response.json())

    async def download_certificate(self, certificate_url: str) -> str:
        """PEM chain, leaf first."""
        response = await self.post(certificate_url, None)
        return response.text

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
