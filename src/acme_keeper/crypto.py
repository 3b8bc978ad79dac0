"""
Key, CSR and PKCS#12 helpers used by issuance sessions.
"""

from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .exceptions import ProtocolError
from .models import CertificateRequest


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def build_subject(request: CertificateRequest) -> x509.Name:
    """
    Subject from the request's identity fields.

    Empty fields are left out; the country is only used when it is a
    two-letter code.
    """
    attributes = []
    if len(request.country.strip()) == 2:
        attributes.append(x509.NameAttribute(NameOID.COUNTRY_NAME, request.country.strip().upper()))
    for oid, value in (
        (NameOID.STATE_OR_PROVINCE_NAME, request.state),
        (NameOID.LOCALITY_NAME, request.city),
        (NameOID.ORGANIZATION_NAME, request.organization_name),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, request.organizational_unit),
    ):
        if value and value.strip():
            attributes.append(x509.NameAttribute(oid, value.strip()))
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, request.common_name))
    return x509.Name(attributes)


def build_csr(request: CertificateRequest, key: rsa.RSAPrivateKey) -> bytes:
    """DER-encoded CSR listing every SAN of the request."""
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(build_subject(request))
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in request.subject_alternative_names]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def load_chain(chain_pem: str) -> list[x509.Certificate]:
    """
    Parse a PEM bundle, leaf first.

    Raises:
        ProtocolError: If the bundle holds no certificate
    """
    try:
        certificates = x509.load_pem_x509_certificates(chain_pem.encode("ascii"))
    except ValueError as e:
        raise ProtocolError(
            code="invalid_certificate",
            message=f"Certificate chain could not be parsed: {e}",
        )
    return certificates


def build_pkcs12(
    key_pem: str,
    chain_pem: str,
    friendly_name: Optional[str] = None,
    password: Optional[bytes] = None,
) -> bytes:
    """
    Bundle the private key and chain into a PKCS#12 archive.

    An empty or missing password produces an unencrypted archive.
    """
    key = serialization.load_pem_private_key(key_pem.encode("ascii"), password=None)
    chain = load_chain(chain_pem)
    if password:
        encryption = serialization.BestAvailableEncryption(password)
    else:
        encryption = serialization.NoEncryption()
    return pkcs12.serialize_key_and_certificates(
        name=friendly_name.encode("utf-8") if friendly_name else None,
        key=key,
        cert=chain[0],
        cas=chain[1:] or None,
        encryption_algorithm=encryption,
    )
