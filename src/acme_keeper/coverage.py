"""
Domain Coverage Resolver.

Filters a requested domain set against the certificates that are already
active so a new request never re-covers a domain. Applied only when a new
request is created; renewals reuse the existing request's SAN list.
"""

from datetime import datetime
from typing import Iterable

from .exceptions import AlreadyCoveredError
from .models import CertificateRequest, normalize_hostname


def covered_domains(requests: Iterable[CertificateRequest], now: datetime) -> set[str]:
    """Every SAN of every request whose expiration is still in the future."""
    covered: set[str] = set()
    for request in requests:
        if request.is_active(now):
            covered.update(normalize_hostname(name) for name in request.subject_alternative_names)
    return covered


def residual_domains(
    requested: Iterable[str],
    existing: Iterable[CertificateRequest],
    now: datetime,
) -> list[str]:
    """
    Domains from ``requested`` not covered by an active certificate.

    Input order is preserved and duplicates are dropped. A new list is built;
    neither the input nor any existing request is modified.
    """
    covered = covered_domains(existing, now)
    residual: list[str] = []
    for name in requested:
        name = normalize_hostname(name)
        if name and name not in covered and name not in residual:
            residual.append(name)
    return residual


def resolve_coverage(
    requested: Iterable[str],
    existing: Iterable[CertificateRequest],
    now: datetime,
) -> list[str]:
    """
    Residual domains, or an error when nothing is left to request.

    Raises:
        AlreadyCoveredError: If every requested domain is already covered
    """
    requested = list(requested)
    residual = residual_domains(requested, existing, now)
    if not residual:
        raise AlreadyCoveredError([normalize_hostname(name) for name in requested])
    return residual
