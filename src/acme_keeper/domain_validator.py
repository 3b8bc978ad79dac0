"""
Hostname validation and normalization.

Every domain entering a certificate request passes through here so that SAN
lists are stored in one canonical form (trimmed, lower-case, IDNA-encoded)
and only names the ACME service can validate over HTTP-01 are accepted.
"""

import re
from dataclasses import dataclass
from typing import Optional

import idna

from .enums import DomainValidationErrorCode
from .exceptions import ValidationError


# Control characters, whitespace and punctuation never valid in a hostname
FORBIDDEN_CHARS_PATTERN = re.compile(
    r'[\x00-\x1f\x7f'
    r'\s'
    r'!@#$%^&()+=\[\]{}|\\:;"\'<>,?/`~_]'
)

LABEL_PATTERN = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")

MAX_HOSTNAME_LENGTH = 253


@dataclass
class DomainValidationResult:
    """Result of validating one hostname."""

    valid: bool
    canonical_domain: Optional[str]
    error_code: Optional[DomainValidationErrorCode] = None
    error_message: Optional[str] = None


class DomainValidator:
    """Validates and normalizes hostnames for HTTP-01 certificates."""

    def validate(self, raw_domain: str) -> DomainValidationResult:
        """
        Validate and normalize a hostname.

        Args:
            raw_domain: Hostname as entered by an operator or read from a binding

        Returns:
            DomainValidationResult with the canonical form or the failure reason
        """
        if not raw_domain or not raw_domain.strip():
            return self._failure(DomainValidationErrorCode.EMPTY_INPUT, "Domain input is empty")

        domain = raw_domain.strip().rstrip(".")

        if "*" in domain:
            return self._failure(
                DomainValidationErrorCode.WILDCARD,
                "Wildcard names cannot be validated over HTTP-01",
            )

        if FORBIDDEN_CHARS_PATTERN.search(domain):
            return self._failure(
                DomainValidationErrorCode.FORBIDDEN_CHARS,
                "Domain contains forbidden characters",
            )

        try:
            canonical = self.normalize_to_canonical(domain)
        except ValidationError as e:
            return self._failure(DomainValidationErrorCode.IDNA_ERROR, e.message)

        if len(canonical) > MAX_HOSTNAME_LENGTH:
            return self._failure(
                DomainValidationErrorCode.TOO_LONG,
                f"Domain exceeds {MAX_HOSTNAME_LENGTH} characters",
            )

        labels = canonical.split(".")
        if len(labels) < 2:
            return self._failure(
                DomainValidationErrorCode.MISSING_TLD,
                "Domain must contain at least two labels",
            )

        for label in labels:
            if not LABEL_PATTERN.match(label):
                return self._failure(
                    DomainValidationErrorCode.INVALID_LABEL,
                    f"Invalid label '{label}'",
                )

        return DomainValidationResult(valid=True, canonical_domain=canonical)

    def normalize_to_canonical(self, domain: str) -> str:
        """
        Lower-case a hostname and IDNA-encode it when it contains non-ASCII.

        Raises:
            ValidationError: If IDNA encoding fails
        """
        domain_lower = domain.strip().lower()
        if all(ord(c) < 128 for c in domain_lower):
            return domain_lower

        try:
            return idna.encode(domain_lower, uts46=True).decode("ascii")
        except idna.IDNAError as e:
            raise ValidationError(
                code=DomainValidationErrorCode.IDNA_ERROR.value,
                message=f"IDNA encoding failed: {e}",
                details={"domain": domain},
            )

    def require_valid(self, raw_domain: str) -> str:
        """
        Return the canonical hostname or raise.

        Raises:
            ValidationError: If the hostname is rejected
        """
        result = self.validate(raw_domain)
        if not result.valid:
            raise ValidationError(
                code=result.error_code.value,
                message=result.error_message or "Invalid domain",
                details={"domain": raw_domain},
            )
        return result.canonical_domain

    @staticmethod
    def _failure(code: DomainValidationErrorCode, message: str) -> DomainValidationResult:
        return DomainValidationResult(
            valid=False,
            canonical_domain=None,
            error_code=code,
            error_message=message,
        )
