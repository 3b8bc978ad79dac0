"""
Audit Logger module for the certificate lifecycle engine.

Provides structured logging with JSON and human-readable text output,
minimum-level filtering, optional audit mode with HMAC signing, and
masking of secrets and private key material.
"""

import hashlib
import hmac
import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from .config import LoggingConfig
from .enums import LogLevel


_LEVEL_ORDER = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}

PEM_BLOCK_PATTERN = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----.*?-----END \1-----",
    re.DOTALL,
)


@dataclass
class LogEntry:
    """A single structured log entry."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)
    signature: Optional[str] = None


class AuditLogger:
    """
    Structured logger shared by every component.

    Components receive an optional instance and log through it with a
    component name and a data dict. Entries below the configured level are
    dropped. Values under sensitive keys are replaced, and PEM blocks found
    anywhere in string values are collapsed to a placeholder.
    """

    SENSITIVE_KEYS = frozenset({
        'token_secret', 'secret', 'password', 'api_key', 'hmac_secret',
        'bot_token', 'webhook_url', 'authorization', 'credential',
        'private_key', 'key_pem', 'account_key', 'pkcs12', 'signing_key',
    })

    MASK_VALUE = "***MASKED***"

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        level: LogLevel = LogLevel.INFO,
    ):
        """
        Args:
            output_format: 'json', 'text', or 'both'
            output_stream: Stream receiving entries (defaults to sys.stderr)
            level: Minimum level that is recorded
        """
        if output_format not in ("json", "text", "both"):
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._output_stream = output_stream or sys.stderr
        self._min_level = level
        self._signing_key: Optional[bytes] = None
        self._entries: list[LogEntry] = []

    @classmethod
    def from_config(
        cls,
        config: LoggingConfig,
        output_stream: Optional[TextIO] = None,
    ) -> "AuditLogger":
        """Build a logger from the logging section of the system config."""
        try:
            level = LogLevel(config.level.lower())
        except ValueError:
            level = LogLevel.INFO

        logger = cls(
            output_format=config.output_format,
            output_stream=output_stream,
            level=level,
        )
        if config.audit_mode and config.audit_signing_key:
            logger.enable_audit_mode(config.audit_signing_key)
        return logger

    @property
    def audit_mode(self) -> bool:
        return self._signing_key is not None

    @property
    def entries(self) -> list[LogEntry]:
        """Recorded entries (copy)."""
        return self._entries.copy()

    def enable_audit_mode(self, signing_key: str) -> None:
        """Sign every subsequent entry with HMAC-SHA256 over its content."""
        if not signing_key:
            raise ValueError("Signing key cannot be empty")
        self._signing_key = signing_key.encode('utf-8')

    def disable_audit_mode(self) -> None:
        self._signing_key = None

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record and emit an entry.

        Args:
            level: Severity
            component: Name of the emitting component
            message: Human-readable message
            data: Structured context

        Returns:
            The LogEntry, or None when filtered out by level
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=self.mask_sensitive_data(data or {}),
        )
        if self._signing_key:
            entry.signature = self._sign_entry(entry)

        self._entries.append(entry)
        self._output_entry(entry)
        return entry

    def debug(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, component, message, data)

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log an error with the exception's type, message and structured fields.

        Errors from this package contribute their ``code`` and ``details``.
        """
        data = dict(additional_data) if additional_data else {}
        if error is not None:
            data["error_message"] = str(error)
            data["error_type"] = type(error).__name__
            code = getattr(error, "code", None)
            if code is not None:
                data["error_code"] = code
            details = getattr(error, "details", None)
            if details:
                data["error_details"] = details

        return self.log(LogLevel.ERROR, component, message, data)

    def mask_sensitive_data(self, data: Any) -> Any:
        """
        Recursively mask sensitive values.

        Args:
            data: dict, list or scalar

        Returns:
            A masked copy; the input is not modified
        """
        if isinstance(data, dict):
            masked = {}
            for key, value in data.items():
                key_lower = str(key).lower()
                if any(sensitive in key_lower for sensitive in self.SENSITIVE_KEYS):
                    masked[key] = self.MASK_VALUE
                else:
                    masked[key] = self.mask_sensitive_data(value)
            return masked
        if isinstance(data, (list, tuple)):
            return [self.mask_sensitive_data(item) for item in data]
        if isinstance(data, str) and "-----BEGIN" in data:
            return PEM_BLOCK_PATTERN.sub("[PEM REDACTED]", data)
        return data

    def _signable(self, entry: LogEntry) -> bytes:
        content = {
            "timestamp": entry.timestamp,
            "level": entry.level.value,
            "component": entry.component,
            "message": entry.message,
            "data": entry.data,
        }
        return json.dumps(content, sort_keys=True, ensure_ascii=False, default=str).encode('utf-8')

    def _sign_entry(self, entry: LogEntry) -> str:
        if not self._signing_key:
            raise RuntimeError("Signing key not set")
        return hmac.new(self._signing_key, self._signable(entry), hashlib.sha256).hexdigest()

    def verify_signature(self, entry: LogEntry) -> bool:
        """Check an entry's signature against the current signing key."""
        if not entry.signature or not self._signing_key:
            return False
        return hmac.compare_digest(entry.signature, self._sign_entry(entry))

    def _output_entry(self, entry: LogEntry) -> None:
        if self._output_format in ("json", "both"):
            self._output_stream.write(self.format_json(entry) + "\n")
        if self._output_format in ("text", "both"):
            self._output_stream.write(self.format_text(entry) + "\n")
        self._output_stream.flush()

    def format_json(self, entry: LogEntry) -> str:
        obj = {
            "timestamp": entry.timestamp,
            "level": entry.level.value,
            "component": entry.component,
            "message": entry.message,
            "data": entry.data,
        }
        if entry.signature:
            obj["signature"] = entry.signature
        return json.dumps(obj, ensure_ascii=False, default=str)

    def format_text(self, entry: LogEntry) -> str:
        # [TIMESTAMP] LEVEL [COMPONENT] MESSAGE {data}
        parts = [
            f"[{entry.timestamp}]",
            entry.level.value.upper(),
            f"[{entry.component}]",
            entry.message,
        ]
        if entry.data:
            parts.append(json.dumps(entry.data, ensure_ascii=False, default=str))
        text = " ".join(parts)
        if entry.signature:
            text += f" [sig:{entry.signature[:16]}...]"
        return text

    def clear_entries(self) -> None:
        self._entries.clear()
