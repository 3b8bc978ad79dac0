"""
HTTP-01 challenge files under a site's document root.

Writes ``.well-known/acme-challenge/<token>`` and a static-file handler
configuration next to it so the token is served as plain content rather
than routed to an application handler.
"""

from pathlib import Path
from typing import Optional

from .audit_logger import AuditLogger
from .enums import LogLevel
from .exceptions import PreconditionError


CHALLENGE_DIRECTORY = Path(".well-known") / "acme-challenge"

STATIC_HANDLER_CONFIG = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    "<configuration>"
    "<system.webServer>"
    "<staticContent>"
    '<mimeMap fileExtension="." mimeType="text/json" />'
    "</staticContent>"
    "<handlers>"
    "<clear />"
    '<add name="StaticFile" path="*" verb="*" type="" '
    'modules="StaticFileModule,DefaultDocumentModule,DirectoryListingModule" '
    'scriptProcessor="" resourceType="Either" requireAccess="Read" '
    'allowPathInfo="false" preCondition="" responseBufferLimit="4194304" />'
    "</handlers>"
    "</system.webServer>"
    "</configuration>"
)


class ChallengeWriter:
    """Places and removes HTTP-01 token files."""

    CONFIG_FILE_NAME = "web.config"

    def __init__(self, logger: Optional[AuditLogger] = None) -> None:
        self._logger = logger

    def write(self, document_root: str, token: str, key_authorization: str) -> Path:
        """
        Write the token file, creating the directory and handler config as needed.

        Returns:
            Path of the token file

        Raises:
            PreconditionError: If the token is unsafe or the files cannot be written
        """
        if not token or "/" in token or "\\" in token or token.startswith("."):
            raise PreconditionError(
                code="invalid_token",
                message="Challenge token is not a plain file name",
                details={"token": token},
            )

        directory = Path(document_root) / CHALLENGE_DIRECTORY
        token_path = directory / token
        try:
            directory.mkdir(parents=True, exist_ok=True)
            token_path.write_text(key_authorization, encoding="ascii")
            config_path = directory / self.CONFIG_FILE_NAME
            if not config_path.exists():
                config_path.write_text(STATIC_HANDLER_CONFIG, encoding="utf-8")
        except OSError as e:
            raise PreconditionError(
                code="challenge_write_failed",
                message=f"Unable to write challenge file: {e}",
                details={"path": str(token_path)},
            )

        if self._logger:
            self._logger.log(LogLevel.DEBUG, "ChallengeWriter", "Wrote challenge file", {"path": str(token_path)})
        return token_path

    def remove(self, token_path: Path) -> None:
        """Delete a token file; a missing file is not an error."""
        try:
            token_path.unlink(missing_ok=True)
        except OSError as e:
            if self._logger:
                self._logger.log_error("ChallengeWriter", "Unable to remove challenge file", e, {
                    "path": str(token_path),
                })
