"""
Operator notifications for the certificate lifecycle engine.

Provides delivery channels (Telegram, Discord, Email, Webhook), a router
that fans an alert out to every channel with retry and exponential backoff,
and ``CertificateNotifier``, the best-effort facade the engine calls for
port 80 fixes, certificate outcomes and renewal summaries.
"""

import asyncio
import smtplib
import ssl
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from .config import (
    DiscordConfig,
    EmailConfig,
    NotificationConfig,
    RetryConfig,
    TelegramConfig,
    WebhookConfig,
)
from .enums import AlertLevel, LogLevel
from .exceptions import NotificationError
from .i18n import get_message
from .models import RenewalFailure, RetryingCertificate, utc_now

if TYPE_CHECKING:
    from .audit_logger import AuditLogger


LEVEL_ICONS = {
    AlertLevel.SUCCESS: "🟢",
    AlertLevel.WARNING: "🟠",
    AlertLevel.ERROR: "🔴",
}

LEVEL_COLORS = {
    AlertLevel.SUCCESS: 0x4CAF50,
    AlertLevel.WARNING: 0xFF9800,
    AlertLevel.ERROR: 0xF44336,
}


def format_timestamp(moment: datetime, language: str = "de") -> str:
    """Render a timestamp in the operator's language."""
    if language == "de":
        return moment.strftime("%d.%m.%Y, %H:%M Uhr")
    return moment.strftime("%b %d, %Y, %I:%M %p")


@dataclass
class AlertSection:
    """A titled list inside an alert (e.g. the failed renewals)."""

    title: str
    items: list[str]
    note: Optional[str] = None


@dataclass
class AlertMessage:
    """Channel-independent alert content."""

    subject: str
    title: str
    level: AlertLevel
    timestamp: datetime
    language: str = "de"
    body: str = ""
    fields: list[tuple[str, str]] = field(default_factory=list)
    sections: list[AlertSection] = field(default_factory=list)

    def as_text(self) -> str:
        lines = [self.title, ""]
        for label, value in self.fields:
            lines.append(f"{label}: {value}")
        lines.append(f"{get_message('label.time', self.language)}: {format_timestamp(self.timestamp, self.language)}")
        if self.body:
            lines.extend(["", self.body])
        for section in self.sections:
            lines.extend(["", section.title])
            lines.extend(f"  - {item}" for item in section.items)
            if section.note:
                lines.append(section.note)
        return "\n".join(lines)


@dataclass
class NotificationResult:
    """Result of delivering one alert to one channel."""

    channel: str
    success: bool
    error: Optional[str] = None
    attempts: int = 1


@runtime_checkable
class NotificationChannel(Protocol):
    """Interface every delivery channel implements."""

    @abstractmethod
    async def send(self, message: AlertMessage) -> bool:
        """Deliver the alert; True on success."""
        ...

    @abstractmethod
    def get_name(self) -> str:
        ...


class TelegramChannel:
    """Telegram Bot API channel."""

    def __init__(self, config: TelegramConfig) -> None:
        self._chat_id = config.chat_id
        self._base_url = f"https://api.telegram.org/bot{config.bot_token}"

    async def send(self, message: AlertMessage) -> bool:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    f"{self._base_url}/sendMessage",
                    json={
                        "chat_id": self._chat_id,
                        "text": self._format_message(message),
                        "parse_mode": "HTML",
                    },
                    timeout=30.0,
                )
                return response.status_code == 200
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "telegram"

    def _format_message(self, message: AlertMessage) -> str:
        lines = [f"{LEVEL_ICONS[message.level]} <b>{escape(message.title)}</b>", ""]
        for label, value in message.fields:
            lines.append(f"{escape(label)}: <code>{escape(value)}</code>")
        if message.body:
            lines.extend(["", escape(message.body)])
        for section in message.sections:
            lines.extend(["", f"<b>{escape(section.title)}</b>"])
            lines.extend(f"• {escape(item)}" for item in section.items)
        return "\n".join(lines)


class DiscordChannel:
    """Discord webhook channel."""

    def __init__(self, config: DiscordConfig) -> None:
        self._webhook_url = config.webhook_url

    async def send(self, message: AlertMessage) -> bool:
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self._webhook_url,
                    json={"embeds": [self._format_embed(message)]},
                    timeout=30.0,
                )
                # 204 No Content on success
                return response.status_code in (200, 204)
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "discord"

    def _format_embed(self, message: AlertMessage) -> dict:
        fields = [{"name": label, "value": value, "inline": True} for label, value in message.fields]
        for section in message.sections:
            # Embed field values are limited to 1024 characters
            fields.append({
                "name": section.title,
                "value": "\n".join(section.items)[:1024] or "-",
                "inline": False,
            })
        return {
            "title": f"{LEVEL_ICONS[message.level]} {message.title}",
            "description": message.body,
            "color": LEVEL_COLORS[message.level],
            "fields": fields,
            "timestamp": message.timestamp.isoformat(),
        }


class EmailChannel:
    """SMTP channel; the blocking send runs in the default executor."""

    def __init__(self, config: EmailConfig) -> None:
        self._config = config

    async def send(self, message: AlertMessage) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._send_sync, message)

    def _send_sync(self, message: AlertMessage) -> bool:
        try:
            context = ssl.create_default_context()
            with smtplib.SMTP(self._config.smtp_host, self._config.smtp_port) as server:
                server.starttls(context=context)
                if self._config.username:
                    server.login(self._config.username, self._config.password)
                server.sendmail(
                    self._config.from_address,
                    self._config.to_addresses,
                    self._format_email(message).as_string(),
                )
            return True
        except (smtplib.SMTPException, OSError):
            return False

    def get_name(self) -> str:
        return "email"

    def _format_email(self, message: AlertMessage) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self._config.from_address
        msg["To"] = ", ".join(self._config.to_addresses)
        msg["Subject"] = message.subject
        msg.attach(MIMEText(message.as_text(), "plain", "utf-8"))
        return msg


class WebhookChannel:
    """Generic JSON webhook channel."""

    def __init__(self, config: WebhookConfig) -> None:
        self._url = config.url
        self._headers = config.headers.copy()

    async def send(self, message: AlertMessage) -> bool:
        data = {
            "subject": message.subject,
            "title": message.title,
            "level": message.level.value,
            "timestamp": message.timestamp.isoformat(),
            "language": message.language,
            "body": message.body,
            "fields": {label: value for label, value in message.fields},
            "sections": [
                {"title": s.title, "items": s.items, "note": s.note}
                for s in message.sections
            ],
        }
        headers = {"Content-Type": "application/json"}
        headers.update(self._headers)

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(self._url, json=data, headers=headers, timeout=30.0)
                return 200 <= response.status_code < 300
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "webhook"


class NotificationRouter:
    """Delivers alerts to every registered channel with retry and backoff."""

    def __init__(
        self,
        retry_config: RetryConfig,
        logger: Optional["AuditLogger"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._channels: list[NotificationChannel] = []
        self._retry_config = retry_config
        self._logger = logger
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: NotificationConfig,
        retry_config: RetryConfig,
        logger: Optional["AuditLogger"] = None,
    ) -> "NotificationRouter":
        """Router with one channel per configured section."""
        router = cls(retry_config, logger)
        if config.telegram:
            router.register_channel(TelegramChannel(config.telegram))
        if config.discord:
            router.register_channel(DiscordChannel(config.discord))
        if config.email:
            router.register_channel(EmailChannel(config.email))
        if config.webhook:
            router.register_channel(WebhookChannel(config.webhook))
        return router

    def register_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)

    @property
    def channels(self) -> list[NotificationChannel]:
        return self._channels.copy()

    async def send(self, message: AlertMessage) -> list[NotificationResult]:
        results = []
        for channel in self._channels:
            results.append(await self._send_with_retry(channel, message))
        return results

    async def _send_with_retry(
        self,
        channel: NotificationChannel,
        message: AlertMessage,
    ) -> NotificationResult:
        channel_name = channel.get_name()
        max_attempts = self._retry_config.max_retries + 1
        errors: list[str] = []

        for attempt in range(1, max_attempts + 1):
            try:
                if await channel.send(message):
                    return NotificationResult(channel=channel_name, success=True, attempts=attempt)
                errors.append("Channel returned failure")
            except Exception as e:
                errors.append(str(e))

            if attempt < max_attempts:
                await self._sleep(self._calculate_delay(attempt - 1))

        if self._logger:
            self._logger.log(
                LogLevel.ERROR,
                "NotificationRouter",
                f"All notification retries failed for channel '{channel_name}'",
                {
                    "channel": channel_name,
                    "subject": message.subject,
                    "total_attempts": len(errors),
                    "errors": errors,
                },
            )
        return NotificationResult(
            channel=channel_name,
            success=False,
            error=errors[-1] if errors else None,
            attempts=len(errors),
        )

    def _calculate_delay(self, attempt: int) -> float:
        delay = self._retry_config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._retry_config.max_delay_seconds)


@runtime_checkable
class Notifier(Protocol):
    """Operator notification as consumed by the engine. Never raises."""

    async def notify_binding_auto_created(self, domain: str, site_name: str) -> bool:
        ...

    async def notify_certificate_outcome(self, domain: str, action: str, details: str, is_error: bool) -> bool:
        ...

    async def notify_renewal_summary(
        self,
        renewed: list[str],
        renewed_with_fix: list[str],
        failed: list[RenewalFailure],
        duration_seconds: float,
        retrying: Optional[list[RetryingCertificate]] = None,
    ) -> bool:
        ...


class CertificateNotifier:
    """
    Renders certificate alerts and hands them to the router.

    Every method swallows delivery and rendering failures after logging them,
    so a notification problem never fails the certificate operation that
    triggered it.
    """

    COMPONENT = "CertificateNotifier"

    def __init__(
        self,
        router: Optional[NotificationRouter] = None,
        language: str = "de",
        logger: Optional["AuditLogger"] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._router = router
        self._language = language
        self._logger = logger
        self._clock = clock

    def _msg(self, key: str, **kwargs) -> str:
        return get_message(key, self._language, **kwargs)

    async def notify_binding_auto_created(self, domain: str, site_name: str) -> bool:
        message = AlertMessage(
            subject=self._msg("alert.port80.subject", domain=domain),
            title=self._msg("alert.port80.title"),
            level=AlertLevel.WARNING,
            timestamp=self._clock(),
            language=self._language,
            body=self._msg("alert.port80.body"),
            fields=[
                (self._msg("label.domain"), domain),
                (self._msg("label.site"), site_name),
                (self._msg("label.binding_type"), "HTTP (Port 80)"),
            ],
        )
        return await self._dispatch(message)

    async def notify_certificate_outcome(self, domain: str, action: str, details: str, is_error: bool) -> bool:
        message = AlertMessage(
            subject=self._msg("alert.certificate.subject", domain=domain, action=action),
            title=self._msg("alert.certificate.title", domain=domain, action=action),
            level=AlertLevel.ERROR if is_error else AlertLevel.SUCCESS,
            timestamp=self._clock(),
            language=self._language,
            body=details,
            fields=[
                (self._msg("label.domain"), domain),
                (self._msg("label.action"), action),
            ],
        )
        return await self._dispatch(message)

    async def notify_renewal_summary(
        self,
        renewed: list[str],
        renewed_with_fix: list[str],
        failed: list[RenewalFailure],
        duration_seconds: float,
        retrying: Optional[list[RetryingCertificate]] = None,
    ) -> bool:
        try:
            message = self.build_summary(renewed, renewed_with_fix, failed, duration_seconds, retrying or [])
        except Exception as e:
            self._log_failure("Failed to build renewal summary report", e)
            return False
        return await self._dispatch(message)

    def build_summary(
        self,
        renewed: list[str],
        renewed_with_fix: list[str],
        failed: list[RenewalFailure],
        duration_seconds: float,
        retrying: list[RetryingCertificate],
    ) -> AlertMessage:
        """Render the renewal report; the subject suffix follows the worst outcome."""
        now = self._clock()
        subject = self._msg("summary.subject", date=now.strftime("%Y-%m-%d"))
        if failed:
            level = AlertLevel.ERROR
            subject += " - " + self._msg("summary.suffix.failures")
        elif renewed_with_fix:
            level = AlertLevel.WARNING
            subject += " - " + self._msg("summary.suffix.port80")
        else:
            level = AlertLevel.SUCCESS
            if renewed:
                subject += " - " + self._msg("summary.suffix.success")

        sections = []
        if renewed:
            sections.append(AlertSection(
                title=self._msg("summary.section.renewed", count=len(renewed)),
                items=list(renewed),
            ))
        if renewed_with_fix:
            sections.append(AlertSection(
                title=self._msg("summary.section.renewed_with_fix", count=len(renewed_with_fix)),
                items=list(renewed_with_fix),
                note=self._msg("summary.port80_note"),
            ))
        if failed:
            sections.append(AlertSection(
                title=self._msg("summary.section.failed", count=len(failed)),
                items=[f"{f.domain}: {f.error}" for f in failed],
                note=self._msg("summary.failed_note"),
            ))
        if retrying:
            sections.append(AlertSection(
                title=self._msg("summary.section.retrying", count=len(retrying)),
                items=[
                    self._msg(
                        "summary.retrying_entry",
                        domain=r.domain,
                        attempts=r.attempts,
                        max_attempts=r.max_attempts,
                        last_attempt=format_timestamp(r.last_attempt, self._language) if r.last_attempt else "-",
                    )
                    for r in retrying
                ],
            ))

        return AlertMessage(
            subject=subject,
            title=self._msg("summary.subject", date=now.strftime("%Y-%m-%d")),
            level=level,
            timestamp=now,
            language=self._language,
            fields=[
                (self._msg("label.duration"), self._msg("summary.duration_value", minutes=duration_seconds / 60)),
                (self._msg("label.total"), str(len(renewed) + len(renewed_with_fix) + len(failed))),
            ],
            sections=sections,
        )

    async def _dispatch(self, message: AlertMessage) -> bool:
        if self._logger:
            self._logger.log(LogLevel.INFO, self.COMPONENT, message.subject, {"level": message.level.value})
        if self._router is None:
            return False
        try:
            results = await self._router.send(message)
        except Exception as e:
            self._log_failure(f"Notification delivery failed: {message.subject}", e)
            return False
        delivered = any(result.success for result in results)
        if results and not delivered:
            self._log_failure(
                "Alert was not delivered to any channel",
                NotificationError(
                    code="delivery_failed",
                    message=f"No channel accepted: {message.subject}",
                    details={"channels": [r.channel for r in results]},
                ),
            )
        return delivered

    def _log_failure(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)
