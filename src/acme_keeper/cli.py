"""
Command-line interface for acme-keeper.

Commands:
- run: Run the renewal scheduler until interrupted
- renew-all: Run a single renewal pass
- request / secure: Issue a certificate for one or several bindings
- renew / delete / list: Manage stored certificate requests
- config: Configuration management
- self-test: Validate configuration and ACME directory reachability
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from . import __version__
from .audit_logger import AuditLogger
from .bindings import SiteRegistry
from .certificate_store import CertificateRequestStore
from .config import (
    ACME_DIRECTORY_PRODUCTION,
    AcmeConfig,
    BindingConfig,
    DiscordConfig,
    EmailConfig,
    LoggingConfig,
    NotificationConfig,
    PersistenceConfig,
    RenewalConfig,
    RetryConfig,
    SystemConfig,
    TelegramConfig,
    WebhookConfig,
)
from .enums import LogLevel
from .exceptions import AcmeKeeperError
from .i18n import get_message
from .issuance import IssuanceSession
from .models import IssuanceResult, RenewalReport
from .notifications import CertificateNotifier, NotificationRouter
from .scheduler import RenewalScheduler
from .self_test import run_self_test
from .service import CertificateService


DEFAULT_DATA_DIR = Path.home() / ".acme_keeper"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

ENV_CONTACT_EMAIL = "ACME_KEEPER_CONTACT_EMAIL"
ENV_STAGING = "ACME_KEEPER_STAGING"
ENV_DATA_DIR = "ACME_KEEPER_DATA_DIR"
ENV_LANGUAGE = "ACME_KEEPER_LANGUAGE"


@dataclass
class Runtime:
    """Components wired together for one CLI invocation."""

    config: SystemConfig
    logger: AuditLogger
    store: CertificateRequestStore
    registry: SiteRegistry
    notifier: CertificateNotifier
    session: IssuanceSession
    service: CertificateService
    scheduler: RenewalScheduler


def create_default_config(
    language: str = "de",
    data_dir: Optional[Path] = None,
    contact_email: str = "",
    staging: bool = False,
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        language: Output language ('de' or 'en')
        data_dir: Directory for the request store, account key and site list
        contact_email: ACME account contact
        staging: Use the staging directory
    """
    if data_dir is None:
        data_dir = DEFAULT_DATA_DIR

    return SystemConfig(
        acme=AcmeConfig(
            contact_email=contact_email,
            staging=staging,
            account_key_path=data_dir / "account_key.pem",
        ),
        renewal=RenewalConfig(),
        retry=RetryConfig(
            max_retries=3,
            base_delay_seconds=1.0,
            max_delay_seconds=60.0,
        ),
        notifications=NotificationConfig(),
        persistence=PersistenceConfig(data_dir=data_dir),
        bindings=BindingConfig(sites_file=data_dir / "sites.json"),
        logging=LoggingConfig(
            level="info",
            output_format="text",
        ),
        language=language,
        startup_self_test=False,
    )


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value).expanduser() if value else None


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        persistence_data = data.get("persistence", {})
        data_dir = _optional_path(persistence_data.get("data_dir")) or DEFAULT_DATA_DIR
        persistence = PersistenceConfig(
            data_dir=data_dir,
            requests_file=persistence_data.get("requests_file", "CertificateRequests.json"),
            legacy_file=persistence_data.get("legacy_file", "CertificateRequests.xml"),
            hmac_secret=persistence_data.get("hmac_secret"),
        )

        acme_data = data.get("acme", {})
        acme = AcmeConfig(
            contact_email=acme_data.get("contact_email", ""),
            directory_url=acme_data.get("directory_url", ACME_DIRECTORY_PRODUCTION),
            staging=acme_data.get("staging", False),
            account_key_path=_optional_path(acme_data.get("account_key_path")) or data_dir / "account_key.pem",
            http_timeout_seconds=acme_data.get("http_timeout_seconds", 30.0),
            challenge_initial_delay_seconds=acme_data.get("challenge_initial_delay_seconds", 3.0),
            challenge_poll_interval_seconds=acme_data.get("challenge_poll_interval_seconds", 5.0),
            challenge_poll_attempts=acme_data.get("challenge_poll_attempts", 6),
            order_poll_attempts=acme_data.get("order_poll_attempts", 10),
            order_poll_interval_seconds=acme_data.get("order_poll_interval_seconds", 2.0),
            key_size=acme_data.get("key_size", 2048),
        )

        renewal_data = data.get("renewal", {})
        renewal = RenewalConfig(
            interval_hours=renewal_data.get("interval_hours", 24.0),
            initial_delay_seconds=renewal_data.get("initial_delay_seconds", 5.0),
            backoff_hours=renewal_data.get("backoff_hours", 6.0),
            validity_days=renewal_data.get("validity_days", 60),
            default_max_attempts=renewal_data.get("default_max_attempts", 5),
            provider=renewal_data.get("provider", "lets_encrypt"),
        )

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=retry_data.get("max_retries", 3),
            base_delay_seconds=retry_data.get("base_delay_seconds", 1.0),
            max_delay_seconds=retry_data.get("max_delay_seconds", 60.0),
        )
        if "retryable_errors" in retry_data:
            retry.retryable_errors = list(retry_data["retryable_errors"])

        bindings_data = data.get("bindings", {})
        bindings = BindingConfig(
            sites_file=_optional_path(bindings_data.get("sites_file")) or data_dir / "sites.json",
            central_certificate_store=_optional_path(bindings_data.get("central_certificate_store")),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            audit_mode=logging_data.get("audit_mode", False),
            audit_signing_key=logging_data.get("audit_signing_key"),
            output_format=logging_data.get("output_format", "text"),
        )

        notifications_data = data.get("notifications", {})
        notifications = NotificationConfig()

        telegram_data = notifications_data.get("telegram", {})
        if telegram_data.get("enabled") and telegram_data.get("bot_token") and telegram_data.get("chat_id"):
            notifications.telegram = TelegramConfig(
                bot_token=telegram_data["bot_token"],
                chat_id=telegram_data["chat_id"],
            )

        discord_data = notifications_data.get("discord", {})
        if discord_data.get("enabled") and discord_data.get("webhook_url"):
            notifications.discord = DiscordConfig(
                webhook_url=discord_data["webhook_url"],
            )

        email_data = notifications_data.get("email", {})
        if email_data.get("enabled") and email_data.get("smtp_host"):
            notifications.email = EmailConfig(
                smtp_host=email_data["smtp_host"],
                smtp_port=email_data.get("smtp_port", 587),
                username=email_data.get("username", ""),
                password=email_data.get("password", ""),
                from_address=email_data.get("from_address", ""),
                to_addresses=email_data.get("to_addresses", []),
            )

        webhook_data = notifications_data.get("webhook", {})
        if webhook_data.get("enabled") and webhook_data.get("url"):
            notifications.webhook = WebhookConfig(
                url=webhook_data["url"],
                headers=webhook_data.get("headers", {}),
            )

        return SystemConfig(
            acme=acme,
            renewal=renewal,
            retry=retry,
            notifications=notifications,
            persistence=persistence,
            bindings=bindings,
            logging=logging_config,
            language=data.get("language", "de"),
            startup_self_test=data.get("startup_self_test", False),
        )

    except (json.JSONDecodeError, KeyError, TypeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    notifications = config.notifications
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "acme": {
                "contact_email": config.acme.contact_email,
                "directory_url": config.acme.directory_url,
                "staging": config.acme.staging,
                "account_key_path": str(config.acme.account_key_path),
                "http_timeout_seconds": config.acme.http_timeout_seconds,
                "challenge_initial_delay_seconds": config.acme.challenge_initial_delay_seconds,
                "challenge_poll_interval_seconds": config.acme.challenge_poll_interval_seconds,
                "challenge_poll_attempts": config.acme.challenge_poll_attempts,
                "order_poll_attempts": config.acme.order_poll_attempts,
                "order_poll_interval_seconds": config.acme.order_poll_interval_seconds,
                "key_size": config.acme.key_size,
            },
            "renewal": {
                "interval_hours": config.renewal.interval_hours,
                "initial_delay_seconds": config.renewal.initial_delay_seconds,
                "backoff_hours": config.renewal.backoff_hours,
                "validity_days": config.renewal.validity_days,
                "default_max_attempts": config.renewal.default_max_attempts,
                "provider": config.renewal.provider,
            },
            "retry": {
                "max_retries": config.retry.max_retries,
                "base_delay_seconds": config.retry.base_delay_seconds,
                "max_delay_seconds": config.retry.max_delay_seconds,
                "retryable_errors": list(config.retry.retryable_errors),
            },
            "persistence": {
                "data_dir": str(config.persistence.data_dir),
                "requests_file": config.persistence.requests_file,
                "legacy_file": config.persistence.legacy_file,
                "hmac_secret": config.persistence.hmac_secret,
            },
            "bindings": {
                "sites_file": str(config.bindings.sites_file) if config.bindings.sites_file else None,
                "central_certificate_store": (
                    str(config.bindings.central_certificate_store)
                    if config.bindings.central_certificate_store else None
                ),
            },
            "notifications": {
                "telegram": {
                    "enabled": notifications.telegram is not None,
                    "bot_token": notifications.telegram.bot_token if notifications.telegram else "",
                    "chat_id": notifications.telegram.chat_id if notifications.telegram else "",
                },
                "discord": {
                    "enabled": notifications.discord is not None,
                    "webhook_url": notifications.discord.webhook_url if notifications.discord else "",
                },
                "email": {
                    "enabled": notifications.email is not None,
                    "smtp_host": notifications.email.smtp_host if notifications.email else "",
                    "smtp_port": notifications.email.smtp_port if notifications.email else 587,
                    "username": notifications.email.username if notifications.email else "",
                    "password": notifications.email.password if notifications.email else "",
                    "from_address": notifications.email.from_address if notifications.email else "",
                    "to_addresses": notifications.email.to_addresses if notifications.email else [],
                },
                "webhook": {
                    "enabled": notifications.webhook is not None,
                    "url": notifications.webhook.url if notifications.webhook else "",
                    "headers": notifications.webhook.headers if notifications.webhook else {},
                },
            },
            "logging": {
                "level": config.logging.level,
                "audit_mode": config.logging.audit_mode,
                "audit_signing_key": config.logging.audit_signing_key,
                "output_format": config.logging.output_format,
            },
            "language": config.language,
            "startup_self_test": config.startup_self_test,
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def apply_env_overrides(config: SystemConfig) -> SystemConfig:
    """Apply ``ACME_KEEPER_*`` environment variables on top of a loaded config."""
    email = os.getenv(ENV_CONTACT_EMAIL, "").strip()
    if email:
        config.acme.contact_email = email

    staging = os.getenv(ENV_STAGING)
    if staging is not None:
        config.acme.staging = staging.strip().lower() in ("1", "true", "yes", "on")

    data_dir = os.getenv(ENV_DATA_DIR, "").strip()
    if data_dir:
        config.persistence.data_dir = Path(data_dir).expanduser()

    language = os.getenv(ENV_LANGUAGE, "").strip().lower()
    if language:
        config.language = language

    return config


def resolve_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Config from ``--config`` (or the default path), then env overrides and CLI flags."""
    config = None
    if getattr(args, "config", None):
        config = load_config_from_file(Path(args.config))
        if config is None:
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
            return None
    elif DEFAULT_CONFIG_PATH.exists():
        config = load_config_from_file(DEFAULT_CONFIG_PATH)

    if config is None:
        config = create_default_config()

    apply_env_overrides(config)
    if getattr(args, "language", None):
        config.language = args.language
    if getattr(args, "staging", False):
        config.acme.staging = True
    return config


def build_runtime(config: SystemConfig, verbose: bool = False) -> Runtime:
    """Wire the store, site registry, notifier, issuance session, service and scheduler."""
    if verbose:
        config.logging.level = LogLevel.DEBUG.value
    logger = AuditLogger.from_config(config.logging)

    config.persistence.data_dir.mkdir(parents=True, exist_ok=True)
    store = CertificateRequestStore(config.persistence, logger)
    store.load()

    registry = SiteRegistry(config.bindings, logger=logger)
    registry.load()

    router = None
    if config.notifications.has_channels():
        router = NotificationRouter.from_config(config.notifications, config.retry, logger)
    notifier = CertificateNotifier(router, language=config.language, logger=logger)

    session = IssuanceSession(config, store, registry, notifier=notifier, logger=logger)
    service = CertificateService(config, store, registry, session, logger=logger)
    scheduler = RenewalScheduler(config, store, session, registry, notifier=notifier, logger=logger)

    return Runtime(
        config=config,
        logger=logger,
        store=store,
        registry=registry,
        notifier=notifier,
        session=session,
        service=service,
        scheduler=scheduler,
    )


def print_report(report: RenewalReport, language: str) -> None:
    if not report.has_activity:
        print(get_message("cli.no_activity", language))
        return
    for domain in report.renewed:
        print(f"  ✓ {domain}")
    for domain in report.renewed_with_fix:
        print(f"  ⚠ {domain} (port 80)")
    for failure in report.failed:
        print(f"  ✗ {failure.domain}: {failure.error}")
    for retry in report.retrying:
        print(f"  ↻ {retry.domain} ({retry.attempts}/{retry.max_attempts})")


def print_issuance(result: IssuanceResult, language: str) -> None:
    request = result.request
    print(get_message(
        "cli.request_created",
        language,
        request_id=request.id,
        domains=", ".join(request.subject_alternative_names),
        status=request.status.display_name,
    ))
    for domain, error in result.attach_failures.items():
        print(f"  ✗ {domain}: {error}", file=sys.stderr)


async def _startup_self_test(config: SystemConfig) -> bool:
    if not config.startup_self_test:
        return True
    result = await run_self_test(config, print_output=True, language=config.language)
    return result.success


async def run_scheduler(runtime: Runtime) -> int:
    """Run the renewal loop until SIGINT/SIGTERM."""
    if not await _startup_self_test(runtime.config):
        print(get_message("selftest.failed", runtime.config.language), file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runtime.scheduler.stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(runtime.scheduler.stop))

    runtime.scheduler.start()
    print(get_message("cli.scheduler_started", runtime.config.language))
    await runtime.scheduler.wait_stopped()
    runtime.store.save()
    return 0


def _run(args: argparse.Namespace, action) -> int:
    config = resolve_config(args)
    if config is None:
        return 1
    try:
        runtime = build_runtime(config, verbose=getattr(args, "verbose", False))
        return asyncio.run(action(runtime))
    except AcmeKeeperError as e:
        print(get_message("cli.error", config.language, message=e.message), file=sys.stderr)
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    return _run(args, run_scheduler)


def cmd_renew_all(args: argparse.Namespace) -> int:
    """Handle the 'renew-all' command."""
    async def action(runtime: Runtime) -> int:
        report = await runtime.scheduler.run_pass()
        print_report(report, runtime.config.language)
        return 1 if report.failed else 0

    return _run(args, action)


def cmd_request(args: argparse.Namespace) -> int:
    """Handle the 'request' command."""
    async def action(runtime: Runtime) -> int:
        result = await runtime.service.create_request(
            args.site,
            args.binding,
            extra_names=args.name or [],
            add_www=args.www,
        )
        print_issuance(result, runtime.config.language)
        return 0 if result.fully_bound else 2

    return _run(args, action)


def cmd_secure(args: argparse.Namespace) -> int:
    """Handle the 'secure' command."""
    async def action(runtime: Runtime) -> int:
        result = await runtime.service.secure_bindings(args.site, args.binding)
        print_issuance(result, runtime.config.language)
        return 0 if result.fully_bound else 2

    return _run(args, action)


def cmd_renew(args: argparse.Namespace) -> int:
    """Handle the 'renew' command."""
    async def action(runtime: Runtime) -> int:
        result = await runtime.service.renew(args.request_id)
        print_issuance(result, runtime.config.language)
        return 0 if result.fully_bound else 2

    return _run(args, action)


def cmd_delete(args: argparse.Namespace) -> int:
    """Handle the 'delete' command."""
    async def action(runtime: Runtime) -> int:
        runtime.service.delete(args.request_id)
        print(get_message("cli.request_deleted", runtime.config.language, request_id=args.request_id))
        return 0

    return _run(args, action)


def cmd_list(args: argparse.Namespace) -> int:
    """Handle the 'list' command."""
    async def action(runtime: Runtime) -> int:
        rows = runtime.service.list_requests()
        if args.json:
            print(json.dumps(rows, indent=2, ensure_ascii=False))
            return 0
        if not rows:
            print(get_message("cli.no_requests", runtime.config.language))
            return 0
        for row in rows:
            print(
                f"{row['id']}  {row['status']:<10} {row['provider']:<12} "
                f"{row['expiration_date'] or '-':<32} {row['subject_alternative_names']}"
            )
        return 0

    return _run(args, action)


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = resolve_config(args)
    if config is None:
        return 1

    result = asyncio.run(run_self_test(
        config=config,
        print_output=True,
        language=config.language,
    ))

    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  Language: {config.language}")
        print(f"  ACME directory: {config.acme.effective_directory_url}")
        print(f"  Contact email: {config.acme.contact_email or '-'}")
        print(f"  Request store: {config.persistence.requests_path}")
        print(f"  Sites file: {config.bindings.sites_file}")
        print(f"  Renewal interval: {config.renewal.interval_hours}h (backoff {config.renewal.backoff_hours}h)")
        print(f"  Log level: {config.logging.level}")
        print(f"  Audit mode: {config.logging.audit_mode}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config(
            language=args.language or "de",
            contact_email=args.email or "",
        )
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    common.add_argument(
        "--language", "-l",
        choices=["de", "en"],
        help="Output language (default: from configuration)",
    )
    common.add_argument(
        "--staging",
        action="store_true",
        help="Use the ACME staging directory",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output",
    )

    parser = argparse.ArgumentParser(
        prog="acme-keeper",
        description="ACME certificate issuance and renewal for hosted sites",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the renewal scheduler until interrupted",
    )
    run_parser.set_defaults(func=cmd_run)

    renew_all_parser = subparsers.add_parser(
        "renew-all",
        parents=[common],
        help="Run one renewal pass now",
    )
    renew_all_parser.set_defaults(func=cmd_renew_all)

    request_parser = subparsers.add_parser(
        "request",
        parents=[common],
        help="Request a certificate for a site binding",
    )
    request_parser.add_argument("--site", required=True, help="Website id")
    request_parser.add_argument("--binding", required=True, help="Binding id")
    request_parser.add_argument(
        "--name", "-n",
        action="append",
        help="Additional subject alternative name (repeatable)",
    )
    request_parser.add_argument(
        "--www",
        action="store_true",
        help="Also cover www.<common name>",
    )
    request_parser.set_defaults(func=cmd_request)

    secure_parser = subparsers.add_parser(
        "secure",
        parents=[common],
        help="Secure several bindings of a site with one certificate",
    )
    secure_parser.add_argument("--site", required=True, help="Website id")
    secure_parser.add_argument(
        "--binding",
        required=True,
        action="append",
        help="Binding id (repeatable)",
    )
    secure_parser.set_defaults(func=cmd_secure)

    renew_parser = subparsers.add_parser(
        "renew",
        parents=[common],
        help="Renew a certificate request now",
    )
    renew_parser.add_argument("request_id", help="Certificate request id")
    renew_parser.set_defaults(func=cmd_renew)

    delete_parser = subparsers.add_parser(
        "delete",
        parents=[common],
        help="Delete a certificate request",
    )
    delete_parser.add_argument("request_id", help="Certificate request id")
    delete_parser.set_defaults(func=cmd_delete)

    list_parser = subparsers.add_parser(
        "list",
        parents=[common],
        help="List certificate requests, newest first",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Print as JSON",
    )
    list_parser.set_defaults(func=cmd_list)

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.add_argument(
        "--language", "-l",
        choices=["de", "en"],
        help="Default language for new configuration",
    )
    config_parser.add_argument(
        "--email",
        help="ACME contact email for new configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    self_test_parser = subparsers.add_parser(
        "self-test",
        parents=[common],
        help="Validate configuration and ACME directory reachability",
    )
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    load_dotenv()
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
