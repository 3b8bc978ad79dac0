"""
Internationalization (i18n) module for operator-facing text.

Provides German (de) and English (en) strings for alerts, renewal reports,
self-test output and CLI messages.
"""

from typing import Optional


SUPPORTED_LANGUAGES = frozenset({"de", "en"})
DEFAULT_LANGUAGE = "de"


# Structure: {message_key: {language_code: translated_message}}
TRANSLATIONS: dict[str, dict[str, str]] = {
    # Field labels
    "label.domain": {"de": "Domain", "en": "Domain"},
    "label.site": {"de": "Website", "en": "Website"},
    "label.action": {"de": "Aktion", "en": "Action"},
    "label.details": {"de": "Details", "en": "Details"},
    "label.time": {"de": "Zeit", "en": "Time"},
    "label.duration": {"de": "Dauer", "en": "Duration"},
    "label.total": {"de": "Verarbeitet", "en": "Total processed"},
    "label.binding_type": {"de": "Bindungstyp", "en": "Binding type"},

    # Certificate actions
    "action.issued": {"de": "Ausgestellt", "en": "Issued"},
    "action.renewed": {"de": "Erneuert", "en": "Renewed"},
    "action.bind_failed": {"de": "Bindung fehlgeschlagen", "en": "Binding failed"},
    "action.issuance_failed": {"de": "Ausstellung fehlgeschlagen", "en": "Issuance failed"},
    "action.expired": {"de": "Abgelaufen", "en": "Expired"},

    # Port 80 binding alert
    "alert.port80.subject": {
        "de": "Port-80-Bindungswarnung - {domain} - HINZUGEFÜGT",
        "en": "Port 80 binding alert - {domain} - ADDED",
    },
    "alert.port80.title": {
        "de": "Port-80-Bindung automatisch angelegt",
        "en": "Port 80 binding added automatically",
    },
    "alert.port80.body": {
        "de": (
            "Eine fehlende Port-80-Bindung wurde erkannt und automatisch angelegt. "
            "Sie wird für die HTTP-01-Validierung benötigt. Bitte prüfen, ob die "
            "Bindung manuell entfernt wurde und ob die Firewall Port 80 erlaubt."
        ),
        "en": (
            "A missing port 80 binding was detected and added automatically. "
            "It is required for HTTP-01 validation. Please check whether the "
            "binding was removed manually and that the firewall allows port 80."
        ),
    },

    # Certificate outcome alert
    "alert.certificate.subject": {
        "de": "Zertifikatswarnung - {domain} - {action}",
        "en": "Certificate alert - {domain} - {action}",
    },
    "alert.certificate.title": {
        "de": "Zertifikat {action}: {domain}",
        "en": "Certificate {action}: {domain}",
    },

    # Renewal summary report
    "summary.subject": {
        "de": "Zertifikats-Erneuerungsbericht - {date}",
        "en": "Certificate renewal report - {date}",
    },
    "summary.suffix.failures": {"de": "FEHLER ERKANNT", "en": "FAILURES DETECTED"},
    "summary.suffix.port80": {"de": "PORT-80-KORREKTUREN ANGEWENDET", "en": "PORT 80 FIXES APPLIED"},
    "summary.suffix.success": {"de": "ALLE ERFOLGREICH", "en": "ALL SUCCESSFUL"},
    "summary.section.renewed": {
        "de": "Erfolgreich erneuert ({count})",
        "en": "Successfully renewed ({count})",
    },
    "summary.section.renewed_with_fix": {
        "de": "Erneuert mit Port-80-Korrektur ({count})",
        "en": "Renewed with port 80 binding fixes ({count})",
    },
    "summary.section.failed": {
        "de": "Fehlgeschlagene Erneuerungen ({count})",
        "en": "Failed renewals ({count})",
    },
    "summary.section.retrying": {
        "de": "Zertifikate mit Wiederholungsversuchen ({count})",
        "en": "Certificates with retry attempts ({count})",
    },
    "summary.retrying_entry": {
        "de": "{domain}: {attempts}/{max_attempts} Versuche (zuletzt: {last_attempt})",
        "en": "{domain}: {attempts}/{max_attempts} attempts (last: {last_attempt})",
    },
    "summary.port80_note": {
        "de": "Bitte prüfen, warum diese Port-80-Bindungen fehlten.",
        "en": "Review why these port 80 bindings were missing.",
    },
    "summary.failed_note": {
        "de": "Zertifikate, die die maximale Anzahl an Versuchen überschreiten, werden als abgelaufen markiert.",
        "en": "Certificates that exceed the maximum retry attempts are marked as expired.",
    },
    "summary.duration_value": {
        "de": "{minutes:.2f} Minuten",
        "en": "{minutes:.2f} minutes",
    },

    # Self-test
    "selftest.header": {"de": "Selbsttest", "en": "Self-test"},
    "selftest.config_validation": {"de": "Konfigurationsprüfung", "en": "Configuration validation"},
    "selftest.config_valid": {"de": "Konfiguration gültig", "en": "Configuration valid"},
    "selftest.config_invalid": {"de": "Konfiguration ungültig", "en": "Configuration invalid"},
    "selftest.warnings": {"de": "Warnungen", "en": "Warnings"},
    "selftest.connectivity": {"de": "ACME-Verzeichnis", "en": "ACME directory"},
    "selftest.success": {"de": "Selbsttest erfolgreich", "en": "Self-test passed"},
    "selftest.failed": {"de": "Selbsttest fehlgeschlagen", "en": "Self-test failed"},
    "selftest.duration": {"de": "Dauer", "en": "Duration"},

    # CLI
    "cli.no_requests": {
        "de": "Keine Zertifikatsanforderungen vorhanden.",
        "en": "No certificate requests found.",
    },
    "cli.request_created": {
        "de": "Zertifikat {request_id} für {domains} angefordert ({status}).",
        "en": "Certificate {request_id} requested for {domains} ({status}).",
    },
    "cli.request_deleted": {
        "de": "Zertifikatsanforderung {request_id} gelöscht.",
        "en": "Certificate request {request_id} deleted.",
    },
    "cli.no_activity": {
        "de": "Keine fälligen Zertifikate.",
        "en": "No certificates were due.",
    },
    "cli.scheduler_started": {
        "de": "Erneuerungsplaner gestartet. Beenden mit Strg+C.",
        "en": "Renewal scheduler started. Press Ctrl+C to stop.",
    },
    "cli.error": {"de": "Fehler: {message}", "en": "Error: {message}"},
}


def get_message(
    key: str,
    language: Optional[str] = None,
    **kwargs,
) -> str:
    """
    Get a translated message by key.

    Args:
        key: The message key (e.g., 'summary.suffix.failures')
        language: 'de' or 'en'. Defaults to DEFAULT_LANGUAGE.
        **kwargs: Format arguments for the message template

    Returns:
        The translated and formatted message. Unknown keys return the key
        itself; unknown languages fall back to DEFAULT_LANGUAGE.

    Examples:
        >>> get_message('summary.suffix.success', 'en')
        'ALL SUCCESSFUL'
    """
    if language is None or language not in SUPPORTED_LANGUAGES:
        language = DEFAULT_LANGUAGE

    translations = TRANSLATIONS.get(key)
    if translations is None:
        return key

    message = translations.get(language) or translations.get(DEFAULT_LANGUAGE)
    if message is None:
        return key

    if kwargs:
        try:
            message = message.format(**kwargs)
        except (KeyError, ValueError):
            pass

    return message


def get_missing_translations(language: str) -> set[str]:
    """Message keys with no translation for ``language``."""
    return {key for key, translations in TRANSLATIONS.items() if language not in translations}


def validate_translations() -> dict[str, set[str]]:
    """Map each supported language to its missing keys (empty when complete)."""
    return {language: get_missing_translations(language) for language in SUPPORTED_LANGUAGES}
