"""
Property-based tests for Audit Logger module.

Uses Hypothesis for property-based testing of output formats, level
filtering, audit signing, and masking of secrets and key material.
"""

import json
from io import StringIO

from hypothesis import given, settings, assume
from hypothesis import strategies as st

from acme_keeper.audit_logger import AuditLogger, LogEntry
from acme_keeper.config import LoggingConfig
from acme_keeper.enums import LogLevel
from acme_keeper.exceptions import ProtocolError


SENSITIVE_PATTERNS = [
    'token_secret', 'secret', 'password', 'api_key', 'hmac_secret',
    'bot_token', 'webhook_url', 'authorization', 'credential',
    'private_key', 'key_pem', 'account_key', 'pkcs12', 'signing_key',
]

ERROR_FIELDS = {"error_message", "error_type", "error_code", "error_details"}


# Strategies for generating valid test data

@st.composite
def log_level_strategy(draw) -> LogLevel:
    """Generate valid LogLevel values."""
    return draw(st.sampled_from(list(LogLevel)))


@st.composite
def component_name_strategy(draw) -> str:
    """Generate valid component names."""
    return draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"),
        min_size=1,
        max_size=50,
    ))


@st.composite
def message_strategy(draw) -> str:
    """Generate valid log messages."""
    return draw(st.text(
        alphabet=st.characters(
            whitelist_categories=('L', 'N', 'P', 'S', 'Zs'),
            blacklist_characters='\x00\n\r',
        ),
        min_size=1,
        max_size=200,
    ))


@st.composite
def non_sensitive_key_strategy(draw) -> str:
    """Generate keys that are NOT sensitive."""
    key = draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz_"),
        min_size=1,
        max_size=20,
    ))
    for pattern in SENSITIVE_PATTERNS:
        assume(pattern not in key)
    return key


@st.composite
def sensitive_key_strategy(draw) -> str:
    """Generate keys that ARE sensitive."""
    base = draw(st.sampled_from(SENSITIVE_PATTERNS))
    prefix = draw(st.sampled_from(['', 'my_', 'acme_', 'smtp_']))
    suffix = draw(st.sampled_from(['', '_value', '_data', '_1']))
    return f"{prefix}{base}{suffix}"


@st.composite
def simple_value_strategy(draw):
    """Generate simple JSON-serializable values."""
    return draw(st.one_of(
        st.text(min_size=0, max_size=50),
        st.integers(min_value=-1000, max_value=1000),
        st.floats(allow_nan=False, allow_infinity=False, min_value=-1000, max_value=1000),
        st.booleans(),
        st.none(),
    ))


@st.composite
def non_sensitive_data_strategy(draw) -> dict:
    """Generate data dictionaries without sensitive keys."""
    keys = draw(st.lists(non_sensitive_key_strategy(), max_size=5, unique=True))
    return {key: draw(simple_value_strategy()) for key in keys}


@st.composite
def signing_key_strategy(draw) -> str:
    """Generate valid signing keys."""
    return draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"),
        min_size=16,
        max_size=64,
    ))


@st.composite
def pem_block_strategy(draw) -> str:
    """Generate PEM-armoured blocks of the kinds the engine handles."""
    label = draw(st.sampled_from(["PRIVATE KEY", "RSA PRIVATE KEY", "EC PRIVATE KEY", "CERTIFICATE"]))
    body = draw(st.lists(
        st.text(alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/", min_size=1, max_size=64),
        min_size=1,
        max_size=5,
    ))
    return f"-----BEGIN {label}-----\n" + "\n".join(body) + f"\n-----END {label}-----"


def make_logger(output_format: str = "json") -> tuple[AuditLogger, StringIO]:
    output = StringIO()
    return AuditLogger(output_format=output_format, output_stream=output, level=LogLevel.DEBUG), output


class TestDualFormatProperty:
    """
    Property-based tests for dual format logging.

    **Feature: acme-keeper, Property 20: Log entries in dual format**
    """

    @given(
        level=log_level_strategy(),
        component=component_name_strategy(),
        message=message_strategy(),
        data=non_sensitive_data_strategy(),
    )
    @settings(max_examples=100)
    def test_dual_format_produces_both_outputs(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: dict,
    ) -> None:
        """
        Property 20: Log entries in dual format.

        *For any* log entry when output_format is "both", the logger SHALL produce
        both a valid JSON string and a human-readable text line.

        **Feature: acme-keeper, Property 20: Log entries in dual format**
        """
        logger, output = make_logger("both")

        logger.log(level, component, message, data)

        lines = output.getvalue().strip().split('\n')
        assert len(lines) == 2, f"Expected 2 lines, got {len(lines)}"

        parsed_json = json.loads(lines[0])
        assert parsed_json["level"] == level.value
        assert parsed_json["component"] == component
        assert parsed_json["message"] == message
        assert "timestamp" in parsed_json

        text_line = lines[1]
        assert level.value.upper() in text_line
        assert f"[{component}]" in text_line
        assert message in text_line

    @given(
        level=log_level_strategy(),
        component=component_name_strategy(),
        message=message_strategy(),
        data=non_sensitive_data_strategy(),
    )
    @settings(max_examples=100)
    def test_json_only_format(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: dict,
    ) -> None:
        """
        Property 20b: JSON-only format produces valid JSON.

        **Feature: acme-keeper, Property 20: Log entries in dual format**
        """
        logger, output = make_logger("json")

        logger.log(level, component, message, data)

        lines = [line for line in output.getvalue().strip().split('\n') if line]
        assert len(lines) == 1
        parsed = json.loads(lines[0])
        assert parsed["level"] == level.value
        assert parsed["component"] == component
        assert parsed["message"] == message


class TestLevelFilteringProperty:
    """
    **Feature: acme-keeper, Property 21: Entries below the configured level are dropped**
    """

    @given(
        minimum=log_level_strategy(),
        level=log_level_strategy(),
        message=message_strategy(),
    )
    @settings(max_examples=100)
    def test_entries_below_minimum_are_dropped(self, minimum: LogLevel, level: LogLevel, message: str) -> None:
        """
        Property 21: Entries below the configured level are dropped.

        **Feature: acme-keeper, Property 21: Entries below the configured level are dropped**
        """
        order = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR]
        output = StringIO()
        logger = AuditLogger(output_format="text", output_stream=output, level=minimum)

        entry = logger.log(level, "Test", message)

        if order.index(level) >= order.index(minimum):
            assert entry is not None
            assert logger.entries == [entry]
            assert output.getvalue()
        else:
            assert entry is None
            assert logger.entries == []
            assert output.getvalue() == ""

    def test_from_config(self) -> None:
        output = StringIO()
        config = LoggingConfig(level="WARN", audit_mode=True, audit_signing_key="k" * 16, output_format="json")
        logger = AuditLogger.from_config(config, output_stream=output)

        assert not logger.is_enabled_for(LogLevel.INFO)
        assert logger.is_enabled_for(LogLevel.ERROR)
        assert logger.audit_mode

    def test_from_config_with_unknown_level_uses_info(self) -> None:
        logger = AuditLogger.from_config(LoggingConfig(level="verbose"), output_stream=StringIO())
        assert logger.is_enabled_for(LogLevel.INFO)
        assert not logger.is_enabled_for(LogLevel.DEBUG)
        assert not logger.audit_mode

    def test_clear_entries(self) -> None:
        logger, _ = make_logger()
        logger.info("Test", "first")
        logger.clear_entries()
        assert logger.entries == []


class TestAuditSigningProperty:
    """
    Property-based tests for audit mode signing.

    **Feature: acme-keeper, Property 22: Audit mode signs log entries**
    """

    @given(
        level=log_level_strategy(),
        component=component_name_strategy(),
        message=message_strategy(),
        data=non_sensitive_data_strategy(),
        signing_key=signing_key_strategy(),
    )
    @settings(max_examples=100)
    def test_audit_mode_signs_entries(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: dict,
        signing_key: str,
    ) -> None:
        """
        Property 22: Audit mode signs log entries.

        *For any* log entry when audit_mode is enabled, the entry SHALL contain
        a signature field that is a valid HMAC of the entry content.

        **Feature: acme-keeper, Property 22: Audit mode signs log entries**
        """
        logger, output = make_logger("json")
        logger.enable_audit_mode(signing_key)

        entry = logger.log(level, component, message, data)

        assert entry.signature is not None
        assert len(entry.signature) == 64
        assert logger.verify_signature(entry)

        parsed = json.loads(output.getvalue().strip())
        assert parsed["signature"] == entry.signature

    @given(
        level=log_level_strategy(),
        message=message_strategy(),
        data=non_sensitive_data_strategy(),
    )
    @settings(max_examples=100)
    def test_no_signature_without_audit_mode(self, level: LogLevel, message: str, data: dict) -> None:
        """
        Property 22b: No signature without audit mode.

        **Feature: acme-keeper, Property 22: Audit mode signs log entries**
        """
        logger, output = make_logger("json")

        entry = logger.log(level, "Test", message, data)

        assert entry.signature is None
        assert "signature" not in json.loads(output.getvalue().strip())

    @given(
        level=log_level_strategy(),
        component=component_name_strategy(),
        message=message_strategy(),
        data=non_sensitive_data_strategy(),
        signing_key=signing_key_strategy(),
    )
    @settings(max_examples=100)
    def test_tampered_entry_fails_verification(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: dict,
        signing_key: str,
    ) -> None:
        """
        Property 22c: Tampered entries fail verification.

        **Feature: acme-keeper, Property 22: Audit mode signs log entries**
        """
        logger, _ = make_logger("json")
        logger.enable_audit_mode(signing_key)

        entry = logger.log(level, component, message, data)
        assert logger.verify_signature(entry)

        tampered = LogEntry(
            timestamp=entry.timestamp,
            level=entry.level,
            component=entry.component,
            message=entry.message + " TAMPERED",
            data=entry.data,
            signature=entry.signature,
        )
        assert not logger.verify_signature(tampered)


class TestSensitiveDataMaskingProperty:
    """
    Property-based tests for sensitive data masking.

    **Feature: acme-keeper, Property 23: Secrets and key material never reach the log**
    """

    @given(
        sensitive_key=sensitive_key_strategy(),
        sensitive_value=st.text(alphabet=st.sampled_from("QWXYZ"), min_size=5, max_size=20),
        level=log_level_strategy(),
        message=message_strategy(),
    )
    @settings(max_examples=100)
    def test_sensitive_data_masked(
        self,
        sensitive_key: str,
        sensitive_value: str,
        level: LogLevel,
        message: str,
    ) -> None:
        """
        Property 23: Values under sensitive keys are masked.

        **Feature: acme-keeper, Property 23: Secrets and key material never reach the log**
        """
        logger, output = make_logger("json")

        entry = logger.log(level, "Test", message, {"context": {sensitive_key: sensitive_value, "other": "visible"}})

        assert entry.data["context"][sensitive_key] == AuditLogger.MASK_VALUE
        assert entry.data["context"]["other"] == "visible"
        parsed = json.loads(output.getvalue().strip())
        assert parsed["data"]["context"][sensitive_key] == AuditLogger.MASK_VALUE

    @given(
        non_sensitive_key=non_sensitive_key_strategy(),
        value=st.text(min_size=1, max_size=50),
        level=log_level_strategy(),
        message=message_strategy(),
    )
    @settings(max_examples=100)
    def test_non_sensitive_data_not_masked(
        self,
        non_sensitive_key: str,
        value: str,
        level: LogLevel,
        message: str,
    ) -> None:
        """
        Property 23b: Non-sensitive data is not masked.

        **Feature: acme-keeper, Property 23: Secrets and key material never reach the log**
        """
        assume("-----BEGIN" not in value)
        logger, _ = make_logger("json")

        entry = logger.log(level, "Test", message, {non_sensitive_key: value})

        assert entry.data[non_sensitive_key] == value

    @given(
        pem=pem_block_strategy(),
        prefix=st.text(alphabet="abcdefghij ", max_size=20),
        suffix=st.text(alphabet="abcdefghij ", max_size=20),
        non_sensitive_key=non_sensitive_key_strategy(),
    )
    @settings(max_examples=100)
    def test_pem_blocks_are_redacted_anywhere(
        self,
        pem: str,
        prefix: str,
        suffix: str,
        non_sensitive_key: str,
    ) -> None:
        """
        Property 23c: PEM blocks are redacted even under harmless keys.

        *For any* string value that embeds a PEM block, the logged value SHALL
        keep the surrounding text and replace the block.

        **Feature: acme-keeper, Property 23: Secrets and key material never reach the log**
        """
        logger, output = make_logger("both")

        entry = logger.log(LogLevel.INFO, "Test", "Loaded", {non_sensitive_key: [prefix + pem + suffix]})

        assert entry.data[non_sensitive_key] == [prefix + "[PEM REDACTED]" + suffix]
        assert "-----BEGIN" not in output.getvalue()


class TestErrorContextProperty:
    """
    Property-based tests for error context logging.

    **Feature: acme-keeper, Property 24: Error logs include full context**
    """

    @given(
        component=component_name_strategy(),
        message=message_strategy(),
        error_message=message_strategy(),
    )
    @settings(max_examples=100)
    def test_error_logs_include_error_context(self, component: str, message: str, error_message: str) -> None:
        """
        Property 24: Error logs carry the exception's type and message.

        **Feature: acme-keeper, Property 24: Error logs include full context**
        """
        logger, _ = make_logger("json")

        entry = logger.log_error(component, message, RuntimeError(error_message))

        assert entry.level == LogLevel.ERROR
        assert entry.data["error_message"] == error_message
        assert entry.data["error_type"] == "RuntimeError"
        assert "error_code" not in entry.data

    @given(
        code=st.sampled_from(["challenge_invalid", "order_failed", "bad_nonce"]),
        domain=st.sampled_from(["example.com", "www.example.com"]),
    )
    @settings(max_examples=100)
    def test_package_errors_add_code_and_details(self, code: str, domain: str) -> None:
        """
        Property 24b: Errors from this package contribute their code and details.

        **Feature: acme-keeper, Property 24: Error logs include full context**
        """
        logger, _ = make_logger("json")
        error = ProtocolError(code=code, message="Validation failed", details={"domain": domain})

        entry = logger.log_error("IssuanceSession", "Issuance failed", error)

        assert entry.data["error_code"] == code
        assert entry.data["error_details"] == {"domain": domain}
        assert entry.data["error_type"] == "ProtocolError"

    @given(
        error_message=message_strategy(),
        additional_key=non_sensitive_key_strategy(),
        additional_value=st.text(alphabet="abcdefghijklmnopqrstuvwxyz.", min_size=1, max_size=30),
    )
    @settings(max_examples=100)
    def test_error_logs_preserve_additional_data(
        self,
        error_message: str,
        additional_key: str,
        additional_value: str,
    ) -> None:
        """
        Property 24c: Error logs preserve additional data.

        **Feature: acme-keeper, Property 24: Error logs include full context**
        """
        assume(additional_key not in ERROR_FIELDS)
        logger, _ = make_logger("json")
        additional_data = {additional_key: additional_value}

        entry = logger.log_error("Test", "Failed", ValueError(error_message), additional_data)

        assert entry.data[additional_key] == additional_value
        assert entry.data["error_type"] == "ValueError"
        assert additional_data == {additional_key: additional_value}

    def test_error_without_exception(self) -> None:
        logger, _ = make_logger("json")
        entry = logger.log_error("Test", "Something failed", additional_data={"request_id": "abc"})
        assert entry.data == {"request_id": "abc"}
