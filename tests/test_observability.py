"""Tests for observability utilities."""

import json
import logging
import sys

import pytest

from lexbill.observability.correlation import (
    correlation_id_from_header,
    generate_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from lexbill.observability.logging import JsonFormatter, get_logger
from lexbill.observability.redaction import (
    id_prefix,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_card_number(self):
        result = redact_string("card 4111 1111 1111 1111 declined")
        assert "4111" not in result
        assert "[REDACTED]" in result

    def test_redact_cpf(self):
        result = redact_string("cliente CPF 123.456.789-09")
        assert "123.456.789-09" not in result

    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"card_token": "tok_secret", "amount": 100})
        assert "tok_secret" not in result
        assert "card_token" in result

    def test_redact_value_list_only_len(self):
        assert redact_value([1, 2, 3]) == "list(len=3)"

    def test_safe_log_context(self):
        ctx = safe_log_context(email="a@b.com", count=42, ok=True, missing=None)
        assert "[REDACTED]" in ctx["email"]
        assert ctx["count"] == "42"
        assert ctx["ok"] == "true"
        assert ctx["missing"] == "null"

    def test_id_prefix(self):
        assert id_prefix("evt_1234567890") == "evt_1234"
        assert id_prefix("short") == "short"
        assert id_prefix(None) == ""


class TestCorrelation:
    def test_set_and_reset(self):
        cid = generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            assert get_correlation_id() == cid
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() != cid

    def test_header_value_kept_when_safe(self):
        assert correlation_id_from_header("req-42:abc") == "req-42:abc"

    @pytest.mark.parametrize("value", [None, "", "has space", "x" * 129, "caf\u00e9"])
    def test_header_value_replaced_when_unsafe(self, value):
        cid = correlation_id_from_header(value)
        assert cid != value
        assert len(cid) == 36


class TestJsonFormatter:
    def test_includes_extra_fields_and_correlation(self):
        record = logging.LogRecord("lexbill.test", logging.INFO, __file__, 1, "charge created", None, None)
        record.extra_fields = {"charge_id": "c-1"}

        token = set_correlation_id("cid-123")
        try:
            out = json.loads(JsonFormatter().format(record))
        finally:
            reset_correlation_id(token)

        assert out["message"] == "charge created"
        assert out["level"] == "INFO"
        assert out["correlationId"] == "cid-123"
        assert out["charge_id"] == "c-1"

    def test_get_logger_configures_once(self):
        logger = get_logger("lexbill.test.once")
        again = get_logger("lexbill.test.once")
        assert logger is again
        assert len(logger.handlers) == 1

    def test_service_and_role_fields(self, monkeypatch):
        monkeypatch.setenv("APP_ROLE", "worker")
        record = logging.LogRecord("lexbill.test", logging.INFO, __file__, 1, "tick", None, None)
        out = json.loads(JsonFormatter().format(record))
        assert out["service"] == "lexbill"
        assert out["role"] == "worker"

    def test_extra_fields_cannot_override_reserved_keys(self):
        record = logging.LogRecord("lexbill.test", logging.INFO, __file__, 1, "real", None, None)
        record.extra_fields = {"message": "spoofed", "level": "DEBUG"}
        out = json.loads(JsonFormatter().format(record))
        assert out["message"] == "real"
        assert out["level"] == "INFO"
        assert out["extra_message"] == "spoofed"

    def test_exception_adds_error_type(self):
        try:
            raise KeyError("charge_id")
        except KeyError:
            record = logging.LogRecord(
                "lexbill.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        out = json.loads(JsonFormatter().format(record))
        assert out["error_type"] == "KeyError"
        assert "Traceback" in out["exception"]
