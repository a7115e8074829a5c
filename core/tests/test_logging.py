"""Tests for structured logging helpers."""

import logging

import pytest
from pydantic import SecretStr

from blockstore.logging_config import (
    LogContext,
    add_context_vars,
    add_service_info,
    configure_logging,
    log_performance,
    redact_secrets,
    request_id_var,
)
from blockstore.vault import MASK, SecretValue


class TestRedaction:
    def test_secret_values_redacted(self):
        event = {"event": "saved", "token": SecretValue("sk-123"), "password": SecretStr("pw")}

        redacted = redact_secrets(None, "info", event)

        assert redacted["token"] == MASK
        assert redacted["password"] == MASK

    def test_nested_secrets_redacted(self):
        event = {"event": "saved", "values": {"api_key": SecretValue("k"), "user": "bot"}}

        redacted = redact_secrets(None, "info", event)

        assert redacted["values"] == {"api_key": MASK, "user": "bot"}

    def test_plain_values_untouched(self):
        event = {"event": "saved", "type_slug": "cube", "version": 2}

        assert redact_secrets(None, "info", dict(event)) == event


class TestProcessors:
    def test_service_info(self):
        assert add_service_info(None, "info", {})["service"] == "hive-blockstore"

    def test_request_id_added_inside_context(self):
        with LogContext(request_id="req-123"):
            assert add_context_vars(None, "info", {})["request_id"] == "req-123"

        assert "request_id" not in add_context_vars(None, "info", {})

    def test_log_context_restores_previous(self):
        with LogContext(request_id="outer"):
            with LogContext(request_id="inner"):
                assert request_id_var.get() == "inner"
            assert request_id_var.get() == "outer"


class TestConfigureLogging:
    def test_sets_level(self):
        configure_logging(json_output=True, log_level="WARNING")

        assert logging.getLogger().level == logging.WARNING

        configure_logging(log_level="INFO")


class TestLogPerformance:
    def test_returns_result(self):
        @log_performance("double")
        def double(x):
            return x * 2

        assert double(2) == 4

    def test_reraises(self):
        @log_performance("explode")
        def explode():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            explode()

    def test_preserves_metadata(self):
        @log_performance("documented")
        def documented():
            """docstring"""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "docstring"
