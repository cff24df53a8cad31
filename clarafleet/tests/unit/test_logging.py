"""Unit tests for logging configuration and log hygiene helpers."""

import json
import logging

import pytest

from clarafleet.core.config import Settings
from clarafleet.core.logging import (
    REDACTED,
    ContextFilter,
    CustomJsonFormatter,
    get_operation_id,
    is_privilege_prompt,
    redact,
    sanitize_error,
    set_operation_id,
    setup_logging,
    strip_privilege_prompts,
)


@pytest.fixture
def isolated_root_logger():
    """Restore root logger handlers, filters, and level after the test."""
    root = logging.getLogger()
    handlers, filters, level = root.handlers[:], root.filters[:], root.level
    yield root
    root.handlers[:] = handlers
    root.filters[:] = filters
    root.setLevel(level)


@pytest.fixture
def operation_id():
    set_operation_id("op-1234")
    yield "op-1234"
    set_operation_id(None)


def _record(message: str = "deployed") -> logging.LogRecord:
    return logging.LogRecord("clarafleet.test", logging.INFO, __file__, 1, message, None, None)


# =============================================================================
# Sanitization
# =============================================================================


def test_sanitize_error_redacts_credentials():
    result = sanitize_error("login failed: password=hunter2 token: abc123")

    assert "hunter2" not in result
    assert "abc123" not in result
    assert REDACTED in result


def test_sanitize_error_shortens_paths():
    assert sanitize_error("cannot read /home/clara/.ssh/id_rsa") == "cannot read .../id_rsa"


def test_sanitize_error_truncates():
    result = sanitize_error("x" * 50, max_length=10)
    assert result == "x" * 10 + "...[truncated]"


def test_redact_masks_every_occurrence():
    assert redact("pw s3cr3t then s3cr3t", "s3cr3t") == f"pw {REDACTED} then {REDACTED}"


def test_redact_ignores_empty_secrets():
    assert redact("unchanged", None, "") == "unchanged"


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("[sudo] password for ubuntu: ", True),
        ("Sorry, try again.", True),
        ("sudo: a password is required", True),
        ("Setting up docker-ce (5:27.1.1)", False),
    ],
)
def test_is_privilege_prompt(line, expected):
    assert is_privilege_prompt(line) is expected


def test_strip_privilege_prompts():
    text = "[sudo] password for ubuntu:\nReading package lists...\nDone"
    assert strip_privilege_prompts(text) == "Reading package lists...\nDone"


# =============================================================================
# Context and formatting
# =============================================================================


def test_operation_id_round_trip(operation_id):
    assert get_operation_id() == operation_id


def test_context_filter_attaches_operation_id(operation_id):
    record = _record()

    assert ContextFilter().filter(record) is True
    assert record.operation_id == operation_id


def test_json_formatter_fields(operation_id):
    record = _record()
    ContextFilter().filter(record)

    payload = json.loads(CustomJsonFormatter().format(record))

    assert payload["message"] == "deployed"
    assert payload["level"] == "INFO"
    assert payload["component"] == "clarafleet.test"
    assert payload["operation_id"] == operation_id
    assert "timestamp" in payload


def test_setup_logging_console_only(isolated_root_logger):
    setup_logging(Settings(_env_file=None, log_level="WARNING"))

    assert isolated_root_logger.level == logging.WARNING
    assert len(isolated_root_logger.handlers) == 1


def test_setup_logging_json_console(isolated_root_logger):
    setup_logging(Settings(_env_file=None, log_json=True))
    assert isinstance(isolated_root_logger.handlers[0].formatter, CustomJsonFormatter)


def test_setup_logging_with_file(isolated_root_logger, tmp_path):
    log_file = tmp_path / "logs" / "clarafleet.log"

    setup_logging(Settings(_env_file=None, log_file_path=str(log_file)))
    for handler in isolated_root_logger.handlers:
        handler.flush()

    assert len(isolated_root_logger.handlers) == 2
    assert "Logging ready" in log_file.read_text()
    isolated_root_logger.handlers[1].close()
