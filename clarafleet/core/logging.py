"""Centralized logging configuration for the orchestration core.

Console and rotating-file output share one root configuration. Every record
is stamped with the id of the deployment or start call it belongs to, and
remote command output passes through the redaction helpers below before it
reaches a handler, so sudo prompts and passwords never land in a log.
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pythonjsonlogger.json import JsonFormatter

from clarafleet.core.config import get_settings

if TYPE_CHECKING:
    from clarafleet.core.config import Settings

REDACTED = "[REDACTED]"

# Credentials and paths stripped by sanitize_error
_PATH_PATTERN = re.compile(r"(/[^\s:]+)+")
_CREDENTIAL_PATTERNS = [
    re.compile(r"(password|passwd|secret|token|api[_-]?key|auth)[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"Bearer\s+\S+", re.IGNORECASE),
]

# Lines emitted by sudo when it asks for (or rejects) a password
_PRIVILEGE_PROMPT_MARKERS = (
    "[sudo] password",
    "Sorry, try again",
    "sudo: a password is required",
)

# Context variable for operation ID propagation (one per deploy/start call)
_operation_id: ContextVar[str | None] = ContextVar("operation_id", default=None)

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"


def get_operation_id() -> str | None:
    """Get the current operation ID from context."""
    return _operation_id.get()


def set_operation_id(operation_id: str | None) -> None:
    """Set the operation ID in context."""
    _operation_id.set(operation_id)


class ContextFilter(logging.Filter):
    """Stamps each record with the active operation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.operation_id = get_operation_id()  # type: ignore[attr-defined]
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON lines with a UTC timestamp, level, component and operation id."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["component"] = record.name

        if hasattr(record, "operation_id") and record.operation_id:
            log_record["operation_id"] = record.operation_id


def setup_logging(settings: Settings | None = None) -> None:
    """Install the console handler and, when log_file_path is set, a rotating file handler.

    Replaces any handlers already on the root logger, so calling it twice is safe.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    context_filter = ContextFilter()
    root_logger.addFilter(context_filter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    if settings.log_json:
        console_handler.setFormatter(CustomJsonFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root_logger.addHandler(console_handler)

    if settings.log_file_path:
        try:
            log_path = Path(settings.log_file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            file_handler.addFilter(context_filter)
            file_handler.setFormatter(logging.Formatter(TEXT_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"File logging disabled, cannot open {settings.log_file_path}: {e}")

    # SSH, engine and HTTP client libraries are chatty at INFO
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    root_logger.info(
        f"Logging ready (level={settings.log_level}, "
        f"file={settings.log_file_path or 'none'}, json={settings.log_json})"
    )


def sanitize_error(error: Exception | str, max_length: int = 500) -> str:
    """Shorten an error for a log line or an error response.

    ``key=value`` credentials and bearer tokens become ``[REDACTED]``, absolute
    paths keep only their last component (key files, sockets), and anything
    past ``max_length`` characters is cut.
    """
    msg = str(error)

    for pattern in _CREDENTIAL_PATTERNS:
        msg = pattern.sub(REDACTED, msg)

    def _simplify_path(match: re.Match[str]) -> str:
        path = match.group(0)
        parts = path.rsplit("/", 1)
        if len(parts) == 2:
            return f".../{parts[1]}"
        return path

    msg = _PATH_PATTERN.sub(_simplify_path, msg)

    if len(msg) > max_length:
        msg = msg[:max_length] + "...[truncated]"

    return msg


def redact(text: str, *secrets: str | None) -> str:
    """Replace every occurrence of the given secrets in text.

    Args:
        text: Text that may contain secrets (command output, error messages)
        *secrets: Secret values to mask; empty and None values are ignored

    Returns:
        Text with each secret replaced by ``[REDACTED]``
    """
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def is_privilege_prompt(line: str) -> bool:
    """Return True if the line is sudo prompt noise that must not reach logs."""
    return any(marker in line for marker in _PRIVILEGE_PROMPT_MARKERS)


def strip_privilege_prompts(text: str) -> str:
    """Drop sudo prompt lines from multi-line command output."""
    return "\n".join(line for line in text.splitlines() if not is_privilege_prompt(line))


def get_logger(name: str) -> logging.Logger:
    """Module logger; handlers come from setup_logging."""
    return logging.getLogger(name)
