from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    # Chat webhook URLs embed their credential in the path.
    (
        re.compile(r"(?i)(https://hooks\.slack\.com/services/)([^\s\"']+)"),
        r"\1[REDACTED]",
    ),
)

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))


def configure_logging(env: Mapping[str, str] | None = None) -> logging.Handler:
    """Install one root handler: JSON when ``LOG_FORMAT=json``, plain text otherwise.

    The level comes from ``LOG_LEVEL`` (default ``INFO``).
    """
    values = env if env is not None else os.environ
    log_level = values.get("LOG_LEVEL", "INFO").strip().upper()
    log_format = values.get("LOG_FORMAT", "").strip().lower()

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(RedactingFormatter(PLAIN_FORMAT))
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    return handler
