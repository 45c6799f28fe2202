"""Utility helpers for guestpass."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import UTC, datetime
from typing import Callable

Clock = Callable[[], datetime]

_manage_path = re.compile(r"(/manage/)[^/?#\s\"]+")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def hash_identifier(value: str) -> str:
    """Return an opaque SHA-256 hex digest for rate limiting and logs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def mask_email(email: str | None) -> str:
    """Mask an email address for logging: ``john@example.com`` -> ``j***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def redact_manage_paths(text: str) -> str:
    """Replace the token segment of any ``/manage/<token>`` path."""
    return _manage_path.sub(r"\1[redacted]", text)


class RedactTokenFilter(logging.Filter):
    """Strip capability tokens from access log records.

    Uvicorn's access logger passes the request path as one of the record
    args, so the args are rewritten before formatting.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_manage_paths(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_manage_paths(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def install_access_log_redaction(logger_name: str = "uvicorn.access") -> None:
    target = logging.getLogger(logger_name)
    if not any(isinstance(f, RedactTokenFilter) for f in target.filters):
        target.addFilter(RedactTokenFilter())
