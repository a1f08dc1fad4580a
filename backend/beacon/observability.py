from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping
from uuid import uuid4


REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("request_id", default="-")
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_LOGGING_CONFIGURED = False

# Caller credentials and the contact identifiers grant applications carry.
SECRET_KEY_NAMES = frozenset({"authorization", "cookie", "set_cookie", "email", "phone", "ein", "tax_id"})
SECRET_KEY_FRAGMENTS = ("token", "secret", "password")

# Proposal prose, evidence and reviewer statements are logged by size only.
FREE_TEXT_KEYS = frozenset(
    {
        "attestation_text",
        "resolution",
        "content",
        "requirements_text",
        "source_text",
        "source_texts",
        "generated_text",
        "evidence_text",
        "text",
    }
)

REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
    # Employer identification numbers on nonprofit filings: NN-NNNNNNN.
    (re.compile(r"\b\d{2}-\d{7}\b"), "[REDACTED_EIN]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
)


def normalize_request_id(candidate: str | None) -> str:
    if candidate:
        trimmed = candidate.strip()
        if REQUEST_ID_PATTERN.fullmatch(trimmed):
            return trimmed
    return str(uuid4())


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def reset_request_id(token: Token[str]) -> None:
    REQUEST_ID_CONTEXT.reset(token)


def get_request_id() -> str:
    return REQUEST_ID_CONTEXT.get()


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


def _is_secret_key(key: str) -> bool:
    return key in SECRET_KEY_NAMES or any(fragment in key for fragment in SECRET_KEY_FRAGMENTS)


def _text_size(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    return f"[{len(str(value))} chars]"


def _redact_string(value: str, *, max_length: int) -> str:
    redacted = value
    for pattern, replacement in REDACTIONS:
        redacted = pattern.sub(replacement, redacted)
    if len(redacted) > max_length:
        return f"{redacted[:max_length]}...[truncated]"
    return redacted


def sanitize_for_logging(value: Any, *, key: str | None = None, max_string_length: int = 240) -> Any:
    """Make ``value`` safe to log.

    ``key`` is the field name the value is logged under: secrets become
    ``[REDACTED]`` and free text is replaced by its size.
    """
    if value is None:
        return None

    if key is not None:
        normalized = _normalize_key(key)
        if _is_secret_key(normalized):
            return "[REDACTED]"
        if normalized in FREE_TEXT_KEYS:
            return _text_size(value)

    if isinstance(value, Mapping):
        return {
            str(item_key): sanitize_for_logging(item, key=str(item_key), max_string_length=max_string_length)
            for item_key, item in value.items()
        }

    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_for_logging(item, max_string_length=max_string_length) for item in value)

    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"

    if isinstance(value, str):
        return _redact_string(value, max_length=max_string_length)

    return value


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    _STANDARD_ATTRS = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", get_request_id()),
        }

        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS:
                continue
            payload[key] = sanitize_for_logging(value, key=key)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level_name: str) -> None:
    global _LOGGING_CONFIGURED
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    if _LOGGING_CONFIGURED:
        return

    if any(getattr(handler, "_beacon_handler", False) for handler in root.handlers):
        _LOGGING_CONFIGURED = True
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    setattr(handler, "_beacon_handler", True)
    root.addHandler(handler)
    _LOGGING_CONFIGURED = True
