import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
    # API keys, webhook signing secrets, and payment/setup intent client secrets.
    (
        re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+\b|\bwhsec_[A-Za-z0-9]+\b|\b(?:pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+\b"),
        "[REDACTED_SECRET]",
    ),
    (re.compile(r"\bt=\d+,v1=[0-9a-f]+(?:,v0=[0-9a-f]+)?"), "[REDACTED_SIGNATURE]"),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*[^\s]+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)\b(?:bearer|basic)\s+[A-Za-z0-9._\-+/=]+"), "[REDACTED_TOKEN]"),
)

SENSITIVE_KEYS = frozenset(
    {
        "email",
        "phone",
        "authorization",
        "password",
        "token",
        "signature",
        "stripe_signature",
        "webhook_secret",
        "secret_key",
        "client_secret",
    }
)

LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("billing_log_context", default={})

_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def redact_text(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def scrub(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: scrub(v, k) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub(item) for item in value]
    return value


def update_log_context(**fields: Any) -> dict[str, Any]:
    """Merge non-None fields into the context attached to every log line."""
    merged = {**LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }
    # Event fields are passed as extra={"extra": {...}}.
    nested = fields.pop("extra", None)
    if isinstance(nested, dict):
        fields.update(nested)
    return fields


class RedactingJsonFormatter(logging.Formatter):
    """One JSON object per line, with PII and provider secrets masked."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }
        payload.update(scrub(LOG_CONTEXT.get()))
        payload.update(scrub(_structured_fields(record)))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
