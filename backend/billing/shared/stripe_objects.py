from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(key, default)
    try:
        return getattr(source, key, default)
    except KeyError:
        return default


def object_id(value: Any) -> str | None:
    """Return the id of an expanded Stripe object or the bare id string."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    resolved = safe_get(value, "id")
    return str(resolved) if resolved else None


def metadata_of(source: Any) -> dict[str, Any]:
    metadata = safe_get(source, "metadata") or {}
    if isinstance(metadata, dict):
        return metadata
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def first_line(invoice: Any) -> Any | None:
    lines = safe_get(invoice, "lines") or {}
    data = safe_get(lines, "data") or []
    return data[0] if data else None


def to_cents(value: Any) -> int:
    """Parse a cents value from metadata or a payload; junk reads as zero."""
    if value is None or value == "":
        return 0
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return 0


def first_positive_cents(*values: Any) -> int:
    for value in values:
        cents = to_cents(value)
        if cents > 0:
            return cents
    return 0


def date_from_unix(seconds: Any) -> date:
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        return datetime.fromtimestamp(seconds, tz=timezone.utc).date()
    return datetime.now(tz=timezone.utc).date()


def datetime_from_unix(seconds: Any) -> datetime | None:
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(seconds, datetime):
        return seconds.astimezone(timezone.utc)
    return None


def month_label(value: date) -> str:
    return value.strftime("%B %Y")
