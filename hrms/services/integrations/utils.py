from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from flask import current_app, has_app_context

DEFAULT_TIMEOUT_SECONDS = 15.0


def get_timeout(default: float = DEFAULT_TIMEOUT_SECONDS) -> float:
    """Read the HTTP timeout for platform calls, falling back to a sane default."""
    if not has_app_context():
        return default
    value = current_app.config.get("INTEGRATION_HTTP_TIMEOUT")
    try:
        timeout = float(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return timeout if timeout > 0 else default


def normalize_base_url(url: str) -> str:
    """Return ``scheme://host[/path]`` without trailing slash, query or fragment."""
    value = (url or "").strip()
    if not value:
        raise ValueError("Base URL is required.")
    if "://" not in value:
        value = f"https://{value}"
    parsed = urlsplit(value)
    if not parsed.hostname:
        raise ValueError("Base URL must include a hostname.")
    path = parsed.path.rstrip("/")
    normalized = parsed._replace(path=path, query="", fragment="")
    return urlunsplit(normalized)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce a platform timestamp into a naive UTC datetime for storage."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        elif len(text) > 5 and text[-5] in "+-" and ":" not in text[-5:]:
            if text[-4:].isdigit():
                text = f"{text[:-5]}{text[-5:-2]}:{text[-2:]}"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` (or a datetime) into a ``date``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD.") from exc
    raise ValueError(f"Invalid date value: {value!r}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
