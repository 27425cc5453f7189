"""Timestamp helpers shared by the snapshot extractor and the stores.

Stripe sends epoch seconds; Supabase metadata holds ISO-8601 strings.
Everything in between is a tz-aware UTC datetime.
"""
from datetime import datetime, timezone
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> Optional[datetime]:
    """Parse epoch seconds, ISO strings or datetimes into a UTC datetime.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Unparseable epoch timestamp: %s", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return to_datetime(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_datetime(datetime.fromisoformat(text))
        except ValueError:
            logger.warning("Unparseable timestamp string: %s", value)
            return None
    return None


def to_iso(value: Any) -> Optional[str]:
    parsed = to_datetime(value)
    return parsed.isoformat() if parsed else None
