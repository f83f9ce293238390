"""Shared utility functions for timestamps and request payload coercion.

as_utc:               normalise naive/aware datetimes to aware UTC
parse_datetime:       ISO / DD.MM.YYYY input → aware UTC datetime, None on bad input
parse_datetime_input: same, raising ValueError on bad input
parse_int_input:      int coercion raising ValueError with the field name
"""
import logging
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; those are taken to be UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse a datetime (ISO 8601, YYYY-MM-DD or DD.MM.YYYY) to aware UTC.

    Returns None for empty/invalid input. A bare date means midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").replace(tzinfo=timezone.utc)
    except (ValueError, TypeError):
        return None


def parse_datetime_input(value, field="date"):
    """Same as parse_datetime() but raises ValueError on bad input.

    Empty input still returns None; callers decide whether it is required.
    """
    if value in (None, ""):
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(
            f"Invalid {field} format. Use ISO 8601 (YYYY-MM-DDTHH:MM:SS) or DD.MM.YYYY."
        )
    return parsed


def parse_int_input(value, field):
    """Coerce *value* to int, raising ValueError naming *field* on failure."""
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be an integer") from exc
