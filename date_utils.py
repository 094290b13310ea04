"""
Date helpers for task frontmatter.

Stored dates are either date-only strings (YYYY-MM-DD) or ISO-8601 date-times with a
'T' component. Comparisons happen on UTC-normalized datetimes; callers keep the
original shape when writing values back.
Also resolves relative phrases ('today', 'tomorrow', 'friday') to ISO dates in the user's timezone.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

from zoneinfo import ZoneInfo

# Already ISO date
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_COMPONENT = re.compile(r"T\d{2}:\d{2}")


class InvalidDateError(ValueError):
    """A user-supplied or stored date string could not be parsed."""


def _today_in_tz(tz_name: str) -> date:
    name = (tz_name or "").strip() or "UTC"
    tz = ZoneInfo(name)
    return datetime.now(tz).date()


def _safe_today(tz_name: str) -> date:
    """Today in tz_name, or the host's date when the zone is unknown."""
    try:
        return _today_in_tz(tz_name)
    except Exception:
        return date.today()


def parse_date_to_utc(value: str) -> datetime:
    """
    Parse a stored date string into an aware UTC datetime.
    Date-only values map to midnight UTC; date-times without an offset are taken as UTC.
    Raises InvalidDateError for empty or unparseable input.
    """
    if not value or not str(value).strip():
        raise InvalidDateError("Date string cannot be empty")
    raw = str(value).strip()
    if _ISO_DATE.match(raw):
        try:
            d = date.fromisoformat(raw)
        except ValueError as e:
            raise InvalidDateError(f'Invalid date "{value}".') from e
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    try:
        if raw.endswith("Z"):
            dt = datetime.fromisoformat(raw[:-1] + "+00:00")
        else:
            dt = datetime.fromisoformat(raw)
    except ValueError as e:
        raise InvalidDateError(f'Invalid date "{value}".') from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def try_parse_date(value: Any) -> datetime | None:
    """parse_date_to_utc that returns None instead of raising (non-strings included)."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_date_to_utc(value)
    except InvalidDateError:
        return None


def format_date_utc(dt: datetime) -> str:
    """YYYY-MM-DD of the UTC calendar day."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d")


def get_current_date_string(tz_name: str = "UTC") -> str:
    return _safe_today(tz_name).isoformat()


def validate_date_string(value: str) -> str:
    """Return value unchanged if it is a real YYYY-MM-DD date; raise InvalidDateError otherwise."""
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise InvalidDateError(f'Invalid date "{value}". Expected YYYY-MM-DD.')
    parse_date_to_utc(value)
    return value


def resolve_date_or_today(value: str | None = None, tz_name: str = "UTC") -> str:
    if not value:
        return get_current_date_string(tz_name)
    return validate_date_string(value)


def has_time_component(value: str | None) -> bool:
    if not value:
        return False
    return bool(_TIME_COMPONENT.search(value))


def get_date_part(value: str) -> str:
    """Calendar-date portion of a stored date string."""
    if not value:
        return ""
    if _ISO_DATE.match(value):
        return value
    if "T" in value:
        return value.split("T", 1)[0]
    return format_date_utc(parse_date_to_utc(value))


def is_same_date_safe(a: str, b: str) -> bool:
    try:
        return parse_date_to_utc(get_date_part(a)) == parse_date_to_utc(get_date_part(b))
    except (InvalidDateError, TypeError):
        return False


def is_before_date_safe(a: str, b: str) -> bool:
    """True if the calendar day of a is strictly before that of b. False on bad input."""
    try:
        return parse_date_to_utc(get_date_part(a)) < parse_date_to_utc(get_date_part(b))
    except (InvalidDateError, TypeError):
        return False


def local_iso_string(dt: datetime | None = None) -> str:
    """ISO-8601 timestamp with the local UTC offset, seconds precision (e.g. 2024-01-01T09:30:00+01:00)."""
    dt = dt or datetime.now().astimezone()
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.isoformat(timespec="seconds")


def stringify_date_value(value: Any) -> Any:
    """YAML loads bare dates as date/datetime objects; turn them back into ISO strings."""
    if isinstance(value, datetime):
        if value.tzinfo is not None and value.utcoffset() == timedelta(0):
            return value.strftime("%Y-%m-%dT%H:%M:%SZ")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, list):
        return [stringify_date_value(v) for v in value]
    if isinstance(value, dict):
        return {k: stringify_date_value(v) for k, v in value.items()}
    return value


def resolve_date_expression(value: str | None, tz_name: str = "UTC") -> str | None:
    """
    Resolve list query date expressions to YYYY-MM-DD.
    Supports: "today", "today+3", "today-1", "tomorrow", "tomorrow+1", "tomorrow-1",
    "yesterday" (no spaces around +/-).
    """
    if not value or not str(value).strip():
        return None
    raw = str(value).strip().lower()
    if _ISO_DATE.match(raw):
        return raw
    today = _safe_today(tz_name)
    m = re.match(r"^(today|tomorrow|yesterday)(?:([+-])(\d+))?$", raw)
    if not m:
        return None
    base = {"today": 0, "tomorrow": 1, "yesterday": -1}[m.group(1)]
    shift = int(m.group(3) or 0)
    if m.group(2) == "-":
        shift = -shift
    return (today + timedelta(days=base + shift)).isoformat()


_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_RELATIVE_RE = re.compile(r"^(?:in\s+(\d+)\s+days?|in a week|next week|(?:next\s+)?(\w+day))$")


def resolve_relative_date(value: str | None, tz_name: str = "UTC") -> str | None:
    """
    Task-text date phrase to YYYY-MM-DD in the user's timezone, or None.
    Handles what resolve_date_expression does plus 'in N days', 'next week' and weekday
    names (the next such day, never today). A leading due/scheduled/on is ignored.
    """
    raw = re.sub(r"^(due|scheduled|on)\s+", "", str(value or "").strip().lower())
    resolved = resolve_date_expression(raw, tz_name)
    if resolved or not raw:
        return resolved
    m = _RELATIVE_RE.match(raw)
    if not m or (m.group(2) and m.group(2) not in _WEEKDAYS):
        return None
    today = _safe_today(tz_name)
    if m.group(2):
        days = (_WEEKDAYS.index(m.group(2)) - today.weekday()) % 7 or 7
    else:
        days = int(m.group(1)) if m.group(1) else 7
    return (today + timedelta(days=days)).isoformat()


def format_date_friendly(iso_date: str | None, tz_name: str = "UTC") -> str:
    """
    Format a stored date for terminal output: "today", "yesterday", "tomorrow", or the date part.
    """
    if not iso_date:
        return ""
    part = get_date_part(str(iso_date).strip()) if _ISO_DATE.match(str(iso_date)[:10]) else str(iso_date)
    if not _ISO_DATE.match(part):
        return str(iso_date)
    today = _safe_today(tz_name)
    try:
        d_date = date.fromisoformat(part)
    except ValueError:
        return str(iso_date)
    if d_date == today:
        return "today"
    if d_date == today + timedelta(days=1):
        return "tomorrow"
    if d_date == today - timedelta(days=1):
        return "yesterday"
    return part
