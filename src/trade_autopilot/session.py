"""US equity session helpers keyed on America/New_York wall-clock time."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from zoneinfo import ZoneInfo

SessionTag = Literal["PRE", "RTH", "POST", "CLOSED"]

ET = ZoneInfo("America/New_York")
SESSION_TAGS: tuple[SessionTag, ...] = ("PRE", "RTH", "POST", "CLOSED")

_PRE_OPEN_MIN = 4 * 60
_RTH_OPEN_MIN = 9 * 60 + 30
_RTH_CLOSE_MIN = 16 * 60
_POST_CLOSE_MIN = 20 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def session_tag_from_et_time(hour: int, minute: int) -> SessionTag:
    mins = hour * 60 + minute
    if _PRE_OPEN_MIN <= mins < _RTH_OPEN_MIN:
        return "PRE"
    if _RTH_OPEN_MIN <= mins < _RTH_CLOSE_MIN:
        return "RTH"
    if _RTH_CLOSE_MIN <= mins < _POST_CLOSE_MIN:
        return "POST"
    return "CLOSED"


def et_date_for(moment: datetime) -> str:
    """Trading-day key (YYYY-MM-DD) in New York time."""
    return moment.astimezone(ET).date().isoformat()


def session_tag_for(moment: datetime) -> SessionTag:
    local = moment.astimezone(ET)
    return session_tag_from_et_time(local.hour, local.minute)


def derive_session(moment: datetime) -> tuple[str, SessionTag]:
    """Return ``(et_date, session_tag)`` for one instant."""
    return et_date_for(moment), session_tag_for(moment)


def normalize_session_tag(value: object) -> SessionTag | None:
    raw = str(value or "").strip().upper()
    for tag in SESSION_TAGS:
        if raw == tag:
            return tag
    return None


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0
