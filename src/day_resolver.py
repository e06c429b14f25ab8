"""Resolve which day a message is about.

The reference day always comes from the tenant's fixed time zone, never
from the user, so the assistant never has to ask "what day is it?".  An
explicit weekday in the message overrides it; "tomorrow"/"kal" and
"today"/"aaj" are resolved relative to it.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from src.config import TENANT_TIMEZONE

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_WEEKDAY_RE = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")", re.IGNORECASE)
_TOMORROW_RE = re.compile(r"\b(tomorrow|kal)\b", re.IGNORECASE)
_TODAY_RE = re.compile(r"\b(today|aaj)\b", re.IGNORECASE)


def tenant_now(tz_name: str = TENANT_TIMEZONE) -> datetime:
    """Current time in the tenant's time zone."""
    return datetime.now(ZoneInfo(tz_name))


def _to_tenant_tz(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(ZoneInfo(tz_name))


def _day_name(moment: datetime) -> str:
    return WEEKDAYS[moment.weekday()].capitalize()


def detect_explicit_day(user_text: str, now: datetime, tz_name: str = TENANT_TIMEZONE) -> str | None:
    """Return the day named or implied by *user_text*, or ``None``.

    When several weekday names appear, the one earliest in the text wins.
    """
    text = user_text or ""
    reference = _to_tenant_tz(now, tz_name)

    match = _WEEKDAY_RE.search(text)
    if match:
        return match.group(1).lower().capitalize()
    if _TOMORROW_RE.search(text):
        return _day_name(reference + timedelta(days=1))
    if _TODAY_RE.search(text):
        return _day_name(reference)
    return None


def resolve(user_text: str, now: datetime, tz_name: str = TENANT_TIMEZONE) -> str:
    """Return the effective day name (e.g. ``"Monday"``) for this message."""
    explicit = detect_explicit_day(user_text, now, tz_name)
    if explicit:
        return explicit
    return _day_name(_to_tenant_tz(now, tz_name))
