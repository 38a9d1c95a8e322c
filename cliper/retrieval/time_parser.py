"""
Cliper Reminder Time Parser
---------------------------
Resolves the time phrase of a reminder request ("in 20 minutes",
"tomorrow at 9am", "on 2026-03-14 at 18:30", "next friday") to a single
due timestamp.

Design Principles:
- Pure regex/rule-based, stateless
- Most specific patterns are tried first
- Returns None when no phrase is recognised; the caller picks a default
- Wall-clock phrases resolve in ``tz`` (UTC unless given)
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional, Tuple

DEFAULT_HOUR = 9
TONIGHT_HOUR = 20

_UNIT_SECONDS = {
    "minute": 60, "minutes": 60, "min": 60, "mins": 60,
    "hour": 3600, "hours": 3600, "hr": 3600, "hrs": 3600,
    "day": 86400, "days": 86400,
    "week": 604800, "weeks": 604800,
}

_WORD_NUMBERS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "ten": 10, "fifteen": 15, "twenty": 20, "thirty": 30, "half an": 0.5,
}

_WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

_UNIT_PAT = "|".join(sorted(_UNIT_SECONDS, key=len, reverse=True))
_NUMBER_PAT = r"\d+(?:\.\d+)?|" + "|".join(sorted(_WORD_NUMBERS, key=len, reverse=True))
_WEEKDAY_PAT = "|".join(sorted(_WEEKDAYS, key=len, reverse=True))
_TIME_PAT = r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<ampm>am|pm|a\.m\.|p\.m\.)?"


@dataclass
class DueTime:
    due: float
    phrase: str


_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(
        r"\bin\s+(?P<n>" + _NUMBER_PAT + r")\s+(?P<unit>" + _UNIT_PAT + r")\b",
        re.IGNORECASE,
    ), "relative"),
    (re.compile(
        r"\bon\s+(?P<date>\d{4}-\d{1,2}-\d{1,2})(?:\s+at\s+" + _TIME_PAT + r")?",
        re.IGNORECASE,
    ), "date"),
    (re.compile(
        r"\btomorrow(?:\s+(?:at\s+)?" + _TIME_PAT + r")?",
        re.IGNORECASE,
    ), "tomorrow"),
    (re.compile(r"\btonight\b", re.IGNORECASE), "tonight"),
    (re.compile(
        r"\b(?:next|on)\s+(?P<weekday>" + _WEEKDAY_PAT + r")\b(?:\s+at\s+" + _TIME_PAT + r")?",
        re.IGNORECASE,
    ), "weekday"),
    (re.compile(r"\bat\s+" + _TIME_PAT + r"\b", re.IGNORECASE), "clock"),
]


def _clock(match: re.Match, default_hour: int) -> Optional[Tuple[int, int]]:
    hour_raw = match.groupdict().get("hour")
    if hour_raw is None:
        return default_hour, 0
    hour = int(hour_raw)
    minute = int(match.group("minute") or 0)
    ampm = (match.group("ampm") or "").replace(".", "").lower()
    if ampm == "pm" and hour < 12:
        hour += 12
    elif ampm == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _at(day: datetime, clock: Tuple[int, int]) -> datetime:
    return day.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0)


def _relative(m: re.Match, now: datetime) -> Optional[datetime]:
    raw = m.group("n").lower()
    amount = _WORD_NUMBERS.get(raw)
    if amount is None:
        amount = float(raw)
    return now + timedelta(seconds=amount * _UNIT_SECONDS[m.group("unit").lower()])


def _date(m: re.Match, now: datetime) -> Optional[datetime]:
    try:
        day = datetime.strptime(m.group("date"), "%Y-%m-%d").replace(tzinfo=now.tzinfo)
    except ValueError:
        return None
    clock = _clock(m, DEFAULT_HOUR)
    return _at(day, clock) if clock else None


def _tomorrow(m: re.Match, now: datetime) -> Optional[datetime]:
    clock = _clock(m, DEFAULT_HOUR)
    return _at(now + timedelta(days=1), clock) if clock else None


def _tonight(m: re.Match, now: datetime) -> Optional[datetime]:
    due = _at(now, (TONIGHT_HOUR, 0))
    return due if due > now else now + timedelta(hours=1)


def _weekday(m: re.Match, now: datetime) -> Optional[datetime]:
    target = _WEEKDAYS[m.group("weekday").lower()]
    days_ahead = (target - now.weekday()) % 7 or 7
    clock = _clock(m, DEFAULT_HOUR)
    return _at(now + timedelta(days=days_ahead), clock) if clock else None


def _clock_today(m: re.Match, now: datetime) -> Optional[datetime]:
    clock = _clock(m, DEFAULT_HOUR)
    if clock is None:
        return None
    due = _at(now, clock)
    if due <= now:
        due += timedelta(days=1)
    return due


_HANDLERS: Dict[str, Callable[[re.Match, datetime], Optional[datetime]]] = {
    "relative": _relative,
    "date": _date,
    "tomorrow": _tomorrow,
    "tonight": _tonight,
    "weekday": _weekday,
    "clock": _clock_today,
}


def parse_due_time(
    text: str,
    reference_time: Optional[float] = None,
    tz: Optional[tzinfo] = None,
) -> Optional[DueTime]:
    """Return the first resolvable time phrase in ``text``, or None."""
    now_ts = reference_time if reference_time is not None else time.time()
    now = datetime.fromtimestamp(now_ts, tz=tz or timezone.utc)
    for pattern, key in _PATTERNS:
        m = pattern.search(text)
        if m is None:
            continue
        due = _HANDLERS[key](m, now)
        if due is not None:
            return DueTime(due=due.timestamp(), phrase=m.group(0).strip())
    return None
