# salonbook/services/slots/calendar.py
"""
Calendar model: weekly open/close windows of a staff member or tenant.

Stored as JSON. Accepted day keys, in lookup order:
  "monday" .. "sunday"   (admin settings format)
  "mon" .. "sun"
  "0" .. "6"             (0 = Monday)

Accepted day values:
  null                                          → closed
  {"start": "09:00", "end": "18:00",
   "closed": false, "breaks": [["12:00", "13:00"]]}
  [["09:00", "13:00"], ["14:00", "18:00"]]      → interval list, gaps are breaks

"breaks" is optional. When absent, the default lunch break 12:00-13:00
applies; an explicit empty list removes it.

A day missing from an otherwise valid schedule is closed. An absent or
malformed schedule falls back to DEFAULT_SCHEDULE so that booking stays
available.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date

from .config import time_str_to_minutes

logger = logging.getLogger(__name__)


DAY_KEYS = (
    ("monday", "mon", "0"),
    ("tuesday", "tue", "1"),
    ("wednesday", "wed", "2"),
    ("thursday", "thu", "3"),
    ("friday", "fri", "4"),
    ("saturday", "sat", "5"),
    ("sunday", "sun", "6"),
)

DEFAULT_BREAKS: tuple[tuple[int, int], ...] = ((12 * 60, 13 * 60),)


@dataclass(frozen=True)
class OperatingWindow:
    """Opening hours of one concrete date, in minutes since midnight."""
    start: int
    end: int
    breaks: tuple[tuple[int, int], ...] = ()

    def in_break(self, minute: int) -> bool:
        return any(b_start <= minute < b_end for b_start, b_end in self.breaks)


@dataclass(frozen=True)
class DaySchedule:
    is_open: bool
    start: int = 0
    end: int = 0
    breaks: tuple[tuple[int, int], ...] = DEFAULT_BREAKS


@dataclass(frozen=True)
class WeeklySchedule:
    # Index 0 = Monday; None = no entry (closed)
    days: tuple[DaySchedule | None, ...] = field(default=(None,) * 7)

    def day(self, weekday: int) -> DaySchedule | None:
        return self.days[weekday]


def _open(start: str, end: str) -> DaySchedule:
    return DaySchedule(
        is_open=True,
        start=time_str_to_minutes(start),
        end=time_str_to_minutes(end),
    )


DEFAULT_SCHEDULE = WeeklySchedule(days=(
    _open("09:00", "18:00"),
    _open("09:00", "18:00"),
    _open("09:00", "18:00"),
    _open("09:00", "18:00"),
    _open("09:00", "18:00"),
    _open("09:00", "17:00"),
    DaySchedule(is_open=False),
))


# ── Parsing ──────────────────────────────────────────────────────────────


def parse_weekly_schedule(raw) -> WeeklySchedule:
    """
    Parse a stored schedule (JSON text or already-decoded dict).

    Never raises: absent or malformed input returns DEFAULT_SCHEDULE.
    """
    if raw is None or raw == "":
        return DEFAULT_SCHEDULE

    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(data, dict):
            raise ValueError(f"schedule must be an object, got {type(data).__name__}")
        if not data:
            return DEFAULT_SCHEDULE
        days = tuple(_parse_day(_lookup_day(data, weekday)) for weekday in range(7))
    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Malformed work schedule, using default: {e}")
        return DEFAULT_SCHEDULE

    return WeeklySchedule(days=days)


def _lookup_day(data: dict, weekday: int):
    for key in DAY_KEYS[weekday]:
        if key in data:
            return data[key]
    return None


def _parse_day(value) -> DaySchedule | None:
    if value is None:
        return None

    # Interval list: [["09:00", "13:00"], ["14:00", "18:00"]]
    if isinstance(value, list):
        intervals = [_parse_interval(item) for item in value]
        if not intervals:
            return DaySchedule(is_open=False)
        intervals.sort()
        breaks = tuple(
            (prev_end, next_start)
            for (_, prev_end), (next_start, _) in zip(intervals, intervals[1:])
            if next_start > prev_end
        )
        return DaySchedule(
            is_open=True,
            start=intervals[0][0],
            end=max(end for _, end in intervals),
            breaks=breaks,
        )

    if not isinstance(value, dict):
        raise ValueError(f"day entry must be an object, list or null, got {value!r}")

    if value.get("closed") or value.get("open") is False:
        return DaySchedule(is_open=False)

    start, end = _parse_interval(value)

    if "breaks" in value and value["breaks"] is not None:
        breaks = tuple(sorted(_parse_interval(b) for b in value["breaks"]))
    else:
        breaks = DEFAULT_BREAKS

    return DaySchedule(is_open=True, start=start, end=end, breaks=breaks)


def _parse_interval(item) -> tuple[int, int]:
    if isinstance(item, dict):
        start, end = item["start"], item["end"]
    elif isinstance(item, (list, tuple)) and len(item) == 2:
        start, end = item
    else:
        raise ValueError(f"invalid interval: {item!r}")

    start_min = time_str_to_minutes(start)
    end_min = time_str_to_minutes(end)
    if start_min >= end_min:
        raise ValueError(f"interval start must be before end: {item!r}")
    return start_min, end_min


# ── Lookup ───────────────────────────────────────────────────────────────


def window_for(schedule: WeeklySchedule, target_date: date) -> OperatingWindow | None:
    """Operating window for target_date, or None when closed."""
    day = schedule.day(target_date.weekday())
    if day is None or not day.is_open:
        return None
    return OperatingWindow(start=day.start, end=day.end, breaks=day.breaks)
