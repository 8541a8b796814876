# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Interval arithmetic shared by schedules and thread lifetimes.

Intervals are written ``<n><unit>`` with unit ``min`` (minutes), ``h`` (hours),
``d`` (days) or ``M`` (calendar months; lowercase ``m`` is accepted as months too).
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from threadloom.errors import InvalidScheduleError

if TYPE_CHECKING:
    from .models import IntervalSchedule

_INTERVAL_PATTERN = re.compile(r"^(\d+)(min|h|d|M|m)$")
_UNIT_LIMITS = {"min": 59, "h": 24, "d": 31, "M": 12}
MAX_DAY_SEARCH = 365


@dataclass(frozen=True, slots=True)
class Interval:
    value: int
    unit: str


def parse_interval(text: str) -> Interval:
    match = _INTERVAL_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None:
        raise InvalidScheduleError(f"Invalid interval '{text}'. Use a format like '2min', '5h', '14d', '1M'")
    value = int(match.group(1))
    unit = "M" if match.group(2) == "m" else match.group(2)
    if value < 1:
        raise InvalidScheduleError(f"Invalid interval '{text}': value must be at least 1")
    return Interval(value=value, unit=unit)


def validate_interval(text: str) -> bool:
    try:
        interval = parse_interval(text)
    except InvalidScheduleError:
        return False
    return interval.value <= _UNIT_LIMITS[interval.unit]


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def add_interval(moment: datetime, interval: Interval | str) -> datetime:
    """Add ``interval`` to ``moment``; month steps clamp to the last day of the target month."""
    if isinstance(interval, str):
        interval = parse_interval(interval)
    if interval.unit == "min":
        return moment + timedelta(minutes=interval.value)
    if interval.unit == "h":
        return moment + timedelta(hours=interval.value)
    if interval.unit == "d":
        return moment + timedelta(days=interval.value)
    month_index = moment.month - 1 + interval.value
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def is_expired(created: datetime, lifetime: str, now: Optional[datetime] = None) -> bool:
    now = _as_utc(now or datetime.now(timezone.utc))
    return now >= add_interval(_as_utc(created), lifetime)


def _weekday(moment: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def calculate_next_run(
    schedule: "IntervalSchedule",
    from_date: Optional[datetime] = None,
    occurrences: int = 0,
) -> Optional[datetime]:
    """Next execution time after ``from_date``, or None once the schedule has ended."""
    interval = parse_interval(schedule.interval)
    start = _as_utc(schedule.start_timestamp)
    current = _as_utc(from_date or datetime.now(timezone.utc))
    candidate = start if current < start else add_interval(current, interval)

    end = schedule.end_condition
    if end is not None:
        if end.type == "occurrences" and occurrences >= int(end.value):
            return None
        if end.type == "end_timestamp" and candidate > end.end_timestamp:
            return None

    if schedule.days_of_week:
        for _ in range(MAX_DAY_SEARCH):
            if _weekday(candidate) in schedule.days_of_week:
                if end is not None and end.type == "end_timestamp" and candidate > end.end_timestamp:
                    return None
                return candidate
            candidate += timedelta(days=1)
        raise InvalidScheduleError("Could not find the next valid day within a year")
    return candidate


def should_execute_now(
    schedule: "IntervalSchedule",
    next_run: Optional[datetime],
    occurrences: int = 0,
    now: Optional[datetime] = None,
) -> bool:
    if next_run is None:
        return False
    now = _as_utc(now or datetime.now(timezone.utc))
    if _as_utc(next_run) > now:
        return False
    end = schedule.end_condition
    if end is not None:
        if end.type == "occurrences" and occurrences >= int(end.value):
            return False
        if end.type == "end_timestamp" and now > end.end_timestamp:
            return False
    return True
