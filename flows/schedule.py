"""Business-hours matching for schedule steps.

Days are numbered 0 (Sunday) to 6 (Saturday). Times are compared in
minutes since midnight in the branch timezone; end times are exclusive.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from flows.models import ScheduleBranch, ScheduleConfig, TimeSlot

DAY_PRESETS = {
    "weekdays": frozenset({1, 2, 3, 4, 5}),
    "weekends": frozenset({0, 6}),
    "everyday": frozenset(range(7)),
}


def _parse_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def slot_days(slot: TimeSlot) -> frozenset[int]:
    if isinstance(slot.days, str):
        return DAY_PRESETS[slot.days]
    return frozenset(slot.days)


def slot_matches(slot: TimeSlot, weekday: int, minute_of_day: int) -> bool:
    if weekday not in slot_days(slot):
        return False
    if slot.all_day:
        return True
    if not slot.start_time or not slot.end_time:
        return False
    return _parse_minutes(slot.start_time) <= minute_of_day < _parse_minutes(slot.end_time)


def local_now(tz_name: str, now: datetime | None = None) -> datetime:
    """Current time in the given zone. Unknown zones fall back to UTC."""
    now = now or datetime.now(timezone.utc)
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown schedule timezone {tz}, using UTC", tz=tz_name)
        tz = timezone.utc
    return now.astimezone(tz)


def match_branch(config: ScheduleConfig, now: datetime | None = None) -> ScheduleBranch | None:
    """Return the first branch with a slot covering `now`, or None for fallback."""
    local = local_now(config.timezone, now)
    # isoweekday: Monday=1..Sunday=7 → Sunday=0..Saturday=6
    weekday = local.isoweekday() % 7
    minute_of_day = local.hour * 60 + local.minute

    for branch in config.branches:
        if any(slot_matches(slot, weekday, minute_of_day) for slot in branch.time_slots):
            return branch
    return None
