"""
Wall-clock to UTC conversion for recurring slots.

Slots are stored as a weekday plus ``"HH:MM"`` in an IANA zone.  To turn
one into an instant we need the zone's offset *on that date*, not the
offset in effect today, otherwise slots drift by an hour across DST.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reelqueue.exceptions import ValidationError

_TIME_RE = re.compile(r"^(\d{2}):(\d{2})(?::\d{2})?$")


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Parse ``"HH:MM"`` into ``(hour, minute)``.

    A trailing ``":SS"`` (Postgres ``time`` columns) is accepted and ignored.

    Raises:
        ValidationError: If the value is malformed or out of range.
    """
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValidationError(f"time_of_day must be HH:MM, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"time_of_day out of range: {value!r}")
    return hour, minute


def validate_timezone(name: str) -> ZoneInfo:
    """Return the ``ZoneInfo`` for *name*.

    Raises:
        ValidationError: If *name* is not a known IANA zone.
    """
    if not name:
        raise ValidationError("timezone cannot be empty")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}") from exc


def day_of_week(day: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def local_date_of(instant: datetime, tz_name: str) -> date:
    """Calendar date of *instant* as seen in *tz_name*."""
    return instant.astimezone(validate_timezone(tz_name)).date()


def _offset_at(instant: datetime, zone: ZoneInfo) -> timedelta:
    """Zone offset at *instant*, read off the zone's wall clock."""
    wall_clock = instant.astimezone(zone).replace(tzinfo=None)
    return wall_clock - instant.replace(tzinfo=None)


def local_time_to_utc(calendar_date: date, time_of_day: str, tz_name: str) -> datetime:
    """Convert a local wall-clock time on *calendar_date* to an aware UTC instant.

    Takes the wall-clock value as if it were UTC, reads what the zone's
    clock shows at that instant, and treats the difference as the zone's
    offset for that date.  Subtracting it yields the real instant.

    On a transition day the offset at the as-if-UTC instant can differ
    from the one in effect at the requested local time, so the offsets
    of the surrounding days are tried too and the earliest instant whose
    wall clock reads *time_of_day* wins.  A wall-clock time skipped by
    a spring-forward gap resolves with the pre-transition offset, i.e.
    it moves forward by the gap.

    Example: 09:00 in America/New_York is 14:00 UTC in January and
    13:00 UTC in July.
    """
    hour, minute = parse_time_of_day(time_of_day)
    zone = validate_timezone(tz_name)

    as_if_utc = datetime(
        calendar_date.year, calendar_date.month, calendar_date.day,
        hour, minute, tzinfo=timezone.utc,
    )
    wanted = as_if_utc.replace(tzinfo=None)

    before = _offset_at(as_if_utc - timedelta(days=1), zone)
    after = _offset_at(as_if_utc + timedelta(days=1), zone)
    offsets = {_offset_at(as_if_utc, zone), before, after}
    matches = [
        as_if_utc - offset
        for offset in offsets
        if (as_if_utc - offset).astimezone(zone).replace(tzinfo=None) == wanted
    ]
    if matches:
        return min(matches)
    return as_if_utc - before


__all__ = [
    "parse_time_of_day",
    "validate_timezone",
    "day_of_week",
    "local_date_of",
    "local_time_to_utc",
]
