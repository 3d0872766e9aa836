"""Civil-day windows evaluated in a user's timezone.

A "day" is the wall-clock range 00:00:00.000 to 23:59:59.999 on that date in
the given zone. Its absolute length varies across daylight-saving changes, so
both ends are built from the local date rather than by adding 24h to an instant.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from digestbot.core.errors import InvalidTimezone

DAY_START = time.min
DAY_END = time(23, 59, 59, 999000)


def resolve_timezone(tz: str | ZoneInfo) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    if not isinstance(tz, str) or not tz.strip():
        raise InvalidTimezone(str(tz))
    try:
        return ZoneInfo(tz.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezone(tz) from exc


def resolve_day_window(for_date: date, tz: str | ZoneInfo) -> tuple[datetime, datetime]:
    zone = resolve_timezone(tz)
    start = datetime.combine(for_date, DAY_START, tzinfo=zone)
    end = datetime.combine(for_date, DAY_END, tzinfo=zone)
    return start, end


def resolve_range_window(first: date, last: date, tz: str | ZoneInfo) -> tuple[datetime, datetime]:
    start, _ = resolve_day_window(first, tz)
    _, end = resolve_day_window(last, tz)
    return start, end


def local_today(tz: str | ZoneInfo, now: datetime | None = None) -> date:
    zone = resolve_timezone(tz)
    current = now or datetime.now(tz=zone)
    if current.tzinfo is None:
        current = current.replace(tzinfo=zone)
    return current.astimezone(zone).date()


def week_dates(start: date, days: int = 7) -> list[date]:
    return [start + timedelta(days=offset) for offset in range(days)]
