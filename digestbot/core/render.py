"""Digest text for a day or a week of merged events.

Pure formatting: no I/O and no failure modes. Missing fields get placeholders.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Mapping
from zoneinfo import ZoneInfo

from digestbot.core.errors import InvalidTimezone
from digestbot.core.models import CalendarEvent
from digestbot.core.time_window import resolve_timezone

EMPTY_DAY_TEXT = "No events scheduled."
EMPTY_WEEK_DAY_TEXT = "No events"
UNKNOWN_TIME = "??:??"


def _render_zone(tz: str | ZoneInfo) -> ZoneInfo:
    try:
        return resolve_timezone(tz)
    except InvalidTimezone:
        return ZoneInfo("UTC")


def _format_time(value: datetime | None, zone: ZoneInfo) -> str:
    if value is None:
        return UNKNOWN_TIME
    return value.astimezone(zone).strftime("%H:%M")


def _format_date(value: date) -> str:
    return f"{value:%a} {value.day} {value:%b}"


def _count_label(count: int) -> str:
    return f"{count} event{'' if count == 1 else 's'}"


def _event_lines(events: Iterable[CalendarEvent], zone: ZoneInfo) -> list[str]:
    items = list(events)
    all_day = [event for event in items if event.is_all_day]
    timed = [event for event in items if not event.is_all_day]
    lines = [f"All day: {event.title} [{event.source_name}]" for event in all_day]
    if all_day and timed:
        lines.append("")
    for event in timed:
        start = _format_time(event.start_time, zone)
        end = _format_time(event.end_time, zone)
        lines.append(f"{start} - {end}  {event.title} [{event.source_name}]")
    return lines


def render_day(events: Iterable[CalendarEvent], for_date: date, label: str, tz: str | ZoneInfo) -> str:
    zone = _render_zone(tz)
    items = list(events)
    header = f"📅 {label} ({_format_date(for_date)})"
    if not items:
        return f"{header}\n\n{EMPTY_DAY_TEXT}"
    body = "\n".join(_event_lines(items, zone))
    return f"{header}\n\n{body}\n\n{_count_label(len(items))}"


def render_week(events_by_date: Mapping[date, Iterable[CalendarEvent]], tz: str | ZoneInfo) -> str:
    """Render days in the caller's order, then the total count across all of them."""
    zone = _render_zone(tz)
    dates = list(events_by_date)
    if dates:
        header = f"📅 Week of {_format_date(dates[0])}"
    else:
        header = "📅 Week"
    sections: list[str] = []
    total = 0
    for day in dates:
        items = list(events_by_date[day])
        total += len(items)
        lines = _event_lines(items, zone) or [EMPTY_WEEK_DAY_TEXT]
        sections.append("\n".join([_format_date(day), *lines]))
    footer = _count_label(total) if total else EMPTY_DAY_TEXT
    return "\n\n".join([header, *sections, footer])
