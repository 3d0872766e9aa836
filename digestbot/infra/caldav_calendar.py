from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

import caldav
from icalendar import Calendar

from digestbot.core.errors import SourceFetchFailed
from digestbot.core.models import UNTITLED_EVENT, CalendarEvent
from digestbot.core.sources import SourceClient
from digestbot.infra.config import Settings

LOGGER = logging.getLogger(__name__)

SOURCE_PREFIX = "caldav"


@dataclass(frozen=True)
class CalDAVConfig:
    url: str
    username: str
    password: str


def load_caldav_config(settings: Settings) -> CalDAVConfig | None:
    if not settings.caldav_configured:
        return None
    return CalDAVConfig(
        url=settings.caldav_url or "",
        username=settings.caldav_username or "",
        password=settings.caldav_password or "",
    )


class CalDAVCalendarClient(SourceClient):
    """Reads calendars from one CalDAV server; a source id is the calendar's display name.

    The server account comes from configuration, so the per-user credential is unused.
    """

    def __init__(self, config: CalDAVConfig) -> None:
        self._config = config

    async def fetch_events(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> list[CalendarEvent]:
        return await self._run(source_id, self._fetch_events_sync, source_id, start, end)

    async def resolve_source_name(self, source_id: str, credential: str) -> str:
        return await self._run(source_id, self._resolve_name_sync, source_id)

    async def list_sources(self, credential: str) -> list[tuple[str, str]]:
        return await self._run(SOURCE_PREFIX, self._list_sources_sync)

    async def _run(self, source_id: str, func, *args: Any):
        try:
            return await asyncio.to_thread(func, *args)
        except SourceFetchFailed:
            raise
        except Exception as exc:
            LOGGER.warning("CalDAV request failed: source_id=%s error=%s", source_id, exc.__class__.__name__)
            raise SourceFetchFailed(f"{SOURCE_PREFIX}:{source_id}", exc) from exc

    def _calendars(self) -> list[object]:
        client = caldav.DAVClient(url=self._config.url, username=self._config.username, password=self._config.password)
        return list(client.principal().calendars())

    def _find_calendar(self, source_id: str) -> object:
        target = source_id.strip().lower()
        for calendar in self._calendars():
            name = _calendar_name(calendar)
            if isinstance(name, str) and name.strip().lower() == target:
                return calendar
        raise SourceFetchFailed(f"{SOURCE_PREFIX}:{source_id}", "calendar_not_found")

    def _fetch_events_sync(self, source_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        calendar = self._find_calendar(source_id)
        results = calendar.search(
            start=start.astimezone(timezone.utc),
            end=end.astimezone(timezone.utc),
            event=True,
            expand=True,
        )
        zone = start.tzinfo or timezone.utc
        events: list[CalendarEvent] = []
        for resource in results:
            events.extend(parse_ical_events(getattr(resource, "data", None), zone))
        return events

    def _resolve_name_sync(self, source_id: str) -> str:
        return _calendar_name(self._find_calendar(source_id)) or source_id

    def _list_sources_sync(self) -> list[tuple[str, str]]:
        sources: list[tuple[str, str]] = []
        for calendar in self._calendars():
            name = _calendar_name(calendar)
            if name:
                sources.append((name, name))
        return sources


def _calendar_name(calendar) -> str | None:
    name_attr = getattr(calendar, "name", None)
    name = name_attr() if callable(name_attr) else name_attr
    if isinstance(name, str) and name:
        return name
    try:
        props = calendar.get_properties([caldav.elements.dav.DisplayName()])
    except Exception:
        return None
    display = props.get(caldav.elements.dav.DisplayName())
    if display is None:
        return None
    value = display.value if hasattr(display, "value") else display
    return str(value) if value else None


def parse_ical_events(data: Any, zone: tzinfo) -> list[CalendarEvent]:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="ignore")
    if not isinstance(data, str) or not data.strip():
        return []
    events: list[CalendarEvent] = []
    for component in Calendar.from_ical(data).walk("VEVENT"):
        start_raw = component.decoded("dtstart", None)
        if start_raw is None:
            continue
        is_all_day = not isinstance(start_raw, datetime)
        start_time = _to_datetime(start_raw, zone)
        end_raw = component.decoded("dtend", None)
        if end_raw is not None:
            end_time = _to_datetime(end_raw, zone)
        elif component.get("duration") is not None:
            end_time = start_time + component.decoded("duration")
        elif is_all_day:
            end_time = start_time + timedelta(days=1)
        else:
            end_time = None
        summary = component.get("summary")
        events.append(
            CalendarEvent(
                id=str(component.get("uid") or ""),
                title=str(summary) if summary else UNTITLED_EVENT,
                start_time=start_time,
                end_time=end_time,
                is_all_day=is_all_day,
            )
        )
    return events


def _to_datetime(value: date | datetime, zone: tzinfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=zone)
    return datetime.combine(value, time.min, tzinfo=zone)
