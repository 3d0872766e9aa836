"""Fan-out over a user's calendars and merge the results into one ordered list.

Every configured source is fetched concurrently and the call waits until all of
them have settled. A failing source is recorded in ``failed_sources`` and left
out of the merge; it never aborts the aggregation. Pre-flight problems (unknown
user, no credential, bad timezone) are raised before any network call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Iterable, Protocol

from digestbot.core.errors import NotLinked, SourceFetchFailed, UserNotFound
from digestbot.core.models import AggregationResult, CalendarEvent, DayAggregation, UserSchedule
from digestbot.core.sources import SourceClient
from digestbot.core.time_window import resolve_day_window, resolve_range_window, resolve_timezone

LOGGER = logging.getLogger(__name__)


class ScheduleLookup(Protocol):
    def get(self, user_id: int) -> UserSchedule | None: ...


class CredentialLookup(Protocol):
    def has_linked_credential(self, user_id: int) -> bool: ...

    def get_credential(self, user_id: int) -> str: ...


def _sort_key(event: CalendarEvent) -> tuple[int, bool, float]:
    start = event.start_time
    return (0 if event.is_all_day else 1, start is None, start.timestamp() if start is not None else 0.0)


def sort_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """All-day before timed, then by start; stable for equal keys, missing starts last."""
    return sorted(events, key=_sort_key)


def _overlaps(event: CalendarEvent, start: datetime, end: datetime) -> bool:
    begin = event.start_time
    if begin is None:
        return False
    finish = event.end_time
    if finish is None or finish <= begin:
        return start <= begin <= end
    return begin <= end and finish > start


class Aggregator:
    def __init__(
        self,
        *,
        directory: ScheduleLookup,
        credentials: CredentialLookup,
        source_client: SourceClient,
    ) -> None:
        self._directory = directory
        self._credentials = credentials
        self._client = source_client

    def _preflight(self, user_id: int) -> tuple[UserSchedule, str]:
        schedule = self._directory.get(user_id)
        if schedule is None:
            raise UserNotFound(user_id)
        if not self._credentials.has_linked_credential(user_id):
            raise NotLinked(user_id)
        resolve_timezone(schedule.timezone)
        return schedule, self._credentials.get_credential(user_id)

    async def aggregate(self, user_id: int, for_date: date) -> AggregationResult:
        schedule, credential = self._preflight(user_id)
        start, end = resolve_day_window(for_date, schedule.timezone)
        events, failed = await self._fan_out(schedule, start, end, credential)
        LOGGER.info(
            "Aggregation done: user_id=%s date=%s events=%s failed_sources=%s",
            user_id,
            for_date.isoformat(),
            len(events),
            sorted(failed),
        )
        return AggregationResult(events=tuple(sort_events(events)), failed_sources=failed)

    async def aggregate_days(self, user_id: int, dates: list[date]) -> DayAggregation:
        """Fetch the whole date range once and bucket events onto each day they overlap."""
        schedule, credential = self._preflight(user_id)
        if not dates:
            return DayAggregation(days={})
        start, end = resolve_range_window(min(dates), max(dates), schedule.timezone)
        events, failed = await self._fan_out(schedule, start, end, credential)
        days: dict[date, tuple[CalendarEvent, ...]] = {}
        undated = [event for event in events if event.start_time is None]
        for index, day in enumerate(dates):
            day_start, day_end = resolve_day_window(day, schedule.timezone)
            bucket = [event for event in events if _overlaps(event, day_start, day_end)]
            if index == 0:
                bucket.extend(undated)
            days[day] = tuple(sort_events(bucket))
        LOGGER.info(
            "Range aggregation done: user_id=%s days=%s events=%s failed_sources=%s",
            user_id,
            len(dates),
            len(events),
            sorted(failed),
        )
        return DayAggregation(days=days, failed_sources=failed)

    async def _fan_out(
        self,
        schedule: UserSchedule,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> tuple[list[CalendarEvent], frozenset[str]]:
        source_ids = list(dict.fromkeys(schedule.calendar_sources))
        outcomes = await asyncio.gather(
            *(self._fetch_source(source_id, start, end, credential) for source_id in source_ids),
            return_exceptions=True,
        )
        merged: list[CalendarEvent] = []
        failed: set[str] = set()
        for source_id, outcome in zip(source_ids, outcomes):
            if isinstance(outcome, SourceFetchFailed):
                LOGGER.warning(
                    "Source fetch failed: user_id=%s source_id=%s cause=%s",
                    schedule.user_id,
                    source_id,
                    outcome.cause,
                )
                failed.add(source_id)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            merged.extend(outcome)
        return merged, frozenset(failed)

    async def _fetch_source(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> list[CalendarEvent]:
        events_outcome, name_outcome = await asyncio.gather(
            self._client.fetch_events(source_id, start, end, credential),
            self._client.resolve_source_name(source_id, credential),
            return_exceptions=True,
        )
        for outcome in (events_outcome, name_outcome):
            if isinstance(outcome, SourceFetchFailed):
                raise outcome
            if isinstance(outcome, Exception):
                raise SourceFetchFailed(source_id, outcome) from outcome
            if isinstance(outcome, BaseException):
                raise outcome
        name = name_outcome or source_id
        return [replace(event, source_name=name) for event in events_outcome]
