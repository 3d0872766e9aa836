from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

UNTITLED_EVENT = "Untitled"


@dataclass(frozen=True)
class CalendarEvent:
    """One occurrence on one source calendar."""

    id: str
    title: str = UNTITLED_EVENT
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool = False
    source_name: str = ""


@dataclass(frozen=True)
class ReminderEntry:
    time: str
    message: str


@dataclass(frozen=True)
class UserSchedule:
    user_id: int
    timezone: str
    daily_digest_time: str | None = None
    reminders: tuple[ReminderEntry, ...] = ()
    calendar_sources: tuple[str, ...] = ()
    name: str | None = None


@dataclass(frozen=True)
class AggregationResult:
    events: tuple[CalendarEvent, ...] = ()
    failed_sources: frozenset[str] = field(default_factory=frozenset)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_sources)


@dataclass(frozen=True)
class DayAggregation:
    """Per-date buckets produced by a multi-day aggregation."""

    days: dict[date, tuple[CalendarEvent, ...]]
    failed_sources: frozenset[str] = field(default_factory=frozenset)

    @property
    def total_events(self) -> int:
        return sum(len(events) for events in self.days.values())


class TriggerAction(enum.Enum):
    DAILY_DIGEST = "daily_digest"
    REMINDER = "reminder"


@dataclass(frozen=True)
class Trigger:
    """A once-per-day action bound to one user, one local time and one timezone."""

    owner_user_id: int
    fire_hour: int
    fire_minute: int
    timezone: str
    action: TriggerAction
    message: str | None = None
    slot: int = 0

    @property
    def job_id(self) -> str:
        if self.action is TriggerAction.DAILY_DIGEST:
            return f"digest:{self.owner_user_id}"
        return f"reminder:{self.owner_user_id}:{self.slot}"

    @property
    def wall_time(self) -> str:
        return f"{self.fire_hour:02d}:{self.fire_minute:02d}"

    def next_fire_time(self, now: datetime) -> datetime:
        """Return the first fire instant at or after ``now`` (rounded up to the second)."""
        cron = CronTrigger(hour=self.fire_hour, minute=self.fire_minute, timezone=ZoneInfo(self.timezone))
        fire_at = cron.get_next_fire_time(None, now)
        if fire_at is None:
            raise RuntimeError(f"no next fire time for trigger {self.job_id}")
        return fire_at
