"""Per-user daily triggers: one digest and any number of fixed-text reminders.

Triggers are built once from the user configuration and never edited. A single
tick loop keeps the next fire instant of each trigger (computed by an APScheduler
``CronTrigger`` in the trigger's own timezone) and starts a separate task per
firing, so a slow or failing action never delays or breaks the others.
The clock is injectable; tests drive ``run_pending()`` directly.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Protocol

from digestbot.core.aggregator import Aggregator, CredentialLookup
from digestbot.core.errors import InvalidTimezone, InvalidTriggerTime
from digestbot.core.models import Trigger, TriggerAction, UserSchedule
from digestbot.core.render import render_day
from digestbot.core.time_window import local_today, resolve_timezone

LOGGER = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"[0-9]{2}:[0-9]{2}")
DEFAULT_TICK_SECONDS = 20.0
DEFAULT_MISFIRE_GRACE_SECONDS = 300.0

Clock = Callable[[], datetime]
ActionRunner = Callable[[Trigger], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_trigger_time(raw: object) -> tuple[int, int]:
    """Parse ``HH:MM`` (24h). Raises ``InvalidTriggerTime`` on any violation."""
    if not isinstance(raw, str) or not TIME_PATTERN.fullmatch(raw):
        raise InvalidTriggerTime(raw)
    hour, minute = (int(part) for part in raw.split(":"))
    if hour > 23 or minute > 59:
        raise InvalidTriggerTime(raw)
    return hour, minute


def build_schedule(schedules: Iterable[UserSchedule], credentials: CredentialLookup) -> list[Trigger]:
    triggers: list[Trigger] = []
    for schedule in schedules:
        try:
            triggers.extend(_build_user_triggers(schedule, credentials))
        except Exception:
            LOGGER.exception("Schedule build failed for user: user_id=%s", schedule.user_id)
    LOGGER.info("Schedule built: triggers=%s", len(triggers))
    return triggers


def _build_user_triggers(schedule: UserSchedule, credentials: CredentialLookup) -> list[Trigger]:
    user_id = schedule.user_id
    if not credentials.has_linked_credential(user_id):
        LOGGER.info("Skipping scheduler for user: user_id=%s reason=no_credential", user_id)
        return []
    try:
        resolve_timezone(schedule.timezone)
    except InvalidTimezone:
        LOGGER.warning("Skipping scheduler for user: user_id=%s reason=invalid_timezone tz=%r", user_id, schedule.timezone)
        return []

    triggers: list[Trigger] = []
    if schedule.daily_digest_time is None:
        LOGGER.info("Daily digest disabled: user_id=%s", user_id)
    else:
        try:
            hour, minute = parse_trigger_time(schedule.daily_digest_time)
        except InvalidTriggerTime:
            LOGGER.warning(
                "Skipping daily digest: user_id=%s invalid notify time %r (expected HH:MM)",
                user_id,
                schedule.daily_digest_time,
            )
        else:
            triggers.append(
                Trigger(
                    owner_user_id=user_id,
                    fire_hour=hour,
                    fire_minute=minute,
                    timezone=schedule.timezone,
                    action=TriggerAction.DAILY_DIGEST,
                )
            )
            LOGGER.info(
                "Scheduling daily digest: user_id=%s time=%s tz=%s",
                user_id,
                schedule.daily_digest_time,
                schedule.timezone,
            )

    for slot, reminder in enumerate(schedule.reminders):
        try:
            hour, minute = parse_trigger_time(reminder.time)
        except InvalidTriggerTime:
            LOGGER.warning("Skipping reminder: user_id=%s invalid time %r", user_id, reminder.time)
            continue
        triggers.append(
            Trigger(
                owner_user_id=user_id,
                fire_hour=hour,
                fire_minute=minute,
                timezone=schedule.timezone,
                action=TriggerAction.REMINDER,
                message=reminder.message,
                slot=slot,
            )
        )
        LOGGER.info("Scheduling reminder: user_id=%s time=%s slot=%s", user_id, reminder.time, slot)
    return triggers


def _following_day_start(trigger: Trigger, fire_at: datetime) -> datetime:
    """Local midnight after the day ``fire_at`` falls on; a repeated wall hour never fires twice."""
    zone = resolve_timezone(trigger.timezone)
    next_day = fire_at.astimezone(zone).date() + timedelta(days=1)
    return datetime.combine(next_day, time.min, tzinfo=zone)


@dataclass
class _Entry:
    trigger: Trigger
    next_fire: datetime | None = None


class TriggerScheduler:
    def __init__(
        self,
        triggers: Iterable[Trigger],
        action: ActionRunner,
        *,
        clock: Clock = _utc_now,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        misfire_grace_seconds: float = DEFAULT_MISFIRE_GRACE_SECONDS,
    ) -> None:
        self._entries = [_Entry(trigger) for trigger in triggers]
        self._action = action
        self._clock = clock
        self._tick_seconds = max(0.1, tick_seconds)
        self._misfire_grace = timedelta(seconds=max(0.0, misfire_grace_seconds))
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def triggers(self) -> tuple[Trigger, ...]:
        return tuple(entry.trigger for entry in self._entries)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def next_fire_times(self) -> dict[str, datetime | None]:
        return {entry.trigger.job_id: entry.next_fire for entry in self._entries}

    def prime(self, now: datetime | None = None) -> None:
        """Compute each trigger's first occurrence at or after ``now``; past days are never replayed."""
        current = now or self._clock()
        for entry in self._entries:
            entry.next_fire = entry.trigger.next_fire_time(current)

    def start(self) -> None:
        if self.running:
            LOGGER.info("Trigger scheduler already started, skipping")
            return
        asyncio.get_running_loop()
        self.prime()
        self._loop_task = asyncio.create_task(self._run_loop(), name="trigger-scheduler")
        LOGGER.info("Trigger scheduler started: triggers=%s tick=%s", len(self._entries), self._tick_seconds)

    async def stop(self, *, wait: bool = False) -> None:
        """Stop new firings. In-flight actions finish if ``wait`` else they are left to run out."""
        task = self._loop_task
        self._loop_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if wait and self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        LOGGER.info("Trigger scheduler stopped: in_flight=%s", len(self._in_flight))

    def collect_due(self, now: datetime) -> list[Trigger]:
        due: list[Trigger] = []
        for entry in self._entries:
            if entry.next_fire is None:
                entry.next_fire = entry.trigger.next_fire_time(now)
            if entry.next_fire > now:
                continue
            fire_at = entry.next_fire
            entry.next_fire = entry.trigger.next_fire_time(max(now, _following_day_start(entry.trigger, fire_at)))
            if now - fire_at > self._misfire_grace:
                LOGGER.warning(
                    "Trigger missed: job_id=%s user_id=%s fire_at=%s now=%s",
                    entry.trigger.job_id,
                    entry.trigger.owner_user_id,
                    fire_at.isoformat(),
                    now.isoformat(),
                )
                continue
            due.append(entry.trigger)
        return due

    async def run_pending(self) -> list[asyncio.Task[None]]:
        started: list[asyncio.Task[None]] = []
        for trigger in self.collect_due(self._clock()):
            job_id = trigger.job_id
            previous = self._in_flight.get(job_id)
            if previous is not None and not previous.done():
                LOGGER.warning(
                    "Trigger still running, occurrence skipped: job_id=%s user_id=%s",
                    job_id,
                    trigger.owner_user_id,
                )
                continue
            task = asyncio.create_task(self._fire(trigger), name=f"trigger:{job_id}")
            self._in_flight[job_id] = task
            task.add_done_callback(lambda done, key=job_id: self._forget(key, done))
            started.append(task)
        return started

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._in_flight.get(job_id) is task:
            self._in_flight.pop(job_id, None)

    async def _fire(self, trigger: Trigger) -> None:
        LOGGER.info(
            "Trigger firing: job_id=%s user_id=%s time=%s tz=%s",
            trigger.job_id,
            trigger.owner_user_id,
            trigger.wall_time,
            trigger.timezone,
        )
        try:
            await self._action(trigger)
        except Exception:
            LOGGER.exception("Trigger action failed: job_id=%s user_id=%s", trigger.job_id, trigger.owner_user_id)

    def _sleep_seconds(self, now: datetime) -> float:
        pending = [entry.next_fire for entry in self._entries if entry.next_fire is not None]
        if not pending:
            return self._tick_seconds
        until_next = (min(pending) - now).total_seconds()
        return max(0.0, min(self._tick_seconds, until_next))

    async def _run_loop(self) -> None:
        try:
            while True:
                try:
                    await self.run_pending()
                except Exception:
                    LOGGER.exception("Trigger scheduler tick failed")
                await asyncio.sleep(self._sleep_seconds(self._clock()))
        except asyncio.CancelledError:
            LOGGER.info("Trigger scheduler task cancelled")
            raise


class Dispatcher(Protocol):
    async def send(self, user_id: int, text: str) -> bool: ...


class TriggerActions:
    """Callable run by the scheduler for each firing."""

    def __init__(self, *, aggregator: Aggregator, dispatcher: Dispatcher, clock: Clock = _utc_now) -> None:
        self._aggregator = aggregator
        self._dispatcher = dispatcher
        self._clock = clock

    async def __call__(self, trigger: Trigger) -> None:
        if trigger.action is TriggerAction.REMINDER:
            await self._send(trigger, trigger.message or "")
            return
        tomorrow = local_today(trigger.timezone, self._clock()) + timedelta(days=1)
        result = await self._aggregator.aggregate(trigger.owner_user_id, tomorrow)
        text = render_day(result.events, tomorrow, "Tomorrow", trigger.timezone)
        await self._send(trigger, text)

    async def _send(self, trigger: Trigger, text: str) -> None:
        delivered = await self._dispatcher.send(trigger.owner_user_id, text)
        if delivered:
            LOGGER.info("Notification sent: job_id=%s user_id=%s", trigger.job_id, trigger.owner_user_id)
        else:
            LOGGER.error("Notification not delivered: job_id=%s user_id=%s", trigger.job_id, trigger.owner_user_id)
