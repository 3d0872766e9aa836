from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace

from digestbot.bot import handlers
from digestbot.core.errors import FETCH_FAILED_TEXT, NOT_LINKED_TEXT, NotLinked, SourceFetchFailed
from digestbot.core.models import AggregationResult, CalendarEvent, DayAggregation, UserSchedule
from digestbot.infra.config import UserDirectory, load_settings
from digestbot.infra.credentials import CredentialStore
from digestbot.infra.google_oauth import GoogleOAuthConfig


class DummyMessage:
    def __init__(self) -> None:
        self.reply_calls: list[str] = []

    async def reply_text(self, text, reply_markup=None):
        self.reply_calls.append(text)


class FakeAggregator:
    def __init__(self, events: tuple[CalendarEvent, ...] = (), error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.calls: list[tuple[int, object]] = []

    async def aggregate(self, user_id: int, for_date: date) -> AggregationResult:
        self.calls.append((user_id, for_date))
        if self.error is not None:
            raise self.error
        return AggregationResult(events=self.events)

    async def aggregate_days(self, user_id: int, dates: list[date]) -> DayAggregation:
        self.calls.append((user_id, tuple(dates)))
        if self.error is not None:
            raise self.error
        return DayAggregation(days={day: (self.events if index == 0 else ()) for index, day in enumerate(dates)})


class FakeSourceClient:
    def __init__(self, sources: list[tuple[str, str]] | None = None, error: Exception | None = None) -> None:
        self.sources = sources or []
        self.error = error

    async def list_sources(self, credential: str) -> list[tuple[str, str]]:
        if self.error is not None:
            raise self.error
        return list(self.sources)


def _make_context(
    *,
    aggregator: FakeAggregator | None = None,
    source_client: FakeSourceClient | None = None,
    linked: bool = True,
    oauth_config: GoogleOAuthConfig | None = None,
):
    schedule = UserSchedule(user_id=1, timezone="Europe/London", calendar_sources=("primary",), name="Alex")
    directory = UserDirectory(users={1: schedule}, allowed_user_ids=frozenset({1}))
    errors: list[Exception] = []

    async def _process_error(update, error):
        errors.append(error)

    application = SimpleNamespace(
        bot_data={
            "settings": load_settings({"TELEGRAM_BOT_TOKEN": "1:x"}),
            "directory": directory,
            "credentials": CredentialStore({1: "refresh"} if linked else {}),
            "aggregator": aggregator or FakeAggregator(),
            "source_client": source_client or FakeSourceClient(),
            "oauth_config": oauth_config,
        },
        process_error=_process_error,
    )
    return SimpleNamespace(application=application, errors=errors)


def _make_update(user_id: int = 1) -> SimpleNamespace:
    return SimpleNamespace(
        effective_user=SimpleNamespace(id=user_id, username="tester"),
        effective_message=DummyMessage(),
    )


def _standup() -> CalendarEvent:
    return CalendarEvent(
        id="s",
        title="Standup",
        start_time=datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc),
        end_time=datetime(2026, 6, 1, 8, 15, tzinfo=timezone.utc),
        source_name="Personal",
    )


def test_unknown_user_is_refused() -> None:
    update = _make_update(user_id=999)
    context = _make_context()

    asyncio.run(handlers.today(update, context))

    assert update.effective_message.reply_calls == [handlers.ACCESS_DENIED_TEXT]
    assert context.application.bot_data["aggregator"].calls == []


def test_start_greets_by_name() -> None:
    update = _make_update()

    asyncio.run(handlers.start(update, _make_context()))

    reply = update.effective_message.reply_calls[0]
    assert reply.startswith("Hi Alex!")
    assert "/today" in reply
    assert "/week" in reply


def test_today_renders_digest() -> None:
    update = _make_update()
    aggregator = FakeAggregator(events=(_standup(),))

    asyncio.run(handlers.today(update, _make_context(aggregator=aggregator)))

    reply = update.effective_message.reply_calls[0]
    assert reply.startswith("📅 Today (")
    assert "09:00 - 09:15  Standup [Personal]" in reply
    assert reply.endswith("1 event")
    assert aggregator.calls[0][0] == 1


def test_tomorrow_asks_for_next_day() -> None:
    update = _make_update()
    aggregator = FakeAggregator()

    asyncio.run(handlers.tomorrow(update, _make_context(aggregator=aggregator)))

    assert update.effective_message.reply_calls[0].startswith("📅 Tomorrow (")
    assert update.effective_message.reply_calls[0].endswith("No events scheduled.")
    assert isinstance(aggregator.calls[0][1], date)


def test_today_not_linked_is_refused() -> None:
    update = _make_update()

    asyncio.run(handlers.today(update, _make_context(aggregator=FakeAggregator(error=NotLinked(1)))))

    assert update.effective_message.reply_calls == [NOT_LINKED_TEXT]


def test_today_unexpected_error_replies_fetch_failed() -> None:
    update = _make_update()
    context = _make_context(aggregator=FakeAggregator(error=RuntimeError("boom")))

    asyncio.run(handlers.today(update, context))

    assert update.effective_message.reply_calls == [FETCH_FAILED_TEXT]
    assert context.errors == []


def test_week_renders_seven_days() -> None:
    update = _make_update()
    aggregator = FakeAggregator(events=(_standup(),))

    asyncio.run(handlers.week(update, _make_context(aggregator=aggregator)))

    reply = update.effective_message.reply_calls[0]
    assert reply.startswith("📅 Week of ")
    assert reply.count("\nNo events\n") == 6
    assert reply.endswith("1 event")
    assert len(aggregator.calls[0][1]) == 7


def test_setup_sends_authorization_url() -> None:
    update = _make_update()
    config = GoogleOAuthConfig("client", "secret", "http://localhost:3000/oauth/callback")

    asyncio.run(handlers.setup(update, _make_context(oauth_config=config)))

    reply = update.effective_message.reply_calls[0]
    assert "https://accounts.google.com/o/oauth2/v2/auth?" in reply
    assert "state=1" in reply
    assert "GOOGLE_REFRESH_TOKEN_1" in reply


def test_setup_without_oauth_config() -> None:
    update = _make_update()

    asyncio.run(handlers.setup(update, _make_context()))

    assert update.effective_message.reply_calls == [handlers.OAUTH_NOT_CONFIGURED_TEXT]


def test_calendars_lists_sources() -> None:
    update = _make_update()
    client = FakeSourceClient(sources=[("primary", "Me"), ("caldav:Work", "Work")])

    asyncio.run(handlers.calendars(update, _make_context(source_client=client)))

    reply = update.effective_message.reply_calls[0]
    assert "• Me\n  ID: primary" in reply
    assert "• Work\n  ID: caldav:Work" in reply


def test_calendars_requires_link() -> None:
    update = _make_update()

    asyncio.run(handlers.calendars(update, _make_context(linked=False)))

    assert update.effective_message.reply_calls == [NOT_LINKED_TEXT]


def test_calendars_listing_failure() -> None:
    update = _make_update()
    client = FakeSourceClient(error=SourceFetchFailed("calendarList", "boom"))

    asyncio.run(handlers.calendars(update, _make_context(source_client=client)))

    assert update.effective_message.reply_calls == [FETCH_FAILED_TEXT]


def test_unhandled_errors_are_forwarded() -> None:
    update = _make_update()
    context = _make_context(source_client=FakeSourceClient(error=KeyError("unexpected")))

    asyncio.run(handlers.calendars(update, context))

    assert len(context.errors) == 1
    assert isinstance(context.errors[0], KeyError)
