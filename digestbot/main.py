from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from telegram.ext import Application, CommandHandler

from digestbot.bot import handlers
from digestbot.core.aggregator import Aggregator
from digestbot.core.sources import SourceClient, SourceRouter
from digestbot.core.trigger_scheduler import TriggerActions, TriggerScheduler, build_schedule
from digestbot.infra.caldav_calendar import SOURCE_PREFIX as CALDAV_PREFIX
from digestbot.infra.caldav_calendar import CalDAVCalendarClient, load_caldav_config
from digestbot.infra.config import Settings, load_settings, load_user_config
from digestbot.infra.credentials import CredentialStore
from digestbot.infra.google_calendar import GoogleCalendarClient
from digestbot.infra.google_oauth import GoogleAccessTokenCache, load_google_oauth_config
from digestbot.infra.logging_config import configure_logging
from digestbot.infra.messaging import TelegramDispatcher
from digestbot.infra.resilience import RetryPolicy

LOGGER = logging.getLogger(__name__)


def _register_handlers(application: Application) -> None:
    application.add_handler(CommandHandler("start", handlers.start))
    application.add_handler(CommandHandler("today", handlers.today))
    application.add_handler(CommandHandler("tomorrow", handlers.tomorrow))
    application.add_handler(CommandHandler("week", handlers.week))
    application.add_handler(CommandHandler("setup", handlers.setup))
    application.add_handler(CommandHandler("calendars", handlers.calendars))


def build_source_client(settings: Settings, http_client: httpx.AsyncClient) -> SourceClient:
    oauth_config = load_google_oauth_config(settings)
    if oauth_config is None:
        LOGGER.warning("Google OAuth is not configured; Google calendars will fail to load")
    google = GoogleCalendarClient(
        tokens=GoogleAccessTokenCache(oauth_config, http_client) if oauth_config else None,
        http_client=http_client,
        timeout_seconds=settings.calendar_timeout_seconds,
        retry_policy=RetryPolicy(max_attempts=settings.calendar_retry_attempts),
    )
    prefixed: dict[str, SourceClient] = {}
    caldav_config = load_caldav_config(settings)
    if caldav_config is not None:
        prefixed[CALDAV_PREFIX] = CalDAVCalendarClient(caldav_config)
        LOGGER.info("CalDAV source enabled: url=%s", caldav_config.url)
    return SourceRouter(google, prefixed)


def main() -> None:
    configure_logging()
    try:
        settings = load_settings()
        directory = load_user_config(settings.users_config_path, default_timezone=settings.default_timezone)
    except RuntimeError as exc:
        LOGGER.error("Startup failed: %s", exc)
        raise SystemExit(str(exc)) from exc

    credentials = CredentialStore.from_settings(settings)
    triggers = build_schedule(directory.schedules(), credentials)
    LOGGER.info(
        "Startup: users=%s allowed=%s linked=%s triggers=%s",
        len(directory.users),
        len(directory.allowed_user_ids),
        len(credentials.linked_user_ids()),
        len(triggers),
    )
    if settings.dry_run:
        for trigger in triggers:
            LOGGER.info(
                "DRY_RUN trigger: job_id=%s user_id=%s time=%s tz=%s next=%s",
                trigger.job_id,
                trigger.owner_user_id,
                trigger.wall_time,
                trigger.timezone,
                trigger.next_fire_time(datetime.now(timezone.utc)).isoformat(),
            )
        LOGGER.info("DRY_RUN enabled; exiting before polling")
        return

    http_client = httpx.AsyncClient(timeout=settings.calendar_timeout_seconds)
    source_client = build_source_client(settings, http_client)
    aggregator = Aggregator(directory=directory, credentials=credentials, source_client=source_client)

    application = Application.builder().token(settings.bot_token).build()
    scheduler = TriggerScheduler(
        triggers,
        TriggerActions(aggregator=aggregator, dispatcher=TelegramDispatcher(application.bot)),
        tick_seconds=settings.scheduler_tick_seconds,
        misfire_grace_seconds=settings.scheduler_misfire_grace_seconds,
    )
    application.bot_data["settings"] = settings
    application.bot_data["directory"] = directory
    application.bot_data["credentials"] = credentials
    application.bot_data["source_client"] = source_client
    application.bot_data["aggregator"] = aggregator
    application.bot_data["oauth_config"] = load_google_oauth_config(settings)
    application.bot_data["trigger_scheduler"] = scheduler

    async def _post_init(app: Application) -> None:
        app.bot_data["trigger_scheduler"].start()

    async def _post_shutdown(app: Application) -> None:
        await app.bot_data["trigger_scheduler"].stop()
        await http_client.aclose()

    application.post_init = _post_init
    application.post_shutdown = _post_shutdown

    _register_handlers(application)
    application.add_error_handler(handlers.error_handler)

    LOGGER.info("Bot started")
    application.run_polling()


if __name__ == "__main__":
    main()
