from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from functools import wraps

from telegram import Update
from telegram.ext import ContextTypes

from digestbot.core.aggregator import Aggregator
from digestbot.core.errors import (
    FETCH_FAILED_TEXT,
    NOT_LINKED_TEXT,
    DigestError,
    SourceFetchFailed,
    refusal_text,
)
from digestbot.core.render import render_day, render_week
from digestbot.core.sources import SourceClient
from digestbot.core.time_window import local_today, week_dates
from digestbot.infra.config import Settings, UserDirectory
from digestbot.infra.credentials import CredentialStore
from digestbot.infra.google_oauth import GoogleOAuthConfig, build_authorization_url
from digestbot.infra.messaging import safe_send_text

LOGGER = logging.getLogger(__name__)

ACCESS_DENIED_TEXT = "Sorry, you're not authorized to use this bot."
OAUTH_NOT_CONFIGURED_TEXT = "Google sign-in is not configured on this bot. Ask the bot owner to set it up."


def _get_aggregator(context: ContextTypes.DEFAULT_TYPE) -> Aggregator:
    return context.application.bot_data["aggregator"]


def _get_directory(context: ContextTypes.DEFAULT_TYPE) -> UserDirectory:
    return context.application.bot_data["directory"]


def _get_credentials(context: ContextTypes.DEFAULT_TYPE) -> CredentialStore:
    return context.application.bot_data["credentials"]


def _get_source_client(context: ContextTypes.DEFAULT_TYPE) -> SourceClient:
    return context.application.bot_data["source_client"]


def _get_settings(context: ContextTypes.DEFAULT_TYPE) -> Settings:
    return context.application.bot_data["settings"]


def _get_oauth_config(context: ContextTypes.DEFAULT_TYPE) -> GoogleOAuthConfig | None:
    return context.application.bot_data.get("oauth_config")


def _user_id(update: Update) -> int:
    return update.effective_user.id if update.effective_user else 0


def _with_error_handling(
    handler: Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]],
) -> Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]:
    @wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        LOGGER.info("Route: user_id=%s handler=%s", _user_id(update), handler.__name__)
        try:
            await handler(update, context)
        except Exception as exc:
            try:
                await context.application.process_error(update, exc)
            except Exception:
                LOGGER.exception("Failed to forward exception to error handler")

    return wrapper


async def _guard_access(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    user = update.effective_user
    if user is None:
        return False
    if _get_directory(context).is_allowed(user.id):
        return True
    LOGGER.warning(
        "Access denied: user_id=%s username=%s reason=not_allowed",
        user.id,
        user.username or "unknown",
    )
    await safe_send_text(update, ACCESS_DENIED_TEXT)
    return False


def _user_timezone(context: ContextTypes.DEFAULT_TYPE, user_id: int) -> str:
    schedule = _get_directory(context).get(user_id)
    if schedule is not None:
        return schedule.timezone
    return _get_settings(context).default_timezone


@_with_error_handling
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _guard_access(update, context):
        return
    schedule = _get_directory(context).get(_user_id(update))
    name = schedule.name if schedule is not None and schedule.name else "there"
    await safe_send_text(
        update,
        f"Hi {name}! I'm your calendar bot.\n\n"
        "Commands:\n"
        "/today - View today's events\n"
        "/tomorrow - View tomorrow's events\n"
        "/week - View the next 7 days\n"
        "/setup - Link your Google Calendar\n"
        "/calendars - Choose which calendars to show",
    )


async def _send_events_for_day(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    day_offset: int,
    label: str,
) -> None:
    if not await _guard_access(update, context):
        return
    user_id = _user_id(update)
    try:
        tz = _user_timezone(context, user_id)
        target = local_today(tz) + timedelta(days=day_offset)
        result = await _get_aggregator(context).aggregate(user_id, target)
    except DigestError as exc:
        LOGGER.info("Day request refused: user_id=%s reason=%s", user_id, exc)
        await safe_send_text(update, refusal_text(exc))
        return
    except Exception:
        LOGGER.exception("Day request failed: user_id=%s", user_id)
        await safe_send_text(update, FETCH_FAILED_TEXT)
        return
    if result.degraded:
        LOGGER.warning("Partial digest: user_id=%s failed_sources=%s", user_id, sorted(result.failed_sources))
    await safe_send_text(update, render_day(result.events, target, label, tz))


@_with_error_handling
async def today(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _send_events_for_day(update, context, 0, "Today")


@_with_error_handling
async def tomorrow(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _send_events_for_day(update, context, 1, "Tomorrow")


@_with_error_handling
async def week(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _guard_access(update, context):
        return
    user_id = _user_id(update)
    try:
        tz = _user_timezone(context, user_id)
        dates = week_dates(local_today(tz))
        result = await _get_aggregator(context).aggregate_days(user_id, dates)
    except DigestError as exc:
        LOGGER.info("Week request refused: user_id=%s reason=%s", user_id, exc)
        await safe_send_text(update, refusal_text(exc))
        return
    except Exception:
        LOGGER.exception("Week request failed: user_id=%s", user_id)
        await safe_send_text(update, FETCH_FAILED_TEXT)
        return
    await safe_send_text(update, render_week(result.days, tz))


@_with_error_handling
async def setup(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _guard_access(update, context):
        return
    config = _get_oauth_config(context)
    if config is None:
        await safe_send_text(update, OAUTH_NOT_CONFIGURED_TEXT)
        return
    auth_url = build_authorization_url(config, state=str(_user_id(update)))
    await safe_send_text(
        update,
        "Click the link below to connect your Google Calendar:\n\n"
        f"{auth_url}\n\n"
        "After authorizing, you'll receive a code. "
        "For now, the bot owner needs to add your refresh token to the environment "
        f"as GOOGLE_REFRESH_TOKEN_{_user_id(update)}.",
    )


@_with_error_handling
async def calendars(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not await _guard_access(update, context):
        return
    user_id = _user_id(update)
    credentials = _get_credentials(context)
    if not credentials.has_linked_credential(user_id):
        await safe_send_text(update, NOT_LINKED_TEXT)
        return
    try:
        sources = await _get_source_client(context).list_sources(credentials.get_credential(user_id))
    except SourceFetchFailed as exc:
        LOGGER.warning("Calendar listing failed: user_id=%s cause=%s", user_id, exc.cause)
        await safe_send_text(update, FETCH_FAILED_TEXT)
        return
    lines = ["Your available calendars:", ""]
    for source_id, name in sources:
        lines.append(f"• {name}")
        lines.append(f"  ID: {source_id}")
        lines.append("")
    if not sources:
        lines.extend(["(none found)", ""])
    lines.append("To select calendars, update the 'calendars' list in config.json with the IDs you want.")
    await safe_send_text(update, "\n".join(lines))


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    LOGGER.exception("Unhandled exception", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        await safe_send_text(update, "Something went wrong. Please try again.")
