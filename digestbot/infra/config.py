from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv

from digestbot.core.models import ReminderEntry, UserSchedule

LOGGER = logging.getLogger(__name__)

DEFAULT_USERS_CONFIG_PATH = Path("config.json")
DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/callback"
DEFAULT_TIMEZONE = "UTC"
REFRESH_TOKEN_PREFIX = "GOOGLE_REFRESH_TOKEN_"


@dataclass(frozen=True)
class Settings:
    bot_token: str
    users_config_path: Path
    google_client_id: str | None
    google_client_secret: str | None
    google_redirect_uri: str
    refresh_tokens: Mapping[int, str]
    default_timezone: str
    scheduler_tick_seconds: float
    scheduler_misfire_grace_seconds: float
    calendar_timeout_seconds: float
    calendar_retry_attempts: int
    caldav_url: str | None
    caldav_username: str | None
    caldav_password: str | None
    dry_run: bool = False

    @property
    def caldav_configured(self) -> bool:
        return bool(self.caldav_url and self.caldav_username and self.caldav_password)


@dataclass(frozen=True)
class UserDirectory:
    """Per-user schedules plus the allow-list, read once from the users file."""

    users: Mapping[int, UserSchedule] = field(default_factory=dict)
    allowed_user_ids: frozenset[int] = frozenset()

    def get(self, user_id: int) -> UserSchedule | None:
        return self.users.get(user_id)

    def is_allowed(self, user_id: int) -> bool:
        return user_id in self.allowed_user_ids

    def schedules(self) -> list[UserSchedule]:
        return [schedule for user_id, schedule in self.users.items() if user_id in self.allowed_user_ids]


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    if env is None:
        load_dotenv()
        env = os.environ
    dry_run = _parse_optional_bool(env.get("DRY_RUN")) is True

    token = env.get("TELEGRAM_BOT_TOKEN") or env.get("BOT_TOKEN")
    if not token:
        if dry_run:
            token = "000000:DRY_RUN_TOKEN"
        else:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    return Settings(
        bot_token=token,
        users_config_path=Path(env.get("USERS_CONFIG_PATH", DEFAULT_USERS_CONFIG_PATH)),
        google_client_id=env.get("GOOGLE_CLIENT_ID") or None,
        google_client_secret=env.get("GOOGLE_CLIENT_SECRET") or None,
        google_redirect_uri=env.get("GOOGLE_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
        refresh_tokens=_collect_refresh_tokens(env),
        default_timezone=(env.get("DEFAULT_TIMEZONE") or DEFAULT_TIMEZONE).strip(),
        scheduler_tick_seconds=_parse_optional_float(env.get("SCHEDULER_TICK_SECONDS"), 20.0),
        scheduler_misfire_grace_seconds=_parse_optional_float(env.get("SCHEDULER_MISFIRE_GRACE_SECONDS"), 300.0),
        calendar_timeout_seconds=_parse_optional_float(env.get("CALENDAR_TIMEOUT_SECONDS"), 10.0),
        calendar_retry_attempts=_parse_int_with_default(env.get("CALENDAR_RETRY_ATTEMPTS"), 2),
        caldav_url=env.get("CALDAV_URL") or None,
        caldav_username=env.get("CALDAV_USERNAME") or None,
        caldav_password=env.get("CALDAV_PASSWORD") or None,
        dry_run=dry_run,
    )


def load_user_config(path: Path, *, default_timezone: str = DEFAULT_TIMEZONE) -> UserDirectory:
    if not path.exists():
        raise RuntimeError(f"{path} not found. Copy config.example.json and fill in your values.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RuntimeError(f"{path} must contain a JSON object")
    return parse_user_config(data, default_timezone=default_timezone)


def parse_user_config(data: Mapping[str, Any], *, default_timezone: str = DEFAULT_TIMEZONE) -> UserDirectory:
    raw_users = data.get("users", {})
    if not isinstance(raw_users, dict):
        LOGGER.warning("Users config: 'users' must be an object; ignoring")
        raw_users = {}
    users: dict[int, UserSchedule] = {}
    for key, raw in raw_users.items():
        try:
            user_id = int(key)
        except (TypeError, ValueError):
            LOGGER.warning("Users config: skipping entry with non-numeric id %r", key)
            continue
        if not isinstance(raw, dict):
            LOGGER.warning("Users config: skipping user_id=%s (entry is not an object)", user_id)
            continue
        users[user_id] = _parse_user(user_id, raw, default_timezone)

    raw_allowed = data.get("allowedUserIds")
    if raw_allowed is None:
        allowed = frozenset(users)
    else:
        allowed = frozenset(_parse_int_list(raw_allowed))
    return UserDirectory(users=users, allowed_user_ids=allowed)


def _parse_user(user_id: int, raw: Mapping[str, Any], default_timezone: str) -> UserSchedule:
    timezone = raw.get("timezone")
    if not isinstance(timezone, str) or not timezone.strip():
        timezone = default_timezone
    notify_time = raw.get("notifyTime")
    if notify_time is not None and not isinstance(notify_time, str):
        notify_time = str(notify_time)
    calendars = raw.get("calendars") or []
    if not isinstance(calendars, list):
        LOGGER.warning("Users config: user_id=%s 'calendars' must be a list", user_id)
        calendars = []
    reminders: list[ReminderEntry] = []
    for item in raw.get("reminders") or []:
        if not isinstance(item, dict) or not isinstance(item.get("message"), str):
            LOGGER.warning("Users config: user_id=%s skipping malformed reminder %r", user_id, item)
            continue
        reminders.append(ReminderEntry(time=str(item.get("time", "")), message=item["message"]))
    name = raw.get("name")
    return UserSchedule(
        user_id=user_id,
        timezone=timezone.strip(),
        daily_digest_time=notify_time,
        reminders=tuple(reminders),
        calendar_sources=tuple(str(item) for item in calendars if str(item).strip()),
        name=name if isinstance(name, str) and name else None,
    )


def _collect_refresh_tokens(env: Mapping[str, str]) -> dict[int, str]:
    tokens: dict[int, str] = {}
    for key, value in env.items():
        if not key.startswith(REFRESH_TOKEN_PREFIX) or not value:
            continue
        suffix = key[len(REFRESH_TOKEN_PREFIX):]
        try:
            tokens[int(suffix)] = value
        except ValueError:
            LOGGER.warning("Ignoring %s: user id suffix is not numeric", key)
    return tokens


def _parse_int_list(value: object) -> set[int]:
    if not isinstance(value, list):
        return set()
    result: set[int] = set()
    for item in value:
        try:
            result.add(int(item))
        except (TypeError, ValueError):
            LOGGER.warning("Users config: ignoring non-numeric allowed user id %r", item)
    return result


def _parse_optional_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    trimmed = value.strip()
    if not trimmed:
        return default
    return float(trimmed)


def _parse_optional_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    trimmed = value.strip().lower()
    if not trimmed:
        return None
    return trimmed in {"1", "true", "yes", "on"}


def _parse_int_with_default(value: str | None, default: int) -> int:
    if value is None:
        return default
    trimmed = value.strip()
    if not trimmed:
        return default
    return int(trimmed)
