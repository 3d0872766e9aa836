"""Google Calendar source client (REST v3 over httpx).

The credential passed in is the user's refresh token; access tokens are obtained
and cached by ``GoogleAccessTokenCache``. Transient HTTP failures are retried,
then every failure is reported as ``SourceFetchFailed``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from digestbot.core.errors import SourceFetchFailed
from digestbot.core.models import UNTITLED_EVENT, CalendarEvent
from digestbot.core.sources import SourceClient
from digestbot.infra.google_oauth import GoogleAccessTokenCache, GoogleTokenRefreshError
from digestbot.infra.resilience import RetryPolicy, is_retryable_http_error, retry_async

LOGGER = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
UNNAMED_CALENDAR = "Unnamed Calendar"
MAX_PAGES = 20


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return normalized.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def _parse_boundary(payload: Any, zone: tzinfo) -> datetime | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    try:
        if isinstance(date_time, str) and date_time.strip():
            return _parse_google_datetime(date_time)
        date_value = payload.get("date")
        if isinstance(date_value, str) and date_value.strip():
            return datetime.combine(date.fromisoformat(date_value.strip()), time.min, tzinfo=zone)
    except ValueError:
        LOGGER.debug("Unparseable Google event boundary: %r", payload)
    return None


def parse_google_event(item: dict[str, Any], zone: tzinfo) -> CalendarEvent | None:
    if item.get("status") == "cancelled":
        return None
    start = item.get("start") or {}
    title = item.get("summary")
    return CalendarEvent(
        id=str(item.get("id") or ""),
        title=title if isinstance(title, str) and title else UNTITLED_EVENT,
        start_time=_parse_boundary(start, zone),
        end_time=_parse_boundary(item.get("end"), zone),
        is_all_day=isinstance(start, dict) and bool(start.get("date")),
    )


class GoogleCalendarClient(SourceClient):
    def __init__(
        self,
        *,
        tokens: GoogleAccessTokenCache | None,
        http_client: httpx.AsyncClient,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        timeout_seconds: float | None = 10.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tokens = tokens
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def fetch_events(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> list[CalendarEvent]:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        path = f"/calendars/{quote(source_id, safe='')}/events"
        items = await self._get_paged(source_id, path, params, credential)
        zone = start.tzinfo or timezone.utc
        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event = parse_google_event(item, zone)
            if event is not None:
                events.append(event)
        return events

    async def resolve_source_name(self, source_id: str, credential: str) -> str:
        payload = await self._get_json(source_id, f"/calendars/{quote(source_id, safe='')}", None, credential)
        summary = payload.get("summary")
        return summary if isinstance(summary, str) and summary else source_id

    async def list_sources(self, credential: str) -> list[tuple[str, str]]:
        items = await self._get_paged("calendarList", "/users/me/calendarList", {}, credential)
        sources: list[tuple[str, str]] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = item.get("summary")
            sources.append((str(item.get("id") or ""), name if isinstance(name, str) and name else UNNAMED_CALENDAR))
        return sources

    async def _get_paged(
        self,
        source_id: str,
        path: str,
        params: dict[str, Any],
        credential: str,
    ) -> list[Any]:
        items: list[Any] = []
        page_params = dict(params)
        for _ in range(MAX_PAGES):
            payload = await self._get_json(source_id, path, page_params, credential)
            page_items = payload.get("items") or []
            if not isinstance(page_items, list):
                raise SourceFetchFailed(source_id, "items_not_a_list")
            items.extend(page_items)
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            page_params["pageToken"] = next_page_token
        else:
            LOGGER.warning("Google Calendar paging truncated: source_id=%s pages=%s", source_id, MAX_PAGES)
        return items

    async def _get_json(
        self,
        source_id: str,
        path: str,
        params: dict[str, Any] | None,
        credential: str,
    ) -> dict[str, Any]:
        tokens = self._tokens
        if tokens is None:
            raise SourceFetchFailed(source_id, "oauth_not_configured")
        url = f"{self._base_url}{path}"

        async def _call() -> dict[str, Any]:
            response = await self._request(tokens, url, params, credential, force_refresh=False)
            if response.status_code == 401:
                response = await self._request(tokens, url, params, credential, force_refresh=True)
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("response is not a JSON object")
            return data

        try:
            return await retry_async(
                _call,
                policy=self._retry_policy,
                timeout_seconds=self._timeout_seconds,
                logger=LOGGER,
                name=f"google_calendar:{source_id}",
                is_retryable=is_retryable_http_error,
                sleep=self._sleep,
            )
        except (httpx.HTTPError, GoogleTokenRefreshError, asyncio.TimeoutError, ValueError) as exc:
            raise SourceFetchFailed(source_id, exc) from exc

    async def _request(
        self,
        tokens: GoogleAccessTokenCache,
        url: str,
        params: dict[str, Any] | None,
        credential: str,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await tokens.get_access_token(credential, force_refresh=force_refresh)
        return await self._http_client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
