"""Source client abstraction.

One ``SourceClient`` reads one kind of remote calendar. Implementations:

- GoogleCalendarClient: Google Calendar REST API (default for plain ids)
- CalDAVCalendarClient: CalDAV server, for ids of the form ``caldav:<name>``

Any failure is raised as ``SourceFetchFailed``; the aggregator decides policy.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime

from digestbot.core.errors import SourceFetchFailed
from digestbot.core.models import CalendarEvent

LOGGER = logging.getLogger(__name__)


class SourceClient(abc.ABC):
    """Read-only access to remote calendars."""

    @abc.abstractmethod
    async def fetch_events(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> list[CalendarEvent]:
        """Return events overlapping ``[start, end]``."""
        ...

    @abc.abstractmethod
    async def resolve_source_name(self, source_id: str, credential: str) -> str:
        """Return the display name of ``source_id``."""
        ...

    async def list_sources(self, credential: str) -> list[tuple[str, str]]:
        """Return ``(source_id, name)`` pairs visible with ``credential``."""
        return []


class SourceRouter(SourceClient):
    """Dispatch to a client by source-id prefix (``caldav:...``), else the default."""

    def __init__(self, default: SourceClient, prefixed: dict[str, SourceClient] | None = None) -> None:
        self._default = default
        self._prefixed = dict(prefixed or {})

    def _route(self, source_id: str) -> tuple[SourceClient, str]:
        prefix, sep, rest = source_id.partition(":")
        if sep and prefix in self._prefixed:
            return self._prefixed[prefix], rest
        return self._default, source_id

    async def fetch_events(
        self,
        source_id: str,
        start: datetime,
        end: datetime,
        credential: str,
    ) -> list[CalendarEvent]:
        client, local_id = self._route(source_id)
        return await client.fetch_events(local_id, start, end, credential)

    async def resolve_source_name(self, source_id: str, credential: str) -> str:
        client, local_id = self._route(source_id)
        return await client.resolve_source_name(local_id, credential)

    async def list_sources(self, credential: str) -> list[tuple[str, str]]:
        sources = list(await self._default.list_sources(credential))
        for prefix, client in self._prefixed.items():
            try:
                extra = await client.list_sources(credential)
            except SourceFetchFailed as exc:
                LOGGER.warning("Source listing failed: prefix=%s error=%s", prefix, exc)
                continue
            sources.extend((f"{prefix}:{source_id}", name) for source_id, name in extra)
        return sources
