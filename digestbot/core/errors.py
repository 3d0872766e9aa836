from __future__ import annotations

from typing import Final

NOT_LINKED_TEXT: Final[str] = "You haven't linked your Google Calendar yet. Use /setup to get started."
NOT_FOUND_TEXT: Final[str] = "You don't have a calendar configuration yet. Ask the bot owner to add you."
INVALID_TIMEZONE_TEXT: Final[str] = "Your configured timezone is not valid. Ask the bot owner to fix it."
FETCH_FAILED_TEXT: Final[str] = "Failed to fetch events. Please try again or use /setup to re-link your calendar."


class DigestError(Exception):
    """Base class for aggregation and scheduling errors."""


class InvalidTimezone(DigestError):
    def __init__(self, name: str) -> None:
        super().__init__(f"invalid_timezone:{name}")
        self.name = name


class UserNotFound(DigestError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"user_not_found:{user_id}")
        self.user_id = user_id


class NotLinked(DigestError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"not_linked:{user_id}")
        self.user_id = user_id


class SourceFetchFailed(DigestError):
    def __init__(self, source_id: str, cause: BaseException | str) -> None:
        reason = cause if isinstance(cause, str) else cause.__class__.__name__
        super().__init__(f"source_fetch_failed:{source_id}:{reason}")
        self.source_id = source_id
        self.cause = cause


class InvalidTriggerTime(DigestError):
    def __init__(self, raw: object) -> None:
        super().__init__(f"invalid_trigger_time:{raw!r}")
        self.raw = raw


def refusal_text(error: Exception) -> str:
    if isinstance(error, NotLinked):
        return NOT_LINKED_TEXT
    if isinstance(error, UserNotFound):
        return NOT_FOUND_TEXT
    if isinstance(error, InvalidTimezone):
        return INVALID_TIMEZONE_TEXT
    return FETCH_FAILED_TEXT
