from __future__ import annotations

from typing import Mapping

from digestbot.core.errors import NotLinked
from digestbot.infra.config import Settings


class CredentialStore:
    """Linked Google refresh tokens, keyed by user id. Read-only after startup."""

    def __init__(self, tokens: Mapping[int, str]) -> None:
        self._tokens = {user_id: token for user_id, token in tokens.items() if token}

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialStore":
        return cls(settings.refresh_tokens)

    def has_linked_credential(self, user_id: int) -> bool:
        return user_id in self._tokens

    def get_credential(self, user_id: int) -> str:
        token = self._tokens.get(user_id)
        if token is None:
            raise NotLinked(user_id)
        return token

    def linked_user_ids(self) -> set[int]:
        return set(self._tokens)
