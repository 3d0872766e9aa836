from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from digestbot.infra.config import Settings

LOGGER = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
# Refresh a little before Google's stated expiry.
EXPIRY_MARGIN_SECONDS = 60


class GoogleTokenRefreshError(RuntimeError):
    pass


@dataclass(frozen=True)
class GoogleOAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str


@dataclass(frozen=True)
class GoogleTokens:
    access_token: str
    expires_at: float | None = None

    def is_expired(self, *, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now if now is not None else time.time()
        return self.expires_at <= current


def load_google_oauth_config(settings: Settings) -> GoogleOAuthConfig | None:
    if not settings.google_client_id or not settings.google_client_secret:
        return None
    return GoogleOAuthConfig(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.google_redirect_uri,
    )


def build_authorization_url(config: GoogleOAuthConfig, *, state: str) -> str:
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(GOOGLE_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


class GoogleAccessTokenCache:
    """Exchanges refresh tokens for access tokens and caches them until expiry."""

    def __init__(self, config: GoogleOAuthConfig, http_client: httpx.AsyncClient) -> None:
        self._config = config
        self._http_client = http_client
        self._cache: dict[str, GoogleTokens] = {}
        self._lock = asyncio.Lock()

    async def get_access_token(self, refresh_token: str, *, force_refresh: bool = False) -> str:
        cached = self._cache.get(refresh_token)
        if not force_refresh and cached is not None and not cached.is_expired():
            return cached.access_token
        async with self._lock:
            cached = self._cache.get(refresh_token)
            if not force_refresh and cached is not None and not cached.is_expired():
                return cached.access_token
            tokens = await self._refresh(refresh_token)
            self._cache[refresh_token] = tokens
            return tokens.access_token

    def invalidate(self, refresh_token: str) -> None:
        self._cache.pop(refresh_token, None)

    async def _refresh(self, refresh_token: str) -> GoogleTokens:
        payload = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._http_client.post(GOOGLE_TOKEN_URL, data=payload)
        except httpx.HTTPError as exc:
            raise GoogleTokenRefreshError(f"token refresh request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            LOGGER.warning("Google token refresh rejected: status=%s", response.status_code)
            raise GoogleTokenRefreshError(f"token refresh failed with status {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GoogleTokenRefreshError("token endpoint returned invalid JSON") from exc
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise GoogleTokenRefreshError("token response is missing access_token")
        expires_in = data.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = time.time() + max(float(expires_in) - EXPIRY_MARGIN_SECONDS, 30.0)
        return GoogleTokens(access_token=access_token, expires_at=expires_at)
