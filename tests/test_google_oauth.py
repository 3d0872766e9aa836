from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from digestbot.infra.google_oauth import (
    GOOGLE_AUTH_URL,
    GOOGLE_SCOPES,
    GoogleAccessTokenCache,
    GoogleOAuthConfig,
    GoogleTokenRefreshError,
    GoogleTokens,
    build_authorization_url,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_config(**overrides: str) -> GoogleOAuthConfig:
    defaults = {
        "client_id": "test-client-id",
        "client_secret": "test-client-secret",
        "redirect_uri": "http://localhost:3000/oauth/callback",
    }
    defaults.update(overrides)
    return GoogleOAuthConfig(**defaults)


def _token_cache(handler) -> tuple[GoogleAccessTokenCache, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleAccessTokenCache(_make_config(), client), client


# ---------------------------------------------------------------------------
# 1. Auth URL generation
# ---------------------------------------------------------------------------


def test_build_authorization_url_params() -> None:
    url = build_authorization_url(_make_config(), state="42")
    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    assert url.startswith(GOOGLE_AUTH_URL)
    assert params["state"] == ["42"]
    assert params["redirect_uri"] == ["http://localhost:3000/oauth/callback"]
    assert params["scope"] == [" ".join(GOOGLE_SCOPES)]
    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]


# ---------------------------------------------------------------------------
# 2. Access token refresh
# ---------------------------------------------------------------------------


def test_access_token_is_cached_until_expiry() -> None:
    calls: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": f"access-{len(calls)}", "expires_in": 3600})

    async def _run() -> tuple[str, str, str]:
        cache, client = _token_cache(handler)
        async with client:
            first = await cache.get_access_token("refresh-1")
            second = await cache.get_access_token("refresh-1")
            forced = await cache.get_access_token("refresh-1", force_refresh=True)
        return first, second, forced

    first, second, forced = asyncio.run(_run())

    assert (first, second, forced) == ("access-1", "access-1", "access-2")
    assert calls[0]["grant_type"] == ["refresh_token"]
    assert calls[0]["refresh_token"] == ["refresh-1"]


def test_concurrent_requests_share_one_refresh() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json={"access_token": "shared", "expires_in": 3600})

    async def _run() -> list[str]:
        cache, client = _token_cache(handler)
        async with client:
            return await asyncio.gather(*(cache.get_access_token("refresh") for _ in range(5)))

    assert asyncio.run(_run()) == ["shared"] * 5
    assert len(calls) == 1


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "invalid_grant"}),
        httpx.Response(200, json={"token_type": "Bearer"}),
        httpx.Response(200, text="not json"),
    ],
)
def test_refresh_errors_raise(response: httpx.Response) -> None:
    async def _run() -> None:
        cache, client = _token_cache(lambda request: response)
        async with client:
            await cache.get_access_token("refresh")

    with pytest.raises(GoogleTokenRefreshError):
        asyncio.run(_run())


def test_tokens_expiry() -> None:
    assert not GoogleTokens("a").is_expired()
    assert GoogleTokens("a", expires_at=100.0).is_expired(now=100.0)
    assert not GoogleTokens("a", expires_at=200.0).is_expired(now=100.0)
