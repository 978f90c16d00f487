"""Tests for the OAuth HTTP refresh strategy."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from conftest import NOW_MS, TOKEN_URL, clock

from oauth_proxy.auth.oauth import OAuthHttpRefresher
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.errors import (
    CredentialStoreMissing,
    NoRefreshToken,
    RefreshFailed,
    RefreshTimeout,
    RefreshTokenExpired,
)


def _refresher(
    config: ProxyConfig,
    credential_file: CredentialFile,
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[OAuthHttpRefresher, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OAuthHttpRefresher(credential_file, config, client, clock=clock), client


@pytest.mark.asyncio
async def test_successful_refresh_updates_file(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials(refresh_token="rt-old", expires_at=NOW_MS - 1, scopes=["a"])
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"access_token": "at-new", "refresh_token": "rt-new", "expires_in": 3600},
        )

    refresher, client = _refresher(config, credential_file, handler)
    credential = await refresher.refresh()
    await client.aclose()

    assert credential.access_token == "at-new"
    assert credential.expires_at == NOW_MS + 3_600_000

    assert len(requests) == 1
    assert str(requests[0].url) == TOKEN_URL
    sent = json.loads(requests[0].content)
    assert sent == {
        "grant_type": "refresh_token",
        "refresh_token": "rt-old",
        "client_id": config.oauth_client_id,
    }

    document = json.loads(config.credentials_file.read_text(encoding="utf-8"))
    assert document["otherTool"] == {"keep": True}
    assert document["claudeAiOauth"]["accessToken"] == "at-new"
    assert document["claudeAiOauth"]["refreshToken"] == "rt-new"
    assert document["claudeAiOauth"]["scopes"] == ["a"]


@pytest.mark.asyncio
async def test_refresh_token_kept_when_not_rotated(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials(refresh_token="rt-old")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "at-new", "expires_in": 60})

    refresher, client = _refresher(config, credential_file, handler)
    credential = await refresher.refresh()
    await client.aclose()

    assert credential.refresh_token == "rt-old"


@pytest.mark.asyncio
async def test_missing_refresh_token(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials(refresh_token=None)
    refresher, client = _refresher(config, credential_file, lambda r: httpx.Response(200))

    with pytest.raises(NoRefreshToken):
        await refresher.refresh()
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_store(config: ProxyConfig, credential_file: CredentialFile) -> None:
    refresher, client = _refresher(config, credential_file, lambda r: httpx.Response(200))

    with pytest.raises(CredentialStoreMissing):
        await refresher.refresh()
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"error": "invalid_grant", "error_description": "Refresh token revoked"},
        {"error": {"type": "invalid_grant", "message": "Refresh token revoked"}},
    ],
)
async def test_invalid_grant_is_expired(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
    body: dict[str, Any],
) -> None:
    write_credentials()
    refresher, client = _refresher(
        config, credential_file, lambda r: httpx.Response(400, json=body)
    )

    with pytest.raises(RefreshTokenExpired) as excinfo:
        await refresher.refresh()
    await client.aclose()
    assert "Refresh token revoked" in str(excinfo.value)


@pytest.mark.asyncio
async def test_server_error_is_refresh_failed(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials(access_token="at-stored")
    refresher, client = _refresher(
        config,
        credential_file,
        lambda r: httpx.Response(500, json={"error": {"type": "api_error", "message": "down"}}),
    )

    with pytest.raises(RefreshFailed) as excinfo:
        await refresher.refresh()
    await client.aclose()
    assert "down" in str(excinfo.value)

    stored = json.loads(config.credentials_file.read_text(encoding="utf-8"))
    assert stored["claudeAiOauth"]["accessToken"] == "at-stored"


@pytest.mark.asyncio
async def test_timeout_is_refresh_timeout(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    refresher, client = _refresher(config, credential_file, handler)
    with pytest.raises(RefreshTimeout):
        await refresher.refresh()
    await client.aclose()


@pytest.mark.asyncio
async def test_connection_error_is_refresh_failed(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
) -> None:
    write_credentials()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    refresher, client = _refresher(config, credential_file, handler)
    with pytest.raises(RefreshFailed) as excinfo:
        await refresher.refresh()
    await client.aclose()
    assert "Connection refused" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_in", [None, "soon", [3600]])
async def test_malformed_expires_in_is_refresh_failed(
    config: ProxyConfig,
    credential_file: CredentialFile,
    write_credentials: Callable[..., dict[str, Any]],
    expires_in: Any,
) -> None:
    write_credentials(access_token="at-stored")
    refresher, client = _refresher(
        config,
        credential_file,
        lambda r: httpx.Response(200, json={"access_token": "at-new", "expires_in": expires_in}),
    )

    with pytest.raises(RefreshFailed) as excinfo:
        await refresher.refresh()
    await client.aclose()
    assert "unexpected token response" in str(excinfo.value)

    stored = json.loads(config.credentials_file.read_text(encoding="utf-8"))
    assert stored["claudeAiOauth"]["accessToken"] == "at-stored"
