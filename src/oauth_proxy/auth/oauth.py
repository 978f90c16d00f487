"""Refresh strategy that calls the OAuth token endpoint directly."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from oauth_proxy.auth.base import TokenRefresher, now_ms
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.errors import (
    NoRefreshToken,
    RefreshFailed,
    RefreshTimeout,
    RefreshTokenExpired,
)
from oauth_proxy.models import Credential, RefreshStrategy

logger = logging.getLogger(__name__)


class OAuthHttpRefresher(TokenRefresher):
    """Exchanges the stored refresh token for a new access token."""

    def __init__(
        self,
        credential_file: CredentialFile,
        config: ProxyConfig,
        http_client: httpx.AsyncClient,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__(credential_file)
        self._config = config
        self._client = http_client
        self._clock = clock

    @property
    def strategy(self) -> RefreshStrategy:
        return RefreshStrategy.OAUTH

    async def refresh(self) -> Credential:
        current = await self._file.load()
        if not current.refresh_token:
            raise NoRefreshToken()

        logger.info("Refreshing OAuth token via %s", self._config.oauth_token_url)
        try:
            response = await self._client.post(
                self._config.oauth_token_url,
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": current.refresh_token,
                    "client_id": self._config.oauth_client_id,
                },
                headers={"Accept": "application/json"},
                timeout=self._config.credential_timeout,
            )
        except httpx.TimeoutException as e:
            raise RefreshTimeout(self._config.credential_timeout) from e
        except httpx.HTTPError as e:
            raise RefreshFailed(str(e) or type(e).__name__) from e

        if response.status_code != 200:
            raise self._classify_failure(response)

        try:
            token_data = response.json()
            access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise RefreshFailed(f"unexpected token response: {response.text[:200]}") from e

        renewed = current.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": token_data.get("refresh_token") or current.refresh_token,
                "expires_at": self._clock() + expires_in * 1000,
            }
        )
        await self._file.save(renewed)
        logger.info("Successfully refreshed token via OAuth")
        return renewed

    @staticmethod
    def _classify_failure(response: httpx.Response) -> Exception:
        body: Any
        try:
            body = response.json()
        except ValueError:
            body = None

        error_code = None
        message = response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                error_code = error.get("type") or error.get("code")
                message = error.get("message") or message
            elif isinstance(error, str):
                error_code = error
                message = body.get("error_description") or error

        if error_code == "invalid_grant":
            return RefreshTokenExpired(message)
        return RefreshFailed(f"{response.status_code} {message}")
