"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from oauth_proxy.auth.base import TokenRefresher
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.errors import CredentialUnavailable
from oauth_proxy.models import Credential, RefreshStrategy

# Fixed "now" for every clock-dependent test, in epoch milliseconds
NOW_MS = 1_750_000_000_000

UPSTREAM_URL = "https://upstream.test/v1/messages?beta=true"
TOKEN_URL = "https://auth.test/v1/oauth/token"


def clock() -> int:
    return NOW_MS


class FakeRefresher(TokenRefresher):
    """Refresher that hands out numbered tokens and counts calls."""

    def __init__(
        self,
        credential_file: CredentialFile,
        *,
        fail_with: CredentialUnavailable | None = None,
    ) -> None:
        super().__init__(credential_file)
        self.calls = 0
        self.fail_with = fail_with
        self.gate: Any = None

    @property
    def strategy(self) -> RefreshStrategy:
        return RefreshStrategy.OAUTH

    async def refresh(self) -> Credential:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return Credential(
            access_token=f"refreshed-{self.calls}",
            refresh_token="rt-new",
            expires_at=NOW_MS + 3_600_000,
        )


@pytest.fixture
def config(tmp_path: Path) -> ProxyConfig:
    """Create a test config pointing at temporary files."""
    return ProxyConfig(
        credentials_path=str(tmp_path / ".credentials.json"),
        presets_dir=str(tmp_path / "presets"),
        use_wsl=False,
        refresh_strategy=RefreshStrategy.OAUTH,
        oauth_token_url=TOKEN_URL,
        api_url=UPSTREAM_URL,
    )


@pytest.fixture
def credential_file(config: ProxyConfig) -> CredentialFile:
    return CredentialFile(config)


@pytest.fixture
def write_credentials(config: ProxyConfig) -> Callable[..., dict[str, Any]]:
    """Write a credential document and return it."""

    def _write(
        access_token: str | None = "at-stored",
        refresh_token: str | None = "rt-stored",
        expires_at: int | None = NOW_MS + 3_600_000,
        **extra: Any,
    ) -> dict[str, Any]:
        oauth: dict[str, Any] = {}
        if access_token is not None:
            oauth["accessToken"] = access_token
        if refresh_token is not None:
            oauth["refreshToken"] = refresh_token
        if expires_at is not None:
            oauth["expiresAt"] = expires_at
        oauth.update(extra)
        document = {"claudeAiOauth": oauth, "otherTool": {"keep": True}}
        config.credentials_file.write_text(json.dumps(document), encoding="utf-8")
        return document

    return _write


@pytest.fixture
def write_preset(config: ProxyConfig) -> Callable[[str, dict[str, Any]], Path]:
    """Write a preset JSON file into the configured presets directory."""

    def _write(name: str, data: dict[str, Any]) -> Path:
        directory = Path(config.presets_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name}.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
