"""Refresh strategy selection."""

from __future__ import annotations

import httpx

from oauth_proxy.auth.base import TokenRefresher
from oauth_proxy.auth.command import ExternalCliRefresher
from oauth_proxy.auth.oauth import OAuthHttpRefresher
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.models import RefreshStrategy


def build_refresher(
    config: ProxyConfig,
    credential_file: CredentialFile,
    http_client: httpx.AsyncClient,
) -> TokenRefresher:
    """Return the refresher named by `config.refresh_strategy`."""
    if config.refresh_strategy == RefreshStrategy.OAUTH:
        return OAuthHttpRefresher(credential_file, config, http_client)
    return ExternalCliRefresher(credential_file, config)
