"""Refresh strategy that lets the Claude CLI renew its own credential."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from oauth_proxy.auth.base import TokenRefresher, now_ms
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.errors import (
    CredentialStoreMissing,
    CredentialUnavailable,
    RefreshFailed,
    RefreshTimeout,
)
from oauth_proxy.models import Credential, RefreshStrategy

logger = logging.getLogger(__name__)


class ExternalCliRefresher(TokenRefresher):
    """Runs a one-shot CLI prompt, then re-reads the credential file the CLI updated."""

    def __init__(
        self,
        credential_file: CredentialFile,
        config: ProxyConfig,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        super().__init__(credential_file)
        self._config = config
        self._clock = clock

    @property
    def strategy(self) -> RefreshStrategy:
        return RefreshStrategy.COMMAND

    @property
    def argv(self) -> list[str]:
        argv = list(self._config.refresh_command)
        if self._config.use_wsl:
            argv.insert(0, "wsl")
        return argv

    async def refresh(self) -> Credential:
        argv = self.argv
        timeout = self._config.credential_timeout
        logger.info("Refreshing token by running %s", argv[0])

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RefreshFailed(
                f"could not run {argv[0]!r} ({e}). Install the Claude CLI or switch "
                "refresh_strategy to oauth."
            ) from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise RefreshTimeout(timeout) from e

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise RefreshFailed(f"{argv[0]} exited with code {proc.returncode}: {detail}")

        try:
            credential = await self._file.load()
        except CredentialStoreMissing:
            raise
        except CredentialUnavailable as e:
            raise RefreshFailed(f"credential file unreadable after {argv[0]} run: {e}") from e
        if not credential.usable or credential.is_stale(self._clock()):
            raise RefreshFailed(f"no valid token found after {argv[0]} run")

        logger.info("Successfully refreshed token via %s", argv[0])
        return credential
