"""Bearer token cache with single-flight refresh."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from oauth_proxy.auth.base import TokenRefresher, now_ms
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.errors import CredentialUnavailable
from oauth_proxy.models import CachedToken

logger = logging.getLogger(__name__)


def normalize_bearer(value: str) -> str:
    """Turn a caller-supplied credential into an Authorization header value."""
    value = value.strip()
    if value.lower().startswith("bearer "):
        return f"Bearer {value[7:].strip()}"
    return f"Bearer {value}"


class CredentialManager:
    """Produces a currently valid bearer credential on demand.

    One instance is built at startup and shared by every request. It owns the
    cached token and the in-flight refresh task; at most one refresh runs at a
    time and every concurrent caller awaits that same task.
    """

    def __init__(
        self,
        credential_file: CredentialFile,
        refresher: TokenRefresher,
        *,
        promote_override: bool = True,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._file = credential_file
        self._refresher = refresher
        self._promote_override = promote_override
        self._clock = clock
        self._cached: CachedToken | None = None
        self._pending: asyncio.Task[str] | None = None

    @property
    def cached(self) -> CachedToken | None:
        return self._cached

    @property
    def refresh_pending(self) -> bool:
        return self._pending is not None

    async def get_token(self, override: str | None = None) -> str:
        """Return a bearer string, loading or refreshing the credential as needed.

        A non-empty `override` wins for this call and, when promotion is
        enabled, replaces the cached token for later calls too.
        """
        if override:
            bearer = normalize_bearer(override)
            if self._promote_override:
                self._cached = CachedToken(bearer=bearer)
            return bearer

        cached = self._cached
        if cached is not None and not cached.is_stale(self._clock()):
            return cached.bearer

        try:
            credential = await self._file.load()
        except CredentialUnavailable as e:
            logger.debug("No valid token in credential file (%s), trying refresh", e)
        else:
            if credential.usable and not credential.is_stale(self._clock()):
                logger.debug("Loaded token from credential file")
                self._cached = CachedToken(
                    bearer=credential.bearer, expires_at=credential.expires_at
                )
                return credential.bearer
            logger.debug("Stored token is missing or expires within the skew window")

        # Another caller may have finished a refresh while the file was being read
        cached = self._cached
        if cached is not None and not cached.is_stale(self._clock()):
            return cached.bearer
        return await self.refresh()

    def invalidate(self) -> None:
        """Forget the cached token. The credential file is left alone."""
        self._cached = None

    async def refresh(self) -> str:
        """Renew the credential, joining a refresh already in flight if there is one."""
        task = self._pending
        if task is None:
            task = asyncio.ensure_future(self._run_refresh())
            task.add_done_callback(_consume_exception)
            self._pending = task
        else:
            logger.debug("Refresh already in flight, waiting for it")
        # Shielded so that one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(task)

    async def _run_refresh(self) -> str:
        try:
            credential = await self._refresher.refresh()
            self._cached = CachedToken(bearer=credential.bearer, expires_at=credential.expires_at)
            return credential.bearer
        except CredentialUnavailable as e:
            logger.error("Token refresh failed: %s", e)
            raise
        finally:
            self._pending = None


def _consume_exception(task: asyncio.Task[str]) -> None:
    # Marks the exception retrieved when every waiter was cancelled before the outcome
    if not task.cancelled():
        task.exception()
