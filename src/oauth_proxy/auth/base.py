"""Abstract base class for token refresh strategies."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.models import Credential, RefreshStrategy


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TokenRefresher(ABC):
    """Common contract for obtaining a fresh credential.

    Implementations raise a `CredentialUnavailable` subclass on failure and are
    responsible for leaving the renewed credential in the credential file.
    """

    def __init__(self, credential_file: CredentialFile) -> None:
        self._file = credential_file

    @property
    @abstractmethod
    def strategy(self) -> RefreshStrategy:
        """Return the strategy enum value."""

    @abstractmethod
    async def refresh(self) -> Credential:
        """Renew the credential and return it."""
