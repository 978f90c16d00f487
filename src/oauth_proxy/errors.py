"""Exception hierarchy for the proxy."""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors raised by the proxy itself."""


class CredentialUnavailable(ProxyError):
    """No usable bearer credential could be produced."""


class CredentialStoreMissing(CredentialUnavailable):
    """The credential file does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Credential file not found at {path}. Install the Claude CLI and run "
            "`claude login` to create it, or send a credential with each request "
            "using the override header."
        )
        self.path = path


class NoRefreshToken(CredentialUnavailable):
    """The credential record has no refresh token."""

    def __init__(self) -> None:
        super().__init__(
            "No refresh token available in the credential file. "
            "Run `claude login` to authenticate again."
        )


class RefreshTokenExpired(CredentialUnavailable):
    """The OAuth server rejected the refresh token (invalid_grant)."""

    def __init__(self, detail: str | None = None) -> None:
        message = "Refresh token expired or revoked. Run `claude login` to authenticate again."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RefreshTimeout(CredentialUnavailable):
    """A refresh attempt did not finish within the credential timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Token refresh timed out after {timeout:g}s")
        self.timeout = timeout


class RefreshFailed(CredentialUnavailable):
    """A refresh attempt failed for any other reason."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Token refresh failed: {detail}")
        self.detail = detail


class InvalidSystemField(ProxyError):
    """The request carried a `system` field that is not a list of content blocks."""

    def __init__(self, value_type: str) -> None:
        super().__init__(f"system field must be an array, got {value_type}")


class UpstreamTransportFailure(ProxyError):
    """The upstream could not be reached or the connection failed mid-request."""
