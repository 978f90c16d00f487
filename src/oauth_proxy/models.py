"""Data models shared across the proxy."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

# A credential is treated as stale this long before its nominal expiry
EXPIRY_SKEW_MS = 10_000


class RefreshStrategy(StrEnum):
    """How an expired access token gets renewed."""

    COMMAND = "command"
    OAUTH = "oauth"


class Credential(BaseModel):
    """OAuth credential record as stored under `claudeAiOauth` in the credential file.

    Unknown keys are kept so a rewrite never drops fields written by other tools.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    access_token: str = Field(default="", alias="accessToken", description="OAuth access token")
    refresh_token: str | None = Field(
        default=None, alias="refreshToken", description="OAuth refresh token"
    )
    expires_at: int | None = Field(
        default=None, alias="expiresAt", description="Expiry as epoch milliseconds"
    )

    @property
    def usable(self) -> bool:
        """Whether the record carries an access token at all."""
        return bool(self.access_token)

    def is_stale(self, now_ms: int, skew_ms: int = EXPIRY_SKEW_MS) -> bool:
        """Return True once `now_ms` is within the skew window of the expiry."""
        if self.expires_at is None:
            return False
        return now_ms >= self.expires_at - skew_ms

    @property
    def bearer(self) -> str:
        return f"Bearer {self.access_token}"


class CachedToken(BaseModel):
    """Process-wide memoized bearer string and its known expiry."""

    bearer: str = Field(description="Full Authorization header value")
    expires_at: int | None = Field(
        default=None, description="Expiry as epoch milliseconds (None if unknown)"
    )

    def is_stale(self, now_ms: int, skew_ms: int = EXPIRY_SKEW_MS) -> bool:
        if self.expires_at is None:
            return False
        return now_ms >= self.expires_at - skew_ms


class Preset(BaseModel):
    """Named bundle of extra system text and suffix messages."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    system: str | None = Field(default=None, description="Extra system prompt text")
    suffix: str | None = Field(
        default=None, description="User message inserted after the last user turn"
    )
    suffix_et: str | None = Field(
        default=None,
        alias="suffixEt",
        description="Suffix used instead of `suffix` when extended thinking is enabled",
    )


class TapDelta(BaseModel):
    """Incremental text extracted from one SSE event by the stream tap."""

    text: str | None = Field(default=None, description="Answer text delta")
    thinking: str | None = Field(default=None, description="Reasoning text delta")
