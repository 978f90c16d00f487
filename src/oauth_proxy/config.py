"""Configuration for the OAuth proxy."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oauth_proxy.models import RefreshStrategy

DEFAULT_REFRESH_COMMAND = [
    "claude",
    "-p",
    "Hi.",
    "--system-prompt",
    "This is a test, respond in one word.",
]


class ProxyConfig(BaseSettings):
    """Proxy configuration, loaded from env vars, a key=value file or CLI args."""

    model_config = SettingsConfigDict(env_prefix="OAUTH_PROXY_", extra="ignore")

    host: str = Field(default="127.0.0.1", description="Host to bind the proxy to")
    port: int = Field(default=3000, description="Port to bind the proxy to")
    log_level: str = Field(
        default="INFO", description="ERROR, WARN, INFO, DEBUG or TRACE"
    )

    # Credential store
    credentials_path: str = Field(
        default="~/.claude/.credentials.json",
        description="Path of the OAuth credential file written by the Claude CLI",
    )
    use_wsl: bool = Field(
        default_factory=lambda: sys.platform == "win32",
        description="Read and write the credential file through WSL",
    )
    refresh_strategy: RefreshStrategy = Field(
        default=RefreshStrategy.COMMAND,
        description="Renew tokens by running the CLI (command) or via the OAuth endpoint",
    )
    refresh_command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REFRESH_COMMAND),
        description="CLI invocation used by the command refresh strategy",
    )
    oauth_token_url: str = Field(
        default="https://console.anthropic.com/v1/oauth/token",
        description="OAuth token endpoint used by the oauth refresh strategy",
    )
    oauth_client_id: str = Field(
        default="9d1c250a-e61b-44d9-88ed-5944d1962f5e",
        description="OAuth client identifier sent with refresh requests",
    )
    credential_timeout: float = Field(
        default=10.0, description="Seconds allowed for credential file and refresh operations"
    )

    # Per-request credential override
    override_header: str = Field(
        default="x-proxy-credential",
        description="Request header carrying a caller-supplied credential",
    )
    promote_override_token: bool = Field(
        default=True,
        description="Cache a caller-supplied credential process-wide (last writer wins)",
    )

    # Upstream
    api_url: str = Field(
        default="https://api.anthropic.com/v1/messages?beta=true",
        description="Upstream message-completion endpoint",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version header")
    anthropic_beta: str = Field(
        default=(
            "claude-code-20250219,oauth-2025-04-20,"
            "interleaved-thinking-2025-05-14,fine-grained-tool-streaming-2025-05-14"
        ),
        description="anthropic-beta header (empty to omit)",
    )
    user_agent: str = Field(default="claude-code-proxy/1.0.0", description="User-Agent header")
    upstream_timeout: float = Field(
        default=120.0, description="Seconds allowed for an upstream completion call"
    )

    # Request rewriting
    presets_dir: str = Field(default="presets", description="Directory of <name>.json presets")
    strip_ttl: bool = Field(
        default=True, description="Remove `ttl` from cache_control blocks before forwarding"
    )

    @field_validator("refresh_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @property
    def credentials_file(self) -> Path:
        """Credential file path with `~` expanded for native access."""
        return Path(self.credentials_path).expanduser()


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a key=value config file into field overrides.

    Keys are matched case-insensitively against `ProxyConfig` field names;
    blank values are skipped.
    """
    values = dotenv_values(path)
    return {key.strip().lower(): value for key, value in values.items() if value}
