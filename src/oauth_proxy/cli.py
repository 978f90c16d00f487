"""Click CLI for the OAuth proxy."""

from __future__ import annotations

import asyncio
from typing import Any

import click
import httpx
import uvicorn

from oauth_proxy import __version__
from oauth_proxy.config import ProxyConfig, load_config_file
from oauth_proxy.models import RefreshStrategy


def _build_config(config_file: str | None, overrides: dict[str, Any]) -> ProxyConfig:
    """Env vars < config file < CLI flags."""
    values: dict[str, Any] = {}
    if config_file is not None:
        values.update(load_config_file(config_file))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ProxyConfig(**values)


config_option = click.option(
    "--config",
    "config_file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="key=value config file",
)
credentials_option = click.option(
    "--credentials", "credentials_path", default=None, help="Path to the credential file"
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """OAuth proxy - authenticating reverse proxy for the Anthropic Messages API."""


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: 3000)")
@config_option
@credentials_option
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["ERROR", "WARN", "INFO", "DEBUG", "TRACE"], case_sensitive=False),
    help="Log verbosity (DEBUG renders streamed text live)",
)
@click.option("--presets-dir", default=None, help="Directory holding <name>.json presets")
@click.option(
    "--refresh-strategy",
    default=None,
    type=click.Choice([s.value for s in RefreshStrategy]),
    help="How expired tokens are renewed",
)
def start(
    host: str | None,
    port: int | None,
    config_file: str | None,
    credentials_path: str | None,
    log_level: str | None,
    presets_dir: str | None,
    refresh_strategy: str | None,
) -> None:
    """Start the proxy server."""
    config = _build_config(
        config_file,
        {
            "host": host,
            "port": port,
            "credentials_path": credentials_path,
            "log_level": log_level,
            "presets_dir": presets_dir,
            "refresh_strategy": refresh_strategy,
        },
    )

    from oauth_proxy.display.terminal import TerminalDisplay, configure_logging
    from oauth_proxy.proxy.server import create_app

    display = TerminalDisplay()
    configure_logging(config.log_level, display.console)

    display.console.print(
        f"[bold]OAuth proxy[/bold] starting on [green]http://{config.host}:{config.port}[/green]"
    )
    display.console.print(f"  Upstream: {config.api_url}")
    display.console.print(f"  Credentials: {config.credentials_path}")
    display.console.print(f"  Refresh strategy: {config.refresh_strategy.value}")
    display.console.print(f"  Presets: {config.presets_dir}")
    display.console.print()

    app = create_app(config, observer_factory=display.stream_observer)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="warning",
    )


@cli.command()
@config_option
@credentials_option
def status(config_file: str | None, credentials_path: str | None) -> None:
    """Show the state of the stored OAuth credential."""
    config = _build_config(config_file, {"credentials_path": credentials_path})
    asyncio.run(_status(config))


async def _status(config: ProxyConfig) -> None:
    from oauth_proxy.auth.base import now_ms
    from oauth_proxy.auth.store import CredentialFile
    from oauth_proxy.display.terminal import TerminalDisplay
    from oauth_proxy.errors import CredentialUnavailable

    display = TerminalDisplay()
    credential_file = CredentialFile(config)
    try:
        credential = await credential_file.load()
    except CredentialUnavailable as e:
        display.display_credential_status(credential_file.location, None, now_ms(), str(e))
        raise SystemExit(1) from e
    display.display_credential_status(credential_file.location, credential, now_ms())


@cli.command()
@config_option
@credentials_option
@click.option(
    "--refresh-strategy",
    default=None,
    type=click.Choice([s.value for s in RefreshStrategy]),
    help="How the token is renewed",
)
def refresh(
    config_file: str | None, credentials_path: str | None, refresh_strategy: str | None
) -> None:
    """Force one token refresh and show the result."""
    config = _build_config(
        config_file,
        {"credentials_path": credentials_path, "refresh_strategy": refresh_strategy},
    )
    asyncio.run(_refresh(config))


async def _refresh(config: ProxyConfig) -> None:
    from oauth_proxy.auth.base import now_ms
    from oauth_proxy.auth.manager import CredentialManager
    from oauth_proxy.auth.registry import build_refresher
    from oauth_proxy.auth.store import CredentialFile
    from oauth_proxy.display.terminal import TerminalDisplay, configure_logging
    from oauth_proxy.errors import CredentialUnavailable

    display = TerminalDisplay()
    configure_logging(config.log_level, display.console)
    credential_file = CredentialFile(config)

    async with httpx.AsyncClient() as client:
        manager = CredentialManager(
            credential_file, build_refresher(config, credential_file, client)
        )
        try:
            await manager.refresh()
        except CredentialUnavailable as e:
            display.console.print(f"[red]{e}[/red]")
            raise SystemExit(1) from e

    credential = await credential_file.load()
    display.display_credential_status(credential_file.location, credential, now_ms())
