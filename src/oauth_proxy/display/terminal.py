"""Rich terminal output: log handler, live stream rendering and status tables."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from oauth_proxy.models import Credential, TapDelta
from oauth_proxy.proxy.streaming import StreamObserver

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": TRACE,
}


def parse_log_level(name: str) -> int:
    """Map a configured level name to a logging level, defaulting to INFO."""
    return LOG_LEVELS.get(name.strip().upper(), logging.INFO)


def configure_logging(level: str, console: Console | None = None) -> None:
    """Route the package's log records through a RichHandler at `level`."""
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger = logging.getLogger("oauth_proxy")
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(parse_log_level(level))
    package_logger.propagate = False


class TerminalStreamObserver(StreamObserver):
    """Prints streamed answer text live, with reasoning text dimmed."""

    def __init__(self, console: Console, label: str = "Claude SSE") -> None:
        self._console = console
        self._label = label
        self._logger = logging.getLogger(__name__)
        self._started = False
        self._saw_thinking = False
        self._answer_started = False

    def on_chunk(self, chunk: bytes) -> None:
        self._logger.log(
            TRACE, "%s (%d bytes): %s", self._label, len(chunk), chunk.decode("utf-8", "replace")
        )

    def on_delta(self, delta: TapDelta) -> None:
        if not self._started:
            self._logger.debug("%s streaming started", self._label)
            self._started = True
        if delta.thinking:
            self._saw_thinking = True
            self._console.print(Text(delta.thinking, style="dim"), end="")
        if delta.text:
            if self._saw_thinking and not self._answer_started:
                self._console.print()
                self._logger.debug("%s switching from thinking to response", self._label)
            self._answer_started = True
            self._console.print(Text(delta.text), end="")

    def on_close(self) -> None:
        if self._started:
            self._console.print()


class TerminalDisplay:
    """Rich terminal display for the proxy."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Access the underlying Rich console."""
        return self._console

    def stream_observer(self) -> TerminalStreamObserver | None:
        """Observer for one relayed stream, or None when debug output is off."""
        if not logging.getLogger("oauth_proxy").isEnabledFor(logging.DEBUG):
            return None
        return TerminalStreamObserver(self._console)

    def display_credential_status(
        self, location: str, credential: Credential | None, now_ms: int, error: str | None = None
    ) -> None:
        """Render the credential file state as a table."""
        table = Table(title="Credential status", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Location", location)

        if credential is None:
            table.add_row("State", Text(error or "unavailable", style="red"))
            self._console.print(table)
            return

        table.add_row("Access token", "present" if credential.usable else Text("missing", "red"))
        table.add_row("Refresh token", "present" if credential.refresh_token else "missing")
        if credential.expires_at is None:
            table.add_row("Expires", "unknown")
        else:
            expires = datetime.fromtimestamp(credential.expires_at / 1000, tz=UTC)
            remaining = (credential.expires_at - now_ms) / 1000
            table.add_row("Expires", f"{expires.isoformat()} ({remaining:+.0f}s)")
        stale = credential.is_stale(now_ms)
        table.add_row("State", Text("stale", "yellow") if stale else Text("valid", "green"))
        self._console.print(table)
