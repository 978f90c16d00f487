"""Read/write access to the OAuth credential file.

The file is shared with the Claude CLI and is read and rewritten in place
without any cross-process lock. Concurrent writers can clobber each other;
that is an accepted limitation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError

from oauth_proxy.config import ProxyConfig
from oauth_proxy.errors import CredentialStoreMissing, CredentialUnavailable
from oauth_proxy.models import Credential

logger = logging.getLogger(__name__)

# Top-level key holding the OAuth record inside the credential document
OAUTH_SECTION = "claudeAiOauth"


class CredentialFile:
    """Narrow load/save interface over the credential JSON document."""

    def __init__(self, config: ProxyConfig) -> None:
        self._config = config
        self._timeout = config.credential_timeout

    @property
    def location(self) -> str:
        if self._config.use_wsl:
            return f"wsl:{self._config.credentials_path}"
        return str(self._config.credentials_file)

    async def exists(self) -> bool:
        try:
            await self.load_document()
        except CredentialStoreMissing:
            return False
        except CredentialUnavailable:
            return True
        return True

    async def load_document(self) -> dict[str, Any]:
        """Return the whole credential document."""
        if self._config.use_wsl:
            raw = await self._run_wsl(["cat", self._config.credentials_path])
        else:
            try:
                raw = await asyncio.wait_for(
                    asyncio.to_thread(self._config.credentials_file.read_text, "utf-8"),
                    timeout=self._timeout,
                )
            except FileNotFoundError as e:
                raise CredentialStoreMissing(self.location) from e
            except (OSError, TimeoutError) as e:
                raise CredentialUnavailable(f"Cannot read {self.location}: {e}") from e

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialUnavailable(f"Malformed credential file {self.location}: {e}") from e
        if not isinstance(document, dict):
            raise CredentialUnavailable(f"Malformed credential file {self.location}")
        return document

    async def load(self) -> Credential:
        """Return the OAuth credential record."""
        document = await self.load_document()
        section = document.get(OAUTH_SECTION)
        if not isinstance(section, dict):
            raise CredentialUnavailable(f"No {OAUTH_SECTION} record in {self.location}")
        try:
            return Credential.model_validate(section)
        except ValidationError as e:
            raise CredentialUnavailable(f"Invalid {OAUTH_SECTION} record: {e}") from e

    async def save(self, credential: Credential) -> None:
        """Merge `credential` into the stored record and write the document back.

        Fields not carried by `credential` (other sections, unknown keys of the
        OAuth record) are preserved.
        """
        try:
            document = await self.load_document()
        except CredentialStoreMissing:
            document = {}
        section = document.get(OAUTH_SECTION)
        if not isinstance(section, dict):
            section = {}
        section.update(credential.model_dump(by_alias=True, exclude_none=True))
        document[OAUTH_SECTION] = section
        payload = json.dumps(document)

        if self._config.use_wsl:
            await self._run_wsl(["tee", self._config.credentials_path], stdin=payload)
        else:
            try:
                await asyncio.to_thread(
                    self._config.credentials_file.write_text, payload, "utf-8"
                )
            except OSError as e:
                raise CredentialUnavailable(f"Cannot write {self.location}: {e}") from e
        logger.debug("Saved credential to %s", self.location)

    async def _run_wsl(self, args: list[str], stdin: str | None = None) -> str:
        """Run a command inside WSL and return its stdout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "wsl",
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CredentialUnavailable("wsl is not available on this system") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode("utf-8") if stdin is not None else None),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise CredentialUnavailable(
                f"wsl {args[0]} timed out after {self._timeout:g}s"
            ) from e

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            if "No such file" in message:
                raise CredentialStoreMissing(self.location)
            raise CredentialUnavailable(f"wsl {args[0]} failed: {message}")
        return stdout.decode("utf-8")
