"""Upstream payload construction: cache-control sanitizing, preamble and presets."""

from __future__ import annotations

import copy
import logging
from typing import Any

from oauth_proxy.errors import InvalidSystemField
from oauth_proxy.presets import PresetStore

logger = logging.getLogger(__name__)

SYSTEM_PREAMBLE = "You are Claude Code, Anthropic's official CLI for Claude."


def preamble_block() -> dict[str, Any]:
    return {"type": "text", "text": SYSTEM_PREAMBLE}


def strip_ttl(body: dict[str, Any]) -> dict[str, Any]:
    """Remove `ttl` from every `cache_control` object in `system` and message content.

    Mutates and returns `body`; everything else is left as is.
    """
    system = body.get("system")
    if isinstance(system, list):
        _strip_blocks(system)

    messages = body.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if isinstance(message, dict) and isinstance(message.get("content"), list):
                _strip_blocks(message["content"])
    return body


def _strip_blocks(blocks: list[Any]) -> None:
    for block in blocks:
        if not isinstance(block, dict):
            continue
        cache_control = block.get("cache_control")
        if isinstance(cache_control, dict) and "ttl" in cache_control:
            del cache_control["ttl"]
            logger.debug("Removed ttl from cache_control")


class RequestTransformer:
    """Builds the exact payload sent upstream from a client request body."""

    def __init__(self, presets: PresetStore, *, strip_ttl: bool = True) -> None:
        self._presets = presets
        self._strip_ttl = strip_ttl

    def build(
        self, body: dict[str, Any] | None, preset_name: str | None = None
    ) -> dict[str, Any] | None:
        """Return the upstream payload for `body`.

        The caller's body is never modified, so the same body can be rebuilt
        for a retry. Raises `InvalidSystemField` when `system` is present but
        not a list.
        """
        if body is None:
            return None

        system = body.get("system")
        if system is not None and not isinstance(system, list):
            raise InvalidSystemField(type(system).__name__)

        payload = copy.deepcopy(body)
        if self._strip_ttl:
            strip_ttl(payload)
        self._inject_preamble(payload)
        if preset_name:
            self._apply_preset(payload, preset_name)
        return payload

    @staticmethod
    def _inject_preamble(payload: dict[str, Any]) -> None:
        system = payload.get("system")
        if not system:
            payload["system"] = [preamble_block()]
        elif system[0] != preamble_block():
            system.insert(0, preamble_block())

    def _apply_preset(self, payload: dict[str, Any], preset_name: str) -> None:
        preset = self._presets.load(preset_name)
        if preset is None:
            logger.warning("Unknown preset: %s", preset_name)
            return

        if preset.system:
            block = {"type": "text", "text": preset.system}
            if block not in payload["system"][1:]:
                payload["system"].append(block)

        thinking = payload.get("thinking")
        thinking_enabled = isinstance(thinking, dict) and thinking.get("type") == "enabled"
        suffix = preset.suffix_et if thinking_enabled else preset.suffix
        messages = payload.get("messages")
        if suffix and isinstance(messages, list) and messages:
            self._insert_suffix(messages, suffix)

        logger.debug("Applied preset: %s", preset_name)

    @staticmethod
    def _insert_suffix(messages: list[Any], suffix: str) -> None:
        last_user = None
        for index, message in enumerate(messages):
            if isinstance(message, dict) and message.get("role") == "user":
                last_user = index
        if last_user is None:
            return

        suffix_message = {"role": "user", "content": [{"type": "text", "text": suffix}]}
        if messages[last_user] == suffix_message:
            return
        messages.insert(last_user + 1, suffix_message)
