"""File-backed catalog of request presets."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from oauth_proxy.models import Preset

logger = logging.getLogger(__name__)

PRESET_NAME = re.compile(r"^\w+$")


class PresetStore:
    """Loads `<directory>/<name>.json` presets and memoizes them for the process lifetime.

    Failed lookups are memoized too, so an unknown name costs one filesystem
    attempt per process.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._cache: dict[str, Preset | None] = {}

    def load(self, name: str) -> Preset | None:
        if name in self._cache:
            return self._cache[name]

        preset: Preset | None = None
        if not PRESET_NAME.match(name):
            logger.warning("Rejected preset name %r", name)
        else:
            path = self._directory / f"{name}.json"
            try:
                preset = Preset.model_validate(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning("Failed to load preset %s: %s", name, e)

        self._cache[name] = preset
        return preset
