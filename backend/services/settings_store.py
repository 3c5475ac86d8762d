from __future__ import annotations

import dataclasses
import logging
from typing import Any

from models.settings import SETTINGS_FIELDS, Settings
from services.persistence import SETTINGS_KEY, JsonFileStore

logger = logging.getLogger(__name__)


class SettingsStore:
    """
    Branding and scheduling settings. Passive: the engine copies them onto new
    jobs but never changes behaviour because of them. Last write wins.
    """

    def __init__(self, persistence: JsonFileStore) -> None:
        self._persistence = persistence
        self._settings = Settings()

    def load(self) -> Settings:
        data = self._persistence.load(SETTINGS_KEY, {})
        if not isinstance(data, dict):
            logger.warning(
                "[settings_store] Stored settings is a %s, not an object; using defaults",
                type(data).__name__,
            )
            data = {}
        self._settings = Settings.from_dict(data)
        return self._settings

    def get(self) -> Settings:
        return self._settings

    def update(self, **changes: Any) -> Settings:
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            raise TypeError(f"Unknown settings fields: {sorted(unknown)}")
        return self.replace(dataclasses.replace(self._settings, **changes))

    def replace(self, settings: Settings) -> Settings:
        self._settings = settings
        self._persistence.save(SETTINGS_KEY, settings.to_dict())
        logger.info("[settings_store] Settings saved: %s", sorted(settings.to_dict()))
        return settings
