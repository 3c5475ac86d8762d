"""Durable JSON key-value store for the job collection and settings."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from services.errors import CorruptPersistedState

logger = logging.getLogger(__name__)

JOBS_KEY = "jobs"
SETTINGS_KEY = "settings"


class JsonFileStore:
    """
    One ``<key>.json`` document per key under ``directory``.

    Writes go to a temp file in the same directory and are swapped in with
    os.replace, so a crash never leaves a half-written document behind.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def read(self, key: str) -> Any:
        """
        Return the decoded document, or None when nothing is stored.

        :raises CorruptPersistedState: the stored bytes are not UTF-8 JSON
        """
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise CorruptPersistedState(f"{path.name}: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptPersistedState(f"{path.name}: {exc}") from exc

    def load(self, key: str, default: Any) -> Any:
        try:
            value = self.read(key)
        except CorruptPersistedState as exc:
            logger.warning("[persistence] Corrupt stored value for %r, using default: %s", key, exc)
            return default
        return default if value is None else value

    def save(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self._directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(value, handle, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
