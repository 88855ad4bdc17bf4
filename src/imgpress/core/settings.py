from __future__ import annotations

import logging
import threading
from typing import Any

from imgpress.core.models import CompressionSettings
from imgpress.core.storage import Storage

log = logging.getLogger(__name__)

SETTING_FIELDS = ("max_size_mb", "max_dimension_px", "quality")


class SettingsStore:
    def __init__(self, storage: Storage, settings: CompressionSettings | None = None) -> None:
        self.storage = storage
        self._settings = settings or CompressionSettings()
        self._lock = threading.Lock()

    @classmethod
    def load(cls, storage: Storage) -> SettingsStore:
        stored = storage.read().get("settings")
        settings = CompressionSettings()
        if isinstance(stored, dict):
            values = {key: stored[key] for key in SETTING_FIELDS if key in stored}
            try:
                settings = CompressionSettings(**{**settings.to_dict(), **values})
            except ValueError as error:
                log.warning("Ignoring stored settings: %s", error)
        return cls(storage, settings)

    def snapshot(self) -> CompressionSettings:
        return self._settings

    def update(self, **changes: Any) -> CompressionSettings:
        unknown = set(changes) - set(SETTING_FIELDS)
        if unknown:
            raise TypeError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

        with self._lock:
            merged = {**self._settings.to_dict(), **changes}
            self._settings = CompressionSettings(**merged)
            self.storage.write(settings=self._settings.to_dict())
        return self._settings

    def reset(self) -> CompressionSettings:
        with self._lock:
            self._settings = CompressionSettings()
            self.storage.write(settings=self._settings.to_dict())
        return self._settings
