from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

STORE_NAME = "image-compressor-storage"
DEFAULT_HOME = Path.home() / ".imgpress"
DEFAULT_TARGET_CODEC = "webp"
DEFAULT_HISTORY_LIMIT = 200


@dataclass(slots=True)
class AppConfig:
    home_dir: Path = DEFAULT_HOME
    target_codec: str = DEFAULT_TARGET_CODEC
    history_limit: int | None = DEFAULT_HISTORY_LIMIT
    log_level: str = "INFO"

    @property
    def storage_path(self) -> Path:
        return self.home_dir / f"{STORE_NAME}.json"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ
        config = cls()

        home = env.get("IMGPRESS_HOME", "").strip()
        if home:
            config.home_dir = Path(home).expanduser()

        codec = env.get("IMGPRESS_TARGET_CODEC", "").strip().lower()
        if codec:
            config.target_codec = codec

        limit = env.get("IMGPRESS_HISTORY_LIMIT", "").strip()
        if limit:
            try:
                parsed = int(limit)
            except ValueError as error:
                raise ValueError(f"IMGPRESS_HISTORY_LIMIT must be an integer, got {limit!r}") from error
            config.history_limit = parsed if parsed > 0 else None

        level = env.get("IMGPRESS_LOG_LEVEL", "").strip().upper()
        if level:
            config.log_level = level

        return config
