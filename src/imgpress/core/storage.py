from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

log = logging.getLogger(__name__)

STORAGE_VERSION = 2


class Storage(Protocol):
    def read(self) -> dict[str, Any]: ...

    def write(self, **sections: Any) -> None: ...

    def read_blob(self, key: str) -> bytes: ...

    def write_blob(self, key: str, data: bytes) -> None: ...

    def delete_blob(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self, initial: dict[str, Any] | None = None, blobs: dict[str, bytes] | None = None) -> None:
        self._record: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._blobs: dict[str, bytes] = dict(blobs or {})
        self.write_count = 0
        self.blob_write_count = 0

    def read(self) -> dict[str, Any]:
        return copy.deepcopy(self._record)

    def write(self, **sections: Any) -> None:
        self._record.update(copy.deepcopy(sections))
        self._record["version"] = STORAGE_VERSION
        self.write_count += 1

    def read_blob(self, key: str) -> bytes:
        try:
            return self._blobs[key]
        except KeyError:
            raise FileNotFoundError(f"No blob stored under {key!r}") from None

    def write_blob(self, key: str, data: bytes) -> None:
        self._blobs[key] = bytes(data)
        self.blob_write_count += 1

    def delete_blob(self, key: str) -> None:
        self._blobs.pop(key, None)

    def blob_keys(self) -> set[str]:
        return set(self._blobs)


class JsonFileStorage:
    # Small sections live in one JSON document; image bytes go to a sibling
    # blob directory, one file per key, so section writes never carry them.

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.blob_dir = self.path.with_name(f"{self.path.stem}-blobs")
        self._record: dict[str, Any] | None = None
        self._lock = threading.Lock()

    def read(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._cached())

    def write(self, **sections: Any) -> None:
        with self._lock:
            record = self._cached()
            record.update(copy.deepcopy(sections))
            record["version"] = STORAGE_VERSION

            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_name(self.path.name + ".tmp")
            with temp_path.open("w", encoding="utf-8") as stream:
                json.dump(record, stream, indent=2, ensure_ascii=False)
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_path, self.path)

    def read_blob(self, key: str) -> bytes:
        return self._blob_path(key).read_bytes()

    def write_blob(self, key: str, data: bytes) -> None:
        path = self._blob_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        with temp_path.open("wb") as stream:
            stream.write(data)
            stream.flush()
            os.fsync(stream.fileno())
        os.replace(temp_path, path)

    def delete_blob(self, key: str) -> None:
        self._blob_path(key).unlink(missing_ok=True)

    def _blob_path(self, key: str) -> Path:
        # Artifact ids carry user file names, so they are hashed into safe names.
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.blob_dir / f"{digest}.bin"

    def _cached(self) -> dict[str, Any]:
        if self._record is None:
            self._record = self._load()
        return self._record

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            with self.path.open("r", encoding="utf-8") as stream:
                payload = json.load(stream)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as error:
            log.warning("Could not read %s (%s), starting with empty state", self.path, error)
            return {}

        if not isinstance(payload, dict):
            log.warning("%s has an invalid format, starting with empty state", self.path)
            return {}

        return payload
