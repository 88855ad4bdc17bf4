from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any

from imgpress.core.models import ConvertedArtifact, SourceImage
from imgpress.core.preview import PreviewRegistry
from imgpress.core.storage import Storage

log = logging.getLogger(__name__)


def source_blob_key(artifact_id: str) -> str:
    return f"{artifact_id}/source"


def output_blob_key(artifact_id: str) -> str:
    return f"{artifact_id}/output"


def artifact_to_record(artifact: ConvertedArtifact) -> dict[str, Any]:
    # Bytes are stored as blobs under the artifact id, see source_blob_key / output_blob_key.
    return {
        "id": artifact.id,
        "source": {
            "name": artifact.source.name,
            "mime_type": artifact.source.mime_type,
        },
        "output_name": artifact.output_name,
        "output_mime": artifact.output_mime,
        "original_size_bytes": artifact.original_size_bytes,
        "output_size_bytes": artifact.output_size_bytes,
        "width": artifact.width,
        "height": artifact.height,
        "created_at": artifact.created_at.isoformat(),
        "budget_met": artifact.budget_met,
    }


def artifact_from_record(item: dict[str, Any], storage: Storage, registry: PreviewRegistry) -> ConvertedArtifact:
    artifact_id = str(item["id"])
    source_item = item["source"]
    source = SourceImage(
        data=storage.read_blob(source_blob_key(artifact_id)),
        name=str(source_item["name"]),
        mime_type=str(source_item["mime_type"]),
    )
    output = storage.read_blob(output_blob_key(artifact_id))
    created_at = datetime.fromisoformat(item["created_at"])

    return ConvertedArtifact(
        id=artifact_id,
        source=source,
        output_bytes=output,
        output_name=str(item["output_name"]),
        output_mime=str(item["output_mime"]),
        original_size_bytes=int(item["original_size_bytes"]),
        output_size_bytes=int(item["output_size_bytes"]),
        width=int(item["width"]),
        height=int(item["height"]),
        preview=registry.acquire(output),
        created_at=created_at,
        budget_met=bool(item.get("budget_met", True)),
    )


class ConversionLedger:
    def __init__(
        self,
        storage: Storage,
        registry: PreviewRegistry,
        history_limit: int | None = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.history_limit = history_limit
        self._artifacts: dict[str, ConvertedArtifact] = {}
        self._batch: list[str] = []
        self._history: list[str] = []
        # Ids whose bytes are not on storage yet, and ids whose bytes can go.
        self._unsaved: set[str] = set()
        self._discarded: list[str] = []
        self._lock = threading.RLock()
        self.persist_pending = False

    @classmethod
    def load(
        cls,
        storage: Storage,
        registry: PreviewRegistry,
        history_limit: int | None = None,
    ) -> ConversionLedger:
        ledger = cls(storage, registry, history_limit)
        record = storage.read()

        payload = record.get("artifacts")
        if not isinstance(payload, dict):
            payload = {}

        for artifact_id, item in payload.items():
            try:
                artifact = artifact_from_record(item, storage, registry)
            except (KeyError, TypeError, ValueError, OSError) as error:
                log.warning("Dropping unreadable stored artifact %s: %s", artifact_id, error)
                continue
            ledger._artifacts[artifact.id] = artifact

        ledger._history = _known_ids(record.get("history"), ledger._artifacts)
        ledger._batch = _known_ids(record.get("current_batch"), ledger._artifacts)

        for artifact_id in list(ledger._artifacts):
            ledger._release_if_orphaned(artifact_id)
        if ledger._discarded:
            ledger._persist()

        log.debug(
            "Loaded ledger: %d in history, %d in current batch", len(ledger._history), len(ledger._batch)
        )
        return ledger

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._artifacts

    def get(self, artifact_id: str) -> ConvertedArtifact | None:
        return self._artifacts.get(artifact_id)

    def current_batch_view(self) -> list[ConvertedArtifact]:
        with self._lock:
            return [self._artifacts[artifact_id] for artifact_id in self._batch]

    def history_view(self) -> list[ConvertedArtifact]:
        """History entries, newest first."""
        with self._lock:
            return [self._artifacts[artifact_id] for artifact_id in reversed(self._history)]

    def history_ids(self) -> list[str]:
        """History ids in insertion order."""
        with self._lock:
            return list(self._history)

    def batch_ids(self) -> list[str]:
        with self._lock:
            return list(self._batch)

    def record(self, artifact: ConvertedArtifact) -> None:
        with self._lock:
            existing = self._artifacts.get(artifact.id)
            if existing is not None:
                log.warning("Artifact %s is already recorded, ignoring", artifact.id)
                if artifact.preview is not existing.preview and not artifact.preview.released:
                    artifact.preview.release()
                return
            self._artifacts[artifact.id] = artifact
            self._unsaved.add(artifact.id)
            self._batch.append(artifact.id)
            self._history.append(artifact.id)
            self._evict_overflow()
            self._persist()

    def clear_batch(self) -> None:
        with self._lock:
            removed, self._batch = self._batch, []
            for artifact_id in removed:
                self._release_if_orphaned(artifact_id)
            self._persist()

    def remove_from_history(self, artifact_id: str) -> bool:
        with self._lock:
            if artifact_id not in self._history:
                return False
            self._history.remove(artifact_id)
            self._release_if_orphaned(artifact_id)
            self._persist()
            return True

    def clear_history(self) -> None:
        with self._lock:
            removed, self._history = self._history, []
            for artifact_id in removed:
                self._release_if_orphaned(artifact_id)
            self._persist()

    def close(self) -> None:
        with self._lock:
            for artifact in self._artifacts.values():
                if not artifact.preview.released:
                    artifact.preview.release()

    def _evict_overflow(self) -> None:
        if not self.history_limit or len(self._history) <= self.history_limit:
            return

        overflow = len(self._history) - self.history_limit
        evicted: list[str] = []
        for artifact_id in self._history:
            if overflow <= 0:
                break
            if artifact_id in self._batch:
                continue
            evicted.append(artifact_id)
            overflow -= 1

        for artifact_id in evicted:
            self._history.remove(artifact_id)
            self._release_if_orphaned(artifact_id)
        if evicted:
            log.info("History limit %d reached, evicted %d oldest entries", self.history_limit, len(evicted))

    def _release_if_orphaned(self, artifact_id: str) -> None:
        if artifact_id in self._batch or artifact_id in self._history:
            return
        artifact = self._artifacts.pop(artifact_id, None)
        if artifact is None:
            return
        if not artifact.preview.released:
            artifact.preview.release()
        if artifact_id in self._unsaved:
            self._unsaved.discard(artifact_id)
        else:
            self._discarded.append(artifact_id)

    def _persist(self) -> None:
        try:
            for artifact_id in sorted(self._unsaved):
                artifact = self._artifacts[artifact_id]
                self.storage.write_blob(source_blob_key(artifact_id), artifact.source.data)
                self.storage.write_blob(output_blob_key(artifact_id), artifact.output_bytes)
                self._unsaved.discard(artifact_id)
            self.storage.write(
                artifacts={artifact_id: artifact_to_record(a) for artifact_id, a in self._artifacts.items()},
                history=list(self._history),
                current_batch=list(self._batch),
            )
        except OSError as error:
            # Kept in memory; the next mutation retries unsaved bytes and the full metadata.
            self.persist_pending = True
            log.error("Could not persist conversion ledger: %s", error)
            return
        self.persist_pending = False
        self._delete_discarded()

    def _delete_discarded(self) -> None:
        # Only after the metadata no longer points at them.
        discarded, self._discarded = self._discarded, []
        for artifact_id in discarded:
            if artifact_id in self._artifacts:
                continue
            try:
                self.storage.delete_blob(source_blob_key(artifact_id))
                self.storage.delete_blob(output_blob_key(artifact_id))
            except OSError as error:
                log.warning("Could not delete stored bytes of %s: %s", artifact_id, error)


def _known_ids(value: Any, artifacts: dict[str, ConvertedArtifact]) -> list[str]:
    if not isinstance(value, list):
        return []
    seen: set[str] = set()
    ids: list[str] = []
    for artifact_id in value:
        if isinstance(artifact_id, str) and artifact_id in artifacts and artifact_id not in seen:
            seen.add(artifact_id)
            ids.append(artifact_id)
    return ids
