from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from conftest import make_source
from imgpress.core.compressor import Compressor
from imgpress.core.consent import ConsentState
from imgpress.core.ledger import ConversionLedger, output_blob_key, source_blob_key
from imgpress.core.models import CompressionSettings, ConvertedArtifact, SourceImage
from imgpress.core.preview import PreviewRegistry
from imgpress.core.settings import SettingsStore
from imgpress.core.storage import JsonFileStorage, MemoryStorage
from imgpress.core.transcoder import Transcoder

_ids = itertools.count(1)


def make_artifact(registry: PreviewRegistry, name: str = "photo.png", padding: int = 0) -> ConvertedArtifact:
    number = next(_ids)
    output = f"output-{number}".encode() + b"o" * padding
    return ConvertedArtifact(
        id=f"{name}-{number}",
        source=SourceImage(data=b"x" * (100 + padding), name=name, mime_type="image/png"),
        output_bytes=output,
        output_name=name.rsplit(".", 1)[0] + ".webp",
        output_mime="image/webp",
        original_size_bytes=100 + padding,
        output_size_bytes=len(output),
        width=10,
        height=10,
        preview=registry.acquire(output),
        created_at=datetime(2024, 5, 1, 12, 0, number % 60, tzinfo=timezone.utc),
    )


def test_record_appends_to_both_views(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    first, second = make_artifact(registry), make_artifact(registry)
    ledger.record(first)
    ledger.record(second)

    assert ledger.current_batch_view() == [first, second]
    assert ledger.history_ids() == [first.id, second.id]
    assert ledger.history_view() == [second, first]


def test_record_persists_before_returning(ledger: ConversionLedger, storage: MemoryStorage, registry: PreviewRegistry) -> None:
    artifact = make_artifact(registry)
    ledger.record(artifact)

    record = storage.read()
    assert record["history"] == [artifact.id]
    assert record["current_batch"] == [artifact.id]
    assert artifact.id in record["artifacts"]
    assert "output" not in record["artifacts"][artifact.id]
    assert storage.read_blob(output_blob_key(artifact.id)) == artifact.output_bytes
    assert storage.read_blob(source_blob_key(artifact.id)) == artifact.source.data


def test_duplicate_record_is_ignored(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    artifact = make_artifact(registry)
    ledger.record(artifact)
    ledger.record(artifact)
    assert ledger.history_ids() == [artifact.id]
    assert not artifact.preview.released


def test_duplicate_record_releases_the_rejected_preview(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    artifact = make_artifact(registry)
    ledger.record(artifact)
    duplicate = replace(artifact, preview=registry.acquire(b"duplicate"))

    ledger.record(duplicate)

    assert duplicate.preview.released
    assert not artifact.preview.released
    assert ledger.get(artifact.id).preview is artifact.preview
    assert registry.live_count == 1


def test_clear_batch_keeps_history_and_handles(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    artifacts = [make_artifact(registry) for _ in range(3)]
    for artifact in artifacts:
        ledger.record(artifact)

    ledger.clear_batch()

    assert ledger.current_batch_view() == []
    assert ledger.history_ids() == [artifact.id for artifact in artifacts]
    assert registry.release_count == 0
    assert all(not artifact.preview.released for artifact in artifacts)


def test_remove_from_history_keeps_batch_entry_and_handle(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    artifact = make_artifact(registry)
    ledger.record(artifact)

    assert ledger.remove_from_history(artifact.id) is True

    assert ledger.history_ids() == []
    assert ledger.current_batch_view() == [artifact]
    assert not artifact.preview.released


def test_remove_from_history_releases_orphaned_handle_once(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    artifact = make_artifact(registry)
    ledger.record(artifact)
    ledger.clear_batch()

    ledger.remove_from_history(artifact.id)
    ledger.remove_from_history(artifact.id)

    assert artifact.preview.released
    assert registry.release_count == 1
    assert artifact.id not in ledger


def test_remove_unknown_id_is_a_noop(ledger: ConversionLedger, storage: MemoryStorage) -> None:
    writes = storage.write_count
    assert ledger.remove_from_history("missing") is False
    assert storage.write_count == writes


def test_clear_batch_releases_items_already_removed_from_history(
    ledger: ConversionLedger, registry: PreviewRegistry
) -> None:
    kept, removed = make_artifact(registry), make_artifact(registry)
    ledger.record(kept)
    ledger.record(removed)
    ledger.remove_from_history(removed.id)

    ledger.clear_batch()

    assert removed.preview.released
    assert not kept.preview.released
    assert registry.release_count == 1


def test_clear_history_spares_current_batch(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    old = make_artifact(registry)
    ledger.record(old)
    ledger.clear_batch()
    current = make_artifact(registry)
    ledger.record(current)

    ledger.clear_history()

    assert ledger.history_ids() == []
    assert ledger.current_batch_view() == [current]
    assert old.preview.released
    assert not current.preview.released

    ledger.clear_batch()
    assert current.preview.released
    assert registry.live_count == 0
    assert registry.release_count == 2


def test_batch_entries_appear_in_history_at_same_or_earlier_position(
    ledger: ConversionLedger, registry: PreviewRegistry
) -> None:
    for _ in range(2):
        ledger.record(make_artifact(registry))
    ledger.clear_batch()
    for _ in range(3):
        ledger.record(make_artifact(registry))

    history = ledger.history_ids()
    for position, artifact_id in enumerate(ledger.batch_ids()):
        assert history.index(artifact_id) >= position


def test_history_limit_evicts_oldest_outside_batch(storage: MemoryStorage, registry: PreviewRegistry) -> None:
    ledger = ConversionLedger(storage, registry, history_limit=2)
    first = make_artifact(registry)
    ledger.record(first)
    ledger.clear_batch()
    second, third = make_artifact(registry), make_artifact(registry)
    ledger.record(second)
    ledger.record(third)

    assert ledger.history_ids() == [second.id, third.id]
    assert first.preview.released

    # Entries of the current batch are never evicted.
    fourth = make_artifact(registry)
    ledger.record(fourth)
    assert ledger.history_ids() == [second.id, third.id, fourth.id]


def test_load_restores_views_with_fresh_previews(tmp_path) -> None:
    path = tmp_path / "store.json"
    registry = PreviewRegistry()
    ledger = ConversionLedger(JsonFileStorage(path), registry)
    settings = CompressionSettings(max_size_mb=10, max_dimension_px=1920, quality=0.8)
    compressor, transcoder = Compressor(), Transcoder()

    artifacts = []
    for name in ("a.jpg", "b.jpg"):
        source = make_source(120, 80, name=name)
        artifact = transcoder.convert(source, compressor.compress(source, settings), settings, "webp", registry)
        ledger.record(artifact)
        artifacts.append(artifact)
    ledger.clear_batch()
    ledger.record(replace(artifacts[0], id="c", preview=registry.acquire(b"c")))
    ledger.close()
    assert registry.live_count == 0

    fresh_registry = PreviewRegistry()
    restored = ConversionLedger.load(JsonFileStorage(path), fresh_registry)

    assert restored.history_ids() == [artifacts[0].id, artifacts[1].id, "c"]
    assert restored.batch_ids() == ["c"]
    original = restored.get(artifacts[1].id)
    assert original.output_bytes == artifacts[1].output_bytes
    assert original.source == artifacts[1].source
    assert original.created_at == artifacts[1].created_at
    assert original.preview.open().format == "WEBP"
    assert fresh_registry.live_count == 3


def test_load_drops_unreadable_entries_and_unknown_ids(registry: PreviewRegistry) -> None:
    storage = MemoryStorage(
        {
            "artifacts": {"bad": {"id": "bad", "output": "%%%"}},
            "history": ["bad", "ghost"],
            "current_batch": "not-a-list",
        }
    )
    ledger = ConversionLedger.load(storage, registry)

    assert ledger.history_ids() == []
    assert ledger.batch_ids() == []
    assert registry.live_count == 0


def test_load_releases_artifacts_in_no_view() -> None:
    registry = PreviewRegistry()
    storage = MemoryStorage()
    ledger = ConversionLedger(storage, registry)
    artifact = make_artifact(registry)
    ledger.record(artifact)
    record = storage.read()
    blobs = {key: storage.read_blob(key) for key in storage.blob_keys()}

    fresh = PreviewRegistry()
    reopened = MemoryStorage({**record, "history": [], "current_batch": []}, blobs)
    ConversionLedger.load(reopened, fresh)
    assert fresh.live_count == 0
    assert fresh.release_count == 1
    assert reopened.blob_keys() == set()
    assert reopened.read()["artifacts"] == {}


def test_load_drops_entries_whose_bytes_are_missing(registry: PreviewRegistry) -> None:
    storage = MemoryStorage()
    artifact = make_artifact(registry)
    ConversionLedger(storage, registry).record(artifact)
    record = storage.read()

    fresh = PreviewRegistry()
    restored = ConversionLedger.load(MemoryStorage(record), fresh)

    assert artifact.id not in restored
    assert restored.history_ids() == []
    assert fresh.live_count == 0


class FailingStorage(MemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.fail = True

    def write(self, **sections) -> None:
        if self.fail:
            raise OSError("disk full")
        super().write(**sections)


def test_record_never_fails_and_retries_persistence(registry: PreviewRegistry) -> None:
    storage = FailingStorage()
    ledger = ConversionLedger(storage, registry)
    first = make_artifact(registry)

    ledger.record(first)
    assert ledger.history_ids() == [first.id]
    assert ledger.persist_pending

    storage.fail = False
    second = make_artifact(registry)
    ledger.record(second)
    assert not ledger.persist_pending
    assert storage.read()["history"] == [first.id, second.id]


@pytest.mark.parametrize("operation", ["clear_batch", "clear_history"])
def test_clear_operations_on_empty_ledger(ledger: ConversionLedger, operation: str) -> None:
    getattr(ledger, operation)()
    assert ledger.current_batch_view() == []
    assert ledger.history_view() == []


def test_image_bytes_are_written_once_per_artifact(
    ledger: ConversionLedger, storage: MemoryStorage, registry: PreviewRegistry
) -> None:
    artifacts = [make_artifact(registry) for _ in range(3)]
    for artifact in artifacts:
        ledger.record(artifact)
    assert storage.blob_write_count == 6

    ledger.clear_batch()
    ledger.remove_from_history(artifacts[0].id)
    assert storage.blob_write_count == 6


def test_orphaned_artifacts_delete_their_stored_bytes(
    ledger: ConversionLedger, storage: MemoryStorage, registry: PreviewRegistry
) -> None:
    kept, dropped = make_artifact(registry), make_artifact(registry)
    ledger.record(kept)
    ledger.record(dropped)
    ledger.clear_batch()

    ledger.remove_from_history(dropped.id)

    assert storage.blob_keys() == {source_blob_key(kept.id), output_blob_key(kept.id)}


class CountingJsonStorage(JsonFileStorage):
    def __init__(self, path) -> None:
        super().__init__(path)
        self.blob_writes = 0
        self.section_writes: list[set[str]] = []

    def write(self, **sections) -> None:
        self.section_writes.append(set(sections))
        super().write(**sections)

    def write_blob(self, key: str, data: bytes) -> None:
        self.blob_writes += 1
        super().write_blob(key, data)


def test_settings_and_consent_writes_leave_image_bytes_alone(tmp_path) -> None:
    path = tmp_path / "store.json"
    storage = CountingJsonStorage(path)
    registry = PreviewRegistry()
    ledger = ConversionLedger(storage, registry)
    for _ in range(10):
        ledger.record(make_artifact(registry, padding=500_000))
    blob_writes = storage.blob_writes

    SettingsStore(storage).update(quality=0.55)
    ConsentState(storage).grant()

    assert storage.blob_writes == blob_writes
    assert storage.section_writes[-2:] == [{"settings"}, {"consent_granted"}]
    # Metadata only: ten artifacts carry about 10 MB of bytes between them.
    assert path.stat().st_size < 20_000
    assert len(list(storage.blob_dir.iterdir())) == 20


class FailingBlobStorage(MemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.fail = True

    def write_blob(self, key: str, data: bytes) -> None:
        if self.fail:
            raise OSError("disk full")
        super().write_blob(key, data)


def test_unsaved_bytes_are_retried_on_next_mutation(registry: PreviewRegistry) -> None:
    storage = FailingBlobStorage()
    ledger = ConversionLedger(storage, registry)
    artifact = make_artifact(registry)

    ledger.record(artifact)
    assert ledger.persist_pending
    assert storage.blob_keys() == set()

    storage.fail = False
    ledger.clear_batch()
    assert not ledger.persist_pending
    assert storage.read_blob(output_blob_key(artifact.id)) == artifact.output_bytes
    assert storage.read()["history"] == [artifact.id]


def test_shutdown_releases_ledger_and_unowned_handles(ledger: ConversionLedger, registry: PreviewRegistry) -> None:
    recorded = make_artifact(registry)
    ledger.record(recorded)
    unrecorded = make_artifact(registry)

    ledger.close()
    assert registry.release_all() == 1

    assert recorded.preview.released
    assert unrecorded.preview.released
    assert registry.live_count == 0
    assert ledger.history_ids() == [recorded.id]
