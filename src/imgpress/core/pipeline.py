from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Sequence

from imgpress.core.codec import SUPPORTED_EXTENSIONS, mime_type_for_name, resolve_target_codec
from imgpress.core.compressor import Compressor
from imgpress.core.errors import ImageProcessingError
from imgpress.core.ledger import ConversionLedger
from imgpress.core.models import BatchResult, SkippedImage, SourceImage
from imgpress.core.settings import SettingsStore
from imgpress.core.transcoder import Transcoder

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
LogCallback = Callable[[str], None]
ProcessingCallback = Callable[[bool], None]


class BatchConverter:
    def __init__(self, compressor: Compressor | None = None, transcoder: Transcoder | None = None) -> None:
        self.compressor = compressor or Compressor()
        self.transcoder = transcoder or Transcoder()
        self.is_processing = False

    def run(
        self,
        sources: Sequence[SourceImage],
        *,
        settings_store: SettingsStore,
        ledger: ConversionLedger,
        consent_granted: bool,
        target_codec: str = "webp",
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        on_processing_changed: ProcessingCallback | None = None,
    ) -> BatchResult:
        total = len(sources)
        result = BatchResult(total=total)

        if not consent_granted:
            log.info("Consent not granted, ignoring batch of %d image(s)", total)
            return BatchResult(total=0)
        if total == 0:
            return result

        codec = resolve_target_codec(target_codec)
        self._set_processing(True, on_processing_changed)

        try:
            for index, source in enumerate(sources, start=1):
                name = source.name or "image"
                if on_log:
                    on_log(f"[{index}/{total}] Processing: {name}")

                # Settings edited mid-batch only apply to images not started yet.
                settings = settings_store.snapshot()
                try:
                    bounded = self.compressor.compress(source, settings)
                    artifact = self.transcoder.convert(source, bounded, settings, codec, ledger.registry)
                except ImageProcessingError as error:
                    self._skip(result, name, error, on_log)
                    continue
                except Exception as error:
                    log.exception("Unexpected failure while processing %s", name)
                    self._skip(result, name, error, on_log)
                    continue
                finally:
                    if on_progress:
                        on_progress(index, total)

                if artifact.budget_unmet is not None and on_log:
                    on_log(f"Best effort for {name}: {artifact.budget_unmet}")

                ledger.record(artifact)
                result.artifacts.append(artifact)
                result.succeeded += 1
                result.input_total_bytes += artifact.original_size_bytes
                result.output_total_bytes += artifact.output_size_bytes
                if on_log:
                    on_log(f"Saved: {artifact.output_name} ({artifact.savings_percent:.1f}% saved)")
        finally:
            self._set_processing(False, on_processing_changed)

        log.info("Batch finished: %d converted, %d skipped", result.succeeded, result.failed)
        return result

    def _skip(self, result: BatchResult, name: str, error: Exception, on_log: LogCallback | None) -> None:
        result.failed += 1
        result.skipped.append(SkippedImage(name=name, reason=str(error), error_type=type(error).__name__))
        log.warning("Skipped %s: %s: %s", name, type(error).__name__, error)
        if on_log:
            on_log(f"Failed: {name} ({error})")

    def _set_processing(self, value: bool, callback: ProcessingCallback | None) -> None:
        self.is_processing = value
        if callback:
            callback(value)


def filter_supported_images(paths: list[Path]) -> list[Path]:
    return [path for path in paths if path.suffix.lower() in SUPPORTED_EXTENSIONS]


def read_source(path: Path) -> SourceImage:
    return SourceImage(
        data=path.read_bytes(),
        name=path.name,
        mime_type=mime_type_for_name(path.name) or "application/octet-stream",
    )
