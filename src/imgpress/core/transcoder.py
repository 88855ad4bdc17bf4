from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from PIL import Image

from imgpress.core.codec import Codec, PillowCodec, TargetCodec, resolve_target_codec
from imgpress.core.compressor import BackoffPolicy, search_within_budget
from imgpress.core.errors import BudgetUnmet, DecodeError, EncodeError
from imgpress.core.models import BoundedImage, CompressionSettings, ConvertedArtifact, SourceImage
from imgpress.core.preview import PreviewRegistry

log = logging.getLogger(__name__)


def output_name_for(name: str, codec: TargetCodec) -> str:
    if not name:
        return f"image{codec.extension}"
    dot = name.rfind(".")
    base = name[:dot] if dot != -1 else name
    return f"{base or 'image'}{codec.extension}"


def make_artifact_id(name: str, created_at: datetime) -> str:
    millis = int(created_at.timestamp() * 1000)
    return f"{name or 'image'}-{millis}-{secrets.token_hex(3)}"


def _as_codec(target_codec: str | TargetCodec) -> TargetCodec:
    return resolve_target_codec(target_codec) if isinstance(target_codec, str) else target_codec


class Transcoder:
    def __init__(self, codec: Codec | None = None, policy: BackoffPolicy | None = None) -> None:
        self.codec = codec or PillowCodec()
        self.policy = policy or BackoffPolicy()

    def transcode(self, bounded: BoundedImage, target_codec: str | TargetCodec, quality: float) -> bytes:
        codec = _as_codec(target_codec)
        return self.codec.encode(self._surface(bounded), codec, quality)

    def convert(
        self,
        source: SourceImage,
        bounded: BoundedImage,
        settings: CompressionSettings,
        target_codec: str | TargetCodec,
        registry: PreviewRegistry,
        created_at: datetime | None = None,
    ) -> ConvertedArtifact:
        codec = _as_codec(target_codec)
        budget = settings.max_output_bytes

        # Start from the quality the compressor settled on, and keep backing off
        # in the target codec: its output size is what the budget applies to.
        result = search_within_budget(
            self.codec, self._surface(bounded), codec, bounded.quality, budget, self.policy
        )
        output = result.data

        budget_unmet = None
        if len(output) > budget:
            budget_unmet = BudgetUnmet(budget, len(output), bounded.attempts + result.attempts)
            log.info("%s: %s", source.name or "image", budget_unmet)

        created_at = created_at or datetime.now(timezone.utc)
        artifact = ConvertedArtifact(
            id=make_artifact_id(source.name, created_at),
            source=source,
            output_bytes=output,
            output_name=output_name_for(source.name, codec),
            output_mime=codec.mime_type,
            original_size_bytes=source.size_bytes,
            output_size_bytes=len(output),
            width=result.size[0],
            height=result.size[1],
            preview=registry.acquire(output),
            created_at=created_at,
            budget_met=budget_unmet is None,
            budget_unmet=budget_unmet,
        )
        log.debug("Transcoded %s -> %s (%d bytes)", source.name, artifact.output_name, artifact.output_size_bytes)
        return artifact

    def _surface(self, bounded: BoundedImage) -> Image.Image:
        try:
            return self.codec.decode(bounded.data).raster
        except DecodeError as error:
            raise EncodeError(f"Could not load the bounded image onto an encoding surface: {error}") from error
