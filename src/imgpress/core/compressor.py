from __future__ import annotations

import logging
from dataclasses import dataclass

from PIL import Image

from imgpress.core.codec import Codec, PillowCodec, TargetCodec, codec_for_format
from imgpress.core.errors import BudgetUnmet
from imgpress.core.models import BoundedImage, CompressionSettings, SourceImage

log = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    max_attempts: int = 8
    quality_step: float = 0.1
    quality_floor: float = 0.4
    scale_step: float = 0.85
    min_scale: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 < self.scale_step < 1:
            raise ValueError("scale_step must be between 0 and 1")
        if self.quality_step <= 0:
            raise ValueError("quality_step must be positive")

    def next_step(
        self, quality: float, scale: float, quality_floor: float, lossy: bool
    ) -> tuple[float, float] | None:
        # Quality goes first, dimensions only once quality is at the floor.
        if lossy and quality > quality_floor + _EPSILON:
            return max(round(quality - self.quality_step, 4), quality_floor), scale

        next_scale = scale * self.scale_step
        if next_scale + _EPSILON >= self.min_scale:
            return quality, next_scale
        return None


@dataclass(slots=True)
class SearchResult:
    data: bytes
    size: tuple[int, int]
    quality: float
    attempts: int = 0


def fit_within(width: int, height: int, limit: int) -> tuple[int, int]:
    if width <= limit and height <= limit:
        return width, height
    if width >= height:
        return limit, max(1, round(height * limit / width))
    return max(1, round(width * limit / height)), limit


def _scaled(size: tuple[int, int], scale: float) -> tuple[int, int]:
    if scale >= 1.0:
        return size
    return max(1, round(size[0] * scale)), max(1, round(size[1] * scale))


def search_within_budget(
    codec: Codec,
    raster: Image.Image,
    target: TargetCodec,
    quality: float,
    budget: int,
    policy: BackoffPolicy,
) -> SearchResult:
    # Steps are scaled from `raster` itself. The smallest encode wins even if none fits.
    base_size = raster.size
    quality_floor = min(policy.quality_floor, quality)
    scale = 1.0
    best: SearchResult | None = None
    attempts = 0

    while True:
        size = _scaled(base_size, scale)
        surface = raster if size == base_size else codec.resize(raster, size)
        data = codec.encode(surface, target, quality)
        attempts += 1

        if best is None or len(data) < len(best.data):
            best = SearchResult(data, size, quality)
        if len(data) <= budget or attempts >= policy.max_attempts:
            break

        step = policy.next_step(quality, scale, quality_floor, target.lossy)
        if step is None:
            break
        quality, scale = step

    best.attempts = attempts
    return best


class Compressor:
    def __init__(self, codec: Codec | None = None, policy: BackoffPolicy | None = None) -> None:
        self.codec = codec or PillowCodec()
        self.policy = policy or BackoffPolicy()

    def compress(self, source: SourceImage, settings: CompressionSettings) -> BoundedImage:
        decoded = self.codec.decode(source.data, source.mime_type)
        intermediate = codec_for_format(decoded.format)

        bounded_size = fit_within(decoded.raster.width, decoded.raster.height, settings.max_dimension_px)
        base = self.codec.resize(decoded.raster, bounded_size)

        budget = settings.max_output_bytes
        best = search_within_budget(self.codec, base, intermediate, settings.quality, budget, self.policy)

        budget_unmet = None
        if len(best.data) > budget:
            budget_unmet = BudgetUnmet(budget, len(best.data), best.attempts)
            log.info("%s: %s", source.name or "image", budget_unmet)

        return BoundedImage(
            data=best.data,
            format=intermediate.pillow_format,
            width=best.size[0],
            height=best.size[1],
            quality=best.quality,
            attempts=best.attempts,
            budget_unmet=budget_unmet,
        )
