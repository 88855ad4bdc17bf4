from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from imgpress.core.errors import BudgetUnmet
from imgpress.core.preview import PreviewHandle

BYTES_PER_MB = 1024 * 1024

QUALITY_RANGE = (0.10, 1.00)
MAX_SIZE_MB_RANGE = (0.1, 10.0)
MAX_DIMENSION_RANGE = (500, 4000)

DEFAULT_QUALITY = 0.8
DEFAULT_MAX_SIZE_MB = 1.0
DEFAULT_MAX_DIMENSION = 1920


def _clamp(name: str, value: Any, bounds: tuple[float, float]) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as error:
        raise ValueError(f"{name} must be numeric, got {value!r}") from error
    if math.isnan(number):
        raise ValueError(f"{name} must not be NaN")
    low, high = bounds
    return min(max(number, low), high)


@dataclass(frozen=True, slots=True)
class CompressionSettings:
    max_size_mb: float = DEFAULT_MAX_SIZE_MB
    max_dimension_px: int = DEFAULT_MAX_DIMENSION
    quality: float = DEFAULT_QUALITY

    def __post_init__(self) -> None:
        # Frozen: write through object.__setattr__.
        object.__setattr__(self, "max_size_mb", _clamp("max_size_mb", self.max_size_mb, MAX_SIZE_MB_RANGE))
        object.__setattr__(
            self,
            "max_dimension_px",
            int(round(_clamp("max_dimension_px", self.max_dimension_px, MAX_DIMENSION_RANGE))),
        )
        object.__setattr__(self, "quality", _clamp("quality", self.quality, QUALITY_RANGE))

    @property
    def max_output_bytes(self) -> int:
        return int(self.max_size_mb * BYTES_PER_MB)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_size_mb": self.max_size_mb,
            "max_dimension_px": self.max_dimension_px,
            "quality": self.quality,
        }


@dataclass(frozen=True, slots=True)
class SourceImage:
    data: bytes
    name: str
    mime_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class BoundedImage:
    data: bytes
    format: str
    width: int
    height: int
    quality: float
    attempts: int
    budget_unmet: BudgetUnmet | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def budget_met(self) -> bool:
        return self.budget_unmet is None


@dataclass(frozen=True, slots=True)
class ConvertedArtifact:
    id: str
    source: SourceImage
    output_bytes: bytes
    output_name: str
    output_mime: str
    original_size_bytes: int
    output_size_bytes: int
    width: int
    height: int
    preview: PreviewHandle = field(compare=False, repr=False)
    created_at: datetime
    budget_met: bool = True
    budget_unmet: BudgetUnmet | None = field(default=None, compare=False, repr=False)

    @property
    def saved_bytes(self) -> int:
        return self.original_size_bytes - self.output_size_bytes

    @property
    def savings_percent(self) -> float:
        if self.original_size_bytes <= 0:
            return 0.0
        return (1 - self.output_size_bytes / self.original_size_bytes) * 100


@dataclass(frozen=True, slots=True)
class SkippedImage:
    name: str
    reason: str
    error_type: str


@dataclass(slots=True)
class BatchResult:
    total: int
    succeeded: int = 0
    failed: int = 0
    artifacts: list[ConvertedArtifact] = field(default_factory=list)
    skipped: list[SkippedImage] = field(default_factory=list)
    input_total_bytes: int = 0
    output_total_bytes: int = 0

    @property
    def bytes_saved(self) -> int:
        return self.input_total_bytes - self.output_total_bytes

    @property
    def compression_rate_percent(self) -> float:
        if self.input_total_bytes <= 0:
            return 0.0
        return (self.bytes_saved / self.input_total_bytes) * 100
