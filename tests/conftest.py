from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

from imgpress.core.ledger import ConversionLedger
from imgpress.core.models import SourceImage
from imgpress.core.preview import PreviewRegistry
from imgpress.core.settings import SettingsStore
from imgpress.core.storage import MemoryStorage


def make_raster(width: int, height: int, mode: str = "RGB", noise: float = 0.0) -> Image.Image:
    """Gradient image, optionally with noise to make it harder to compress."""
    red = Image.linear_gradient("L").resize((width, height))
    green = Image.radial_gradient("L").resize((width, height))
    blue = Image.effect_noise((width, height), noise) if noise else red.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
    raster = Image.merge("RGB", (red, green, blue))
    if mode == "RGBA":
        raster.putalpha(green)
    elif mode != "RGB":
        raster = raster.convert(mode)
    return raster


def encode_raster(raster: Image.Image, pillow_format: str, **options) -> bytes:
    buffer = BytesIO()
    raster.save(buffer, format=pillow_format, **options)
    return buffer.getvalue()


def make_source(
    width: int = 640,
    height: int = 480,
    pillow_format: str = "JPEG",
    name: str | None = None,
    noise: float = 0.0,
    mode: str = "RGB",
    **options,
) -> SourceImage:
    mime = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}[pillow_format]
    extension = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}[pillow_format]
    data = encode_raster(make_raster(width, height, mode=mode, noise=noise), pillow_format, **options)
    return SourceImage(data=data, name=name or f"photo.{extension}", mime_type=mime)


def open_bytes(data: bytes) -> Image.Image:
    image = Image.open(BytesIO(data))
    image.load()
    return image


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def registry() -> PreviewRegistry:
    return PreviewRegistry()


@pytest.fixture
def ledger(storage: MemoryStorage, registry: PreviewRegistry) -> ConversionLedger:
    return ConversionLedger(storage, registry)


@pytest.fixture
def settings_store(storage: MemoryStorage) -> SettingsStore:
    return SettingsStore(storage)
