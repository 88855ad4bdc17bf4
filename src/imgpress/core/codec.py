from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from imgpress.core.errors import DecodeError, EncodeError

# Declared mime type -> Pillow format name.
ALLOWED_MIME_TYPES = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/webp": "WEBP",
}
SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
EXTENSION_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}
FLATTEN_BACKGROUND = (255, 255, 255)


@dataclass(frozen=True, slots=True)
class TargetCodec:
    key: str
    pillow_format: str
    extension: str
    mime_type: str
    supports_alpha: bool
    lossy: bool
    extra_opts: dict[str, Any] = field(default_factory=dict)


TARGET_CODECS: dict[str, TargetCodec] = {
    "webp": TargetCodec("webp", "WEBP", ".webp", "image/webp", supports_alpha=True, lossy=True, extra_opts={"method": 4}),
    "jpeg": TargetCodec(
        "jpeg", "JPEG", ".jpg", "image/jpeg", supports_alpha=False, lossy=True,
        extra_opts={"optimize": True, "progressive": True},
    ),
    "png": TargetCodec("png", "PNG", ".png", "image/png", supports_alpha=True, lossy=False, extra_opts={"optimize": True}),
}
FORMAT_TO_CODEC = {"WEBP": "webp", "JPEG": "jpeg", "PNG": "png"}


def resolve_target_codec(key: str) -> TargetCodec:
    normalized = key.strip().lower().lstrip(".")
    codec = TARGET_CODECS.get("jpeg" if normalized == "jpg" else normalized)
    if codec is None:
        raise EncodeError(f"Unsupported target codec: {key!r}")
    return codec


def codec_for_format(pillow_format: str) -> TargetCodec:
    try:
        return TARGET_CODECS[FORMAT_TO_CODEC[pillow_format]]
    except KeyError as error:
        raise EncodeError(f"No encoder for format {pillow_format!r}") from error


def mime_type_for_name(name: str) -> str | None:
    dot = name.rfind(".")
    if dot == -1:
        return None
    return EXTENSION_TO_MIME.get(name[dot:].lower())


def to_pillow_quality(quality: float) -> int:
    return min(max(int(round(quality * 100)), 1), 100)


@dataclass(slots=True)
class DecodedImage:
    raster: Image.Image
    format: str


class Codec(Protocol):
    def decode(self, data: bytes, mime_type: str | None = None) -> DecodedImage: ...

    def resize(self, raster: Image.Image, size: tuple[int, int]) -> Image.Image: ...

    def encode(self, raster: Image.Image, codec: TargetCodec, quality: float) -> bytes: ...


class PillowCodec:
    def decode(self, data: bytes, mime_type: str | None = None) -> DecodedImage:
        if mime_type is not None and mime_type.strip().lower() not in ALLOWED_MIME_TYPES:
            raise DecodeError(f"Unsupported mime type: {mime_type!r}")
        if not data:
            raise DecodeError("Empty image buffer")

        try:
            with Image.open(BytesIO(data)) as image:
                image_format = image.format or ""
                if image_format not in FORMAT_TO_CODEC:
                    raise DecodeError(f"Unsupported image format: {image_format or 'unknown'}")
                image.load()
                raster = ImageOps.exif_transpose(image)
        except DecodeError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as error:
            raise DecodeError(f"Could not decode image: {error}") from error

        return DecodedImage(raster=raster, format=image_format)

    def resize(self, raster: Image.Image, size: tuple[int, int]) -> Image.Image:
        if raster.size == size:
            return raster
        try:
            return raster.resize(size, Image.Resampling.LANCZOS)
        except (OSError, ValueError, MemoryError) as error:
            raise EncodeError(f"Could not resize to {size[0]}x{size[1]}: {error}") from error

    def encode(self, raster: Image.Image, codec: TargetCodec, quality: float) -> bytes:
        surface = self._prepare_surface(raster, codec)
        save_kwargs: dict[str, Any] = dict(codec.extra_opts)
        if codec.lossy:
            save_kwargs["quality"] = to_pillow_quality(quality)

        buffer = BytesIO()
        try:
            surface.save(buffer, format=codec.pillow_format, **save_kwargs)
        except (OSError, ValueError, KeyError, MemoryError) as error:
            raise EncodeError(f"{codec.pillow_format} encoder failed: {error}") from error
        return buffer.getvalue()

    def _prepare_surface(self, raster: Image.Image, codec: TargetCodec) -> Image.Image:
        has_alpha = raster.mode in ("RGBA", "LA", "PA") or (raster.mode == "P" and "transparency" in raster.info)

        if not codec.supports_alpha:
            if has_alpha:
                rgba = raster.convert("RGBA")
                background = Image.new("RGB", rgba.size, FLATTEN_BACKGROUND)
                background.paste(rgba, mask=rgba.split()[-1])
                return background
            if raster.mode not in ("RGB", "L"):
                return raster.convert("RGB")
            return raster

        if codec.pillow_format == "PNG":
            if raster.mode in ("CMYK", "YCbCr", "LAB", "HSV"):
                return raster.convert("RGB")
            return raster

        if has_alpha:
            return raster if raster.mode == "RGBA" else raster.convert("RGBA")
        if raster.mode != "RGB":
            return raster.convert("RGB")
        return raster
