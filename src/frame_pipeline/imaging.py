"""Thumbnail and preview rendering shared by the derived-asset handlers."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from PIL.Image import Resampling

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "imaging"})

JPEG_CONTENT_TYPE = "image/jpeg"


class ImageDecodeError(ValueError):
    """The source bytes are not a decodable image."""


@dataclass(frozen=True)
class SourceImageInfo:
    width: int
    height: int
    mime_type: str | None


def _get_resample_filter() -> Resampling:
    """Return the preferred resample filter compatible with the current Pillow."""

    return Resampling.LANCZOS


def open_image(path: Path) -> Image.Image:
    """Open and fully decode ``path`` with EXIF orientation applied."""

    try:
        with Image.open(path) as handle:
            handle.load()
            mime_type = Image.MIME.get(handle.format or "")
            image = ImageOps.exif_transpose(handle)
            image.info["mime_type"] = mime_type
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageDecodeError(f"Cannot decode image {path}: {exc}") from exc
    return image


def describe_image(image: Image.Image) -> SourceImageInfo:
    return SourceImageInfo(width=image.width, height=image.height, mime_type=image.info.get("mime_type"))


def _to_rgb(image: Image.Image) -> Image.Image:
    if image.mode == "RGB":
        return image
    if image.mode in {"RGBA", "LA"} or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def encode_jpeg(image: Image.Image, quality: int, *, progressive: bool = False) -> bytes:
    buffer = io.BytesIO()
    try:
        _to_rgb(image).save(buffer, format="JPEG", quality=quality, progressive=progressive, optimize=progressive)
    except OSError as exc:
        LOGGER.error("jpeg_encode_error", extra={"quality": quality, "error": str(exc)})
        raise
    return buffer.getvalue()


def render_thumbnail(image: Image.Image, size: int, quality: int) -> bytes:
    """Square ``size``×``size`` cover crop (center-cropped, never letterboxed) as JPEG."""

    safe_side = max(1, int(size))
    fitted = ImageOps.fit(image, (safe_side, safe_side), method=_get_resample_filter(), centering=(0.5, 0.5))
    return encode_jpeg(fitted, quality)


def build_preview_image(image: Image.Image, max_side: int) -> Image.Image:
    """Copy of ``image`` fitted inside ``max_side``; smaller images are never enlarged."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    if max(resized.size) > safe_side:
        resized.thumbnail((safe_side, safe_side), resample=_get_resample_filter())
    return resized


def render_preview(image: Image.Image, max_side: int, quality: int, *, progressive: bool = True) -> bytes:
    return encode_jpeg(build_preview_image(image, max_side), quality, progressive=progressive)


__all__ = [
    "ImageDecodeError",
    "JPEG_CONTENT_TYPE",
    "SourceImageInfo",
    "build_preview_image",
    "describe_image",
    "encode_jpeg",
    "open_image",
    "render_preview",
    "render_thumbnail",
]
