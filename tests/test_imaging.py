"""Tests for thumbnail/preview rendering and content hashing."""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from frame_pipeline.hasher import compute_bytes_hash, compute_content_hash, content_hash_matches
from frame_pipeline.imaging import (
    ImageDecodeError,
    build_preview_image,
    describe_image,
    open_image,
    render_preview,
    render_thumbnail,
)


def _decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def test_thumbnail_is_square_cover_crop() -> None:
    # Left half red, right half blue: a centered crop of a wide image keeps both colors.
    source = Image.new("RGB", (400, 100), (255, 0, 0))
    source.paste((0, 0, 255), (200, 0, 400, 100))

    thumb = _decode(render_thumbnail(source, 64, 90))

    assert thumb.size == (64, 64)
    assert thumb.format == "JPEG"
    left = thumb.getpixel((2, 32))
    right = thumb.getpixel((61, 32))
    assert left[0] > 200 and left[2] < 60
    assert right[2] > 200 and right[0] < 60


def test_thumbnail_upscales_tiny_sources() -> None:
    thumb = _decode(render_thumbnail(Image.new("RGB", (10, 20)), 128, 80))

    assert thumb.size == (128, 128)


def test_preview_keeps_aspect_and_never_enlarges() -> None:
    assert build_preview_image(Image.new("RGB", (4000, 3000)), 2000).size == (2000, 1500)
    assert build_preview_image(Image.new("RGB", (1000, 3000)), 2000).size == (667, 2000)
    assert build_preview_image(Image.new("RGB", (640, 480)), 2000).size == (640, 480)


def test_preview_flattens_transparency_to_jpeg() -> None:
    source = Image.new("RGBA", (50, 50), (0, 0, 0, 0))

    preview = _decode(render_preview(source, 2000, 85))

    assert preview.mode == "RGB"
    assert preview.getpixel((25, 25))[0] > 240


def test_open_image_applies_orientation_and_records_mime(tmp_path: Path) -> None:
    exif = Image.Exif()
    exif[0x0112] = 6  # rotate 90° clockwise on display
    path = tmp_path / "rotated.jpg"
    Image.new("RGB", (300, 100)).save(path, format="JPEG", exif=exif)

    image = open_image(path)

    info = describe_image(image)
    assert (info.width, info.height) == (100, 300)
    assert info.mime_type == "image/jpeg"


def test_open_image_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "garbage.jpg"
    path.write_bytes(b"\x00\x01 not an image")

    with pytest.raises(ImageDecodeError):
        open_image(path)


def test_content_hash_is_stable_and_content_based(tmp_path: Path) -> None:
    first = tmp_path / "a.bin"
    second = tmp_path / "b.bin"
    first.write_bytes(b"same bytes")
    second.write_bytes(b"same bytes")

    digest = compute_content_hash(first)

    assert digest == compute_content_hash(second) == compute_bytes_hash(b"same bytes")
    assert len(digest) == 16
    assert digest != compute_bytes_hash(b"other bytes")
    assert content_hash_matches(first, digest.upper())
    assert content_hash_matches(first, "")
    assert not content_hash_matches(first, "0" * 16)
