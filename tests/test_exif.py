"""Tests for EXIF extraction and conversions."""

from __future__ import annotations

from PIL import Image as PILImage
from PIL.TiffImagePlugin import IFDRational

from frame_pipeline.exif import (
    dms_to_decimal,
    extract_exif_metadata,
    format_exposure_time,
    read_exif_metadata,
)


class FakeExif(dict):
    """Dict-backed stand-in for ``PIL.Image.Exif`` with nested IFDs."""

    def __init__(self, base: dict, ifds: dict[int, dict]) -> None:
        super().__init__(base)
        self._ifds = ifds

    def get_ifd(self, tag: int) -> dict:
        return self._ifds.get(tag, {})


def test_dms_to_decimal_signs() -> None:
    assert dms_to_decimal((40, 26, 46.302), "N") == 40 + 26 / 60 + 46.302 / 3600
    assert dms_to_decimal((79, 58, 56.0), "W") == -(79 + 58 / 60 + 56 / 3600)
    assert dms_to_decimal((33, 52, 0), b"S\x00") == -(33 + 52 / 60)
    assert dms_to_decimal((1, 2), "N") is None
    assert dms_to_decimal(None, "N") is None


def test_format_exposure_time() -> None:
    assert format_exposure_time(IFDRational(1, 250)) == "1/250"
    assert format_exposure_time(0.008) == "1/125"
    assert format_exposure_time(2.0) == "2"
    assert format_exposure_time(0) is None
    assert format_exposure_time(None) is None


def test_extract_exif_metadata_maps_fields() -> None:
    exif = FakeExif(
        {0x010F: "Canon", 0x0110: "EOS R5\x00", 0x0131: "Firmware 1.8"},
        {
            0x8769: {
                0x829A: IFDRational(1, 500),
                0x829D: IFDRational(28, 10),
                0x8827: 400,
                0x920A: IFDRational(50, 1),
                0xA434: "RF50mm F1.8 STM",
                0x9003: "2023:07:14 18:32:05",
            },
            0x8825: {
                1: "S",
                2: (IFDRational(33, 1), IFDRational(51, 1), IFDRational(54, 1)),
                3: "E",
                4: (IFDRational(151, 1), IFDRational(12, 1), IFDRational(36, 1)),
                5: b"\x01",
                6: IFDRational(12, 1),
            },
        },
    )

    metadata = extract_exif_metadata(exif)

    assert metadata is not None
    assert (metadata.make, metadata.model, metadata.software) == ("Canon", "EOS R5", "Firmware 1.8")
    assert metadata.exposure_time == "1/500"
    assert metadata.f_number == 2.8
    assert metadata.iso == 400
    assert metadata.focal_length == 50.0
    assert metadata.lens_model == "RF50mm F1.8 STM"
    assert metadata.date_taken == "2023-07-14T18:32:05"
    assert round(metadata.lat, 4) == -33.865
    assert round(metadata.lng, 4) == 151.21
    assert metadata.alt == -12.0


def test_extract_exif_metadata_without_exif_returns_none() -> None:
    assert extract_exif_metadata(FakeExif({}, {})) is None
    assert read_exif_metadata(PILImage.new("RGB", (4, 4))) is None


def test_read_exif_metadata_from_saved_jpeg(make_jpeg) -> None:
    exif = PILImage.Exif()
    exif[0x010F] = "Nikon"
    exif[0x0110] = "Z6"
    path = make_jpeg("with-exif.jpg", exif=exif)

    with PILImage.open(path) as handle:
        metadata = read_exif_metadata(handle)

    assert metadata is not None
    assert (metadata.make, metadata.model) == ("Nikon", "Z6")
    assert metadata.lat is None and metadata.exposure_time is None
