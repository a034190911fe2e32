"""EXIF extraction and conversion into the flat fields stored on image rows."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from PIL import ExifTags, Image

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "exif"})

_EXIF_IFD = 0x8769
_GPS_IFD = 0x8825


@dataclass
class ExifMetadata:
    """Image-row EXIF fields; ``None`` means the tag was absent or unusable."""

    make: str | None = None
    model: str | None = None
    software: str | None = None
    exposure_time: str | None = None
    f_number: float | None = None
    iso: int | None = None
    focal_length: float | None = None
    lens_model: str | None = None
    date_taken: str | None = None
    lat: float | None = None
    lng: float | None = None
    alt: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _to_float(value: Any) -> float | None:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        value = value[0] if value else None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def _to_text(value: Any) -> str | None:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    if not isinstance(value, str):
        return None
    cleaned = value.strip("\x00 ").strip()
    return cleaned or None


def dms_to_decimal(dms: Any, ref: Any = None) -> float | None:
    """Convert a degrees/minutes/seconds triple to signed decimal degrees.

    South and West references produce negative values.
    """

    if not isinstance(dms, Sequence) or isinstance(dms, (str, bytes)) or len(dms) != 3:
        return None
    parts = [_to_float(part) for part in dms]
    if any(part is None for part in parts):
        return None
    degrees, minutes, seconds = parts
    decimal = degrees + minutes / 60.0 + seconds / 3600.0  # type: ignore[operator]

    ref_text = _to_text(ref)
    if ref_text and ref_text.upper() in {"S", "W"}:
        decimal = -decimal
    return decimal


def format_exposure_time(value: Any) -> str | None:
    """Render an exposure time in seconds as ``"1/n"``.

    Exposures of one second or longer are rendered as plain seconds.
    """

    seconds = _to_float(value)
    if seconds is None or seconds <= 0:
        return None
    if seconds < 1:
        return f"1/{round(1 / seconds)}"
    return f"{seconds:g}"


def _format_date_taken(value: Any) -> str | None:
    raw = _to_text(value)
    if raw is None:
        return None
    try:
        return datetime.strptime(raw, "%Y:%m:%d %H:%M:%S").isoformat(timespec="seconds")
    except ValueError:
        return raw


def _altitude(value: Any, ref: Any) -> float | None:
    altitude = _to_float(value)
    if altitude is None:
        return None
    if isinstance(ref, bytes):
        ref = ref[0] if ref else 0
    if ref == 1 or ref == "1":
        altitude = -altitude
    return altitude


def _by_name(tags: Mapping[int, Any], names: Mapping[int, str]) -> dict[str, Any]:
    return {names.get(tag_id, str(tag_id)): value for tag_id, value in tags.items()}


def extract_exif_metadata(exif: Image.Exif | None) -> ExifMetadata | None:
    """Convert a Pillow ``Exif`` block into :class:`ExifMetadata`.

    Returns ``None`` when the image carries no EXIF at all.
    """

    if not exif:
        return None

    base = _by_name(exif, ExifTags.TAGS)
    detail = _by_name(exif.get_ifd(_EXIF_IFD), ExifTags.TAGS)
    gps = _by_name(exif.get_ifd(_GPS_IFD), ExifTags.GPSTAGS)

    iso_value = _to_float(detail.get("ISOSpeedRatings") or detail.get("PhotographicSensitivity"))

    return ExifMetadata(
        make=_to_text(base.get("Make")),
        model=_to_text(base.get("Model")),
        software=_to_text(base.get("Software")),
        exposure_time=format_exposure_time(detail.get("ExposureTime")),
        f_number=_to_float(detail.get("FNumber")),
        iso=int(iso_value) if iso_value is not None else None,
        focal_length=_to_float(detail.get("FocalLength")),
        lens_model=_to_text(detail.get("LensModel")),
        date_taken=_format_date_taken(detail.get("DateTimeOriginal") or base.get("DateTime")),
        lat=dms_to_decimal(gps.get("GPSLatitude"), gps.get("GPSLatitudeRef")),
        lng=dms_to_decimal(gps.get("GPSLongitude"), gps.get("GPSLongitudeRef")),
        alt=_altitude(gps.get("GPSAltitude"), gps.get("GPSAltitudeRef")),
    )


def read_exif_metadata(image: Image.Image) -> ExifMetadata | None:
    """Read EXIF from an open image; unreadable blocks count as absent."""

    try:
        exif = image.getexif()
    except (OSError, ValueError, SyntaxError) as exc:
        LOGGER.warning("exif_read_error", extra={"error": str(exc)})
        return None
    return extract_exif_metadata(exif)


__all__ = [
    "ExifMetadata",
    "dms_to_decimal",
    "extract_exif_metadata",
    "format_exposure_time",
    "read_exif_metadata",
]
