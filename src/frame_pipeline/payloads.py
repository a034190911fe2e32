"""Job types and their typed payloads.

Payloads travel through the job table as JSON text with camelCase keys (the
shape upstream enqueuers already write). Decoding happens once, at the store
edge, so handlers only ever see the dataclass for their job type.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Type, Union, get_args, get_type_hints


class JobType(str, Enum):
    """Discriminator selecting the handler for a job."""

    OFFLOAD_ORIGINAL = "OFFLOAD_ORIGINAL"
    THUMBNAIL_GENERATION = "THUMBNAIL_GENERATION"
    PREVIEW_GENERATION = "PREVIEW_GENERATION"
    EXIF_ENRICHMENT = "EXIF_ENRICHMENT"
    FACE_DETECTION = "FACE_DETECTION"
    OBJECT_DETECTION = "OBJECT_DETECTION"
    FACE_GROUPING = "FACE_GROUPING"


class PayloadError(ValueError):
    """Raised when a stored payload cannot be decoded for its job type."""


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _checked_value(job_type: JobType, key: str, value: Any, hint: Any) -> Any:
    """Validate one decoded field against its annotation; ints widen to floats."""

    allowed = get_args(hint) or (hint,)
    if value is None and type(None) in allowed:
        return None
    if float in allowed and isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if str in allowed and isinstance(value, str):
        return value
    expected = " or ".join(t.__name__ for t in allowed if t is not type(None))
    raise PayloadError(f"Invalid {job_type.value} payload: {key} must be {expected}, got {value!r}")


class _Payload:
    job_type: ClassVar[JobType]

    def to_json_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.job_type.value}
        for item in fields(self):  # type: ignore[arg-type]
            value = getattr(self, item.name)
            if value is not None:
                data[_camel(item.name)] = value
        return data

    @classmethod
    def from_json_dict(cls, data: Dict[str, Any]) -> "_Payload":
        hints = get_type_hints(cls)
        kwargs: Dict[str, Any] = {}
        for item in fields(cls):  # type: ignore[arg-type]
            key = _camel(item.name)
            if key in data:
                kwargs[item.name] = _checked_value(cls.job_type, key, data[key], hints[item.name])
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise PayloadError(f"Invalid {cls.job_type.value} payload: {exc}") from exc


@dataclass(frozen=True)
class OffloadPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.OFFLOAD_ORIGINAL

    image_id: str
    temp_path: str
    checksum: str


@dataclass(frozen=True)
class ThumbnailPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.THUMBNAIL_GENERATION

    image_id: str
    original_path: str


@dataclass(frozen=True)
class PreviewPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.PREVIEW_GENERATION

    image_id: str
    original_path: str


@dataclass(frozen=True)
class ExifPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.EXIF_ENRICHMENT

    image_id: str
    original_path: str


@dataclass(frozen=True)
class FaceDetectionPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.FACE_DETECTION

    image_id: str
    min_confidence: float | None = None


@dataclass(frozen=True)
class ObjectDetectionPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.OBJECT_DETECTION

    image_id: str


@dataclass(frozen=True)
class FaceGroupingPayload(_Payload):
    job_type: ClassVar[JobType] = JobType.FACE_GROUPING

    album_id: str | None = None
    threshold: float | None = None


JobPayload = Union[
    OffloadPayload,
    ThumbnailPayload,
    PreviewPayload,
    ExifPayload,
    FaceDetectionPayload,
    ObjectDetectionPayload,
    FaceGroupingPayload,
]

PAYLOAD_TYPES: Dict[str, Type[_Payload]] = {
    cls.job_type.value: cls
    for cls in (
        OffloadPayload,
        ThumbnailPayload,
        PreviewPayload,
        ExifPayload,
        FaceDetectionPayload,
        ObjectDetectionPayload,
        FaceGroupingPayload,
    )
}


def encode_payload(payload: JobPayload) -> str:
    """Serialize a payload to the JSON text stored on the job row."""

    return json.dumps(payload.to_json_dict(), sort_keys=True)


def decode_payload(job_type: str, raw: str) -> JobPayload:
    """Decode stored JSON text into the payload dataclass for ``job_type``."""

    payload_cls = PAYLOAD_TYPES.get(str(job_type))
    if payload_cls is None:
        raise PayloadError(f"Unknown job type: {job_type}")

    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise PayloadError(f"Payload for {job_type} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadError(f"Payload for {job_type} must be a JSON object")

    return payload_cls.from_json_dict(data)  # type: ignore[return-value]


__all__ = [
    "JobType",
    "JobPayload",
    "PayloadError",
    "OffloadPayload",
    "ThumbnailPayload",
    "PreviewPayload",
    "ExifPayload",
    "FaceDetectionPayload",
    "ObjectDetectionPayload",
    "FaceGroupingPayload",
    "PAYLOAD_TYPES",
    "encode_payload",
    "decode_payload",
]
