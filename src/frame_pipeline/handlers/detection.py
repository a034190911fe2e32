"""FACE_DETECTION and OBJECT_DETECTION: populate the auxiliary detection tables.

Both handlers are idempotent per image: once rows exist for an image, a
re-run leaves them untouched.
"""

from __future__ import annotations

import time
from typing import Callable, Sequence, TypeVar

from PIL import Image as PILImage
from sqlalchemy import func, select

from frame_pipeline.db import DetectedFace, DetectedObject
from frame_pipeline.handlers.base import HandlerContext, get_image
from frame_pipeline.imaging import open_image
from frame_pipeline.payloads import FaceDetectionPayload, ObjectDetectionPayload
from frame_pipeline.storage import SourceNotFoundError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "detection"})

T = TypeVar("T")


def _count_rows(ctx: HandlerContext, model: type, image_id: str) -> int:
    with ctx.session_factory() as session:
        return int(session.execute(select(func.count()).select_from(model).where(model.image_id == image_id)).scalar_one())


def _run_detector(ctx: HandlerContext, image_id: str, detect: Callable[[PILImage.Image], Sequence[T]]) -> Sequence[T]:
    with ctx.session_factory() as session:
        token = get_image(session, image_id).temp_path
    if not token:
        raise SourceNotFoundError(f"Image {image_id} has no stored location")

    resolved = ctx.resolve_source(token)
    try:
        source = open_image(resolved.local_path)
        try:
            return detect(source)
        finally:
            source.close()
    finally:
        ctx.release_source(resolved)


def handle_face_detection(ctx: HandlerContext, payload: FaceDetectionPayload, job_id: str) -> None:
    image_id = payload.image_id
    min_confidence = (
        payload.min_confidence if payload.min_confidence is not None else ctx.settings.detection.min_confidence
    )

    existing = _count_rows(ctx, DetectedFace, image_id)
    if existing:
        LOGGER.info("face_detection_existing", extra={"image_id": image_id, "faces": existing})
        return

    detections = _run_detector(ctx, image_id, ctx.face_detector.detect_faces)
    accepted = [face for face in detections if face.confidence >= min_confidence]

    now = time.time()
    with ctx.session_factory() as session:
        if session.execute(select(DetectedFace.id).where(DetectedFace.image_id == image_id).limit(1)).first():
            LOGGER.info("face_detection_raced", extra={"image_id": image_id})
            return
        for face in accepted:
            session.add(
                DetectedFace(
                    image_id=image_id,
                    x=face.box.x,
                    y=face.box.y,
                    width=face.box.width,
                    height=face.box.height,
                    confidence=face.confidence,
                    embedding=face.embedding,
                    created_at=now,
                )
            )
        session.commit()

    LOGGER.info(
        "face_detection_complete",
        extra={"image_id": image_id, "job_id": job_id, "faces": len(accepted), "rejected": len(detections) - len(accepted)},
    )


def handle_object_detection(ctx: HandlerContext, payload: ObjectDetectionPayload, job_id: str) -> None:
    image_id = payload.image_id
    min_confidence = ctx.settings.detection.min_confidence

    existing = _count_rows(ctx, DetectedObject, image_id)
    if existing:
        LOGGER.info("object_detection_existing", extra={"image_id": image_id, "objects": existing})
        return

    detections = _run_detector(ctx, image_id, ctx.object_detector.detect_objects)
    accepted = [obj for obj in detections if obj.confidence >= min_confidence]

    now = time.time()
    with ctx.session_factory() as session:
        if session.execute(select(DetectedObject.id).where(DetectedObject.image_id == image_id).limit(1)).first():
            LOGGER.info("object_detection_raced", extra={"image_id": image_id})
            return
        for obj in accepted:
            session.add(
                DetectedObject(
                    image_id=image_id,
                    type=obj.type,
                    label=obj.label,
                    x=obj.box.x,
                    y=obj.box.y,
                    width=obj.box.width,
                    height=obj.box.height,
                    confidence=obj.confidence,
                    embedding=obj.embedding,
                    created_at=now,
                )
            )
        session.commit()

    LOGGER.info(
        "object_detection_complete",
        extra={"image_id": image_id, "job_id": job_id, "objects": len(accepted)},
    )


__all__ = ["handle_face_detection", "handle_object_detection"]
