"""Shared context and image-row helpers for the job handlers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import update
from sqlalchemy.orm import Session

from frame_pipeline.config import Settings
from frame_pipeline.db import Image, ImageStatus, SessionFactory
from frame_pipeline.detection import (
    FaceDetector,
    ObjectDetector,
    PlaceholderFaceDetector,
    PlaceholderObjectDetector,
)
from frame_pipeline.job_store import JobStore
from frame_pipeline.storage import ResolvedPath, StorageProvider, resolve_source_location
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "handlers"})


class ImageNotFoundError(LookupError):
    """The image row a job refers to does not exist."""


@dataclass
class HandlerContext:
    """Everything a handler needs, built once per worker."""

    settings: Settings
    storage: StorageProvider
    store: JobStore
    session_factory: SessionFactory
    face_detector: FaceDetector = field(default_factory=PlaceholderFaceDetector)
    object_detector: ObjectDetector = field(default_factory=PlaceholderObjectDetector)

    def resolve_source(self, token: str) -> ResolvedPath:
        return resolve_source_location(
            token,
            self.storage,
            default_bucket=self.settings.storage.default_bucket,
            temp_dirs=[Path(item).expanduser() for item in self.settings.storage.temp_dirs],
        )

    def release_source(self, resolved: ResolvedPath | None) -> None:
        """Drop the local cache copy of a downloaded cloud object."""

        if resolved is None or resolved.bucket is None:
            return
        self.storage.discard_local_copy(resolved.local_path)


def get_image(session: Session, image_id: str) -> Image:
    image = session.get(Image, image_id)
    if image is None:
        raise ImageNotFoundError(f"Image not found: {image_id}")
    return image


def mark_stored_if_ready(session_factory: SessionFactory, image_id: str) -> bool:
    """Flip the image to ``STORED`` once both derived paths exist.

    A single conditional update, so whichever of the thumbnail and preview
    jobs finishes last performs the transition and the other is a no-op.
    """

    with session_factory() as session:
        result = session.execute(
            update(Image)
            .where(
                Image.id == image_id,
                Image.status != ImageStatus.STORED,
                Image.thumbnail_path.is_not(None),
                Image.preview_path.is_not(None),
            )
            .values(status=ImageStatus.STORED, updated_at=time.time())
        )
        session.commit()
        stored = result.rowcount == 1

    if stored:
        LOGGER.info("image_stored", extra={"image_id": image_id})
    return stored


def mark_image_failed(session_factory: SessionFactory, image_id: str, reason: str) -> bool:
    """Set ``FAILED`` on an image whose source cannot be turned into derived assets."""

    with session_factory() as session:
        result = session.execute(
            update(Image)
            .where(Image.id == image_id, Image.status != ImageStatus.STORED)
            .values(status=ImageStatus.FAILED, updated_at=time.time())
        )
        session.commit()
        failed = result.rowcount == 1

    LOGGER.error("image_failed", extra={"image_id": image_id, "reason": reason, "updated": failed})
    return failed


__all__ = [
    "HandlerContext",
    "ImageNotFoundError",
    "get_image",
    "mark_image_failed",
    "mark_stored_if_ready",
]
