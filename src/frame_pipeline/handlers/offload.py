"""OFFLOAD_ORIGINAL: move an upload to permanent storage and fan out derived jobs."""

from __future__ import annotations

import mimetypes
import time
from pathlib import Path

from frame_pipeline.db import Image, ImageStatus
from frame_pipeline.handlers.base import HandlerContext, get_image
from frame_pipeline.hasher import content_hash_matches
from frame_pipeline.payloads import (
    ExifPayload,
    JobType,
    OffloadPayload,
    PreviewPayload,
    ThumbnailPayload,
)
from frame_pipeline.storage import Bucket, SourceNotFoundError, storage_path
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "offload"})

SIBLING_JOBS = (
    (JobType.THUMBNAIL_GENERATION, ThumbnailPayload),
    (JobType.PREVIEW_GENERATION, PreviewPayload),
    (JobType.EXIF_ENRICHMENT, ExifPayload),
)


def permanent_destination(image: Image, extension: str) -> tuple[str, str]:
    """Album images go to the project-albums bucket, everything else to the user's gallery."""

    if image.album is not None:
        bucket = Bucket.PROJECT_ALBUMS
        path = storage_path(
            bucket,
            image_id=image.id,
            project_id=image.album.project_id,
            album_id=image.album.id,
            extension=extension,
        )
        return bucket, path

    if not image.user_id:
        raise ValueError(f"Image {image.id} has neither an album nor an owner; no destination bucket")
    bucket = Bucket.USER_GALLERY
    return bucket, storage_path(bucket, image_id=image.id, user_id=image.user_id, extension=extension)


def _upload_original(ctx: HandlerContext, image: Image, temp_file: Path) -> str:
    bucket, path = permanent_destination(image, temp_file.suffix.lstrip(".") or "jpg")
    content_type = image.mime_type or mimetypes.guess_type(temp_file.name)[0]
    stored = ctx.storage.store(temp_file, bucket=bucket, path=path, content_type=content_type)
    return stored.full_path


def handle_offload_original(ctx: HandlerContext, payload: OffloadPayload, job_id: str) -> None:
    image_id = payload.image_id
    temp_file = Path(payload.temp_path)

    # No transaction stays open while hashing or uploading.
    with ctx.session_factory() as session:
        image = get_image(session, image_id)

    if temp_file.is_file() and not content_hash_matches(temp_file, payload.checksum):
        # Producers may hash with another algorithm; record it and keep going.
        LOGGER.warning("offload_checksum_mismatch", extra={"image_id": image_id, "checksum": payload.checksum})

    location = payload.temp_path
    uploaded = False
    if ctx.storage.is_cloud:
        if temp_file.is_file():
            location = _upload_original(ctx, image, temp_file)
            uploaded = True
        elif image.temp_path and image.temp_path != payload.temp_path:
            # An earlier attempt already uploaded and recorded the permanent location.
            location = image.temp_path
            LOGGER.info("offload_reuse_location", extra={"image_id": image_id, "location": location})
        else:
            raise SourceNotFoundError(f"Temp file missing for image {image_id}: {payload.temp_path}")
    elif not temp_file.is_file():
        LOGGER.warning("offload_local_source_missing", extra={"image_id": image_id, "temp_path": payload.temp_path})

    with ctx.session_factory() as session:
        image = get_image(session, image_id)
        image.temp_path = location
        if image.status != ImageStatus.STORED:
            image.status = ImageStatus.PROCESSING
        if not image.checksum:
            image.checksum = payload.checksum
        image.updated_at = time.time()
        session.commit()

    if uploaded:
        temp_file.unlink(missing_ok=True)

    enqueued = []
    for job_type, payload_cls in SIBLING_JOBS:
        if ctx.store.has_active_job(job_type, image_id):
            LOGGER.info("offload_sibling_exists", extra={"image_id": image_id, "job_type": job_type.value})
            continue
        ctx.store.enqueue(
            job_type,
            payload_cls(image_id=image_id, original_path=location),
            image_id=image_id,
            max_attempts=ctx.settings.jobs.max_attempts,
        )
        enqueued.append(job_type.value)

    LOGGER.info(
        "offload_complete",
        extra={"image_id": image_id, "job_id": job_id, "location": location, "enqueued": ",".join(enqueued)},
    )


__all__ = ["SIBLING_JOBS", "handle_offload_original", "permanent_destination"]
