"""THUMBNAIL_GENERATION: square cover-cropped JPEGs at each configured size."""

from __future__ import annotations

import time

from frame_pipeline.handlers.base import (
    HandlerContext,
    get_image,
    mark_image_failed,
    mark_stored_if_ready,
)
from frame_pipeline.imaging import (
    JPEG_CONTENT_TYPE,
    ImageDecodeError,
    describe_image,
    open_image,
    render_thumbnail,
)
from frame_pipeline.payloads import ThumbnailPayload
from frame_pipeline.storage import Bucket, ResolvedPath, SourceNotFoundError, storage_path
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnail"})


def handle_thumbnail_generation(ctx: HandlerContext, payload: ThumbnailPayload, job_id: str) -> None:
    image_id = payload.image_id
    config = ctx.settings.thumbnails

    with ctx.session_factory() as session:
        get_image(session, image_id)

    resolved: ResolvedPath | None = None
    try:
        resolved = ctx.resolve_source(payload.original_path)
        source = open_image(resolved.local_path)
    except (SourceNotFoundError, ImageDecodeError) as exc:
        ctx.release_source(resolved)
        mark_image_failed(ctx.session_factory, image_id, str(exc))
        raise

    try:
        info = describe_image(source)
        stored_paths: dict[int, str] = {}
        for size in sorted(set(config.sizes)):
            data = render_thumbnail(source, size, config.quality)
            stored = ctx.storage.store(
                data,
                bucket=Bucket.THUMBNAILS,
                path=storage_path(Bucket.THUMBNAILS, image_id=image_id, filename=str(size)),
                content_type=JPEG_CONTENT_TYPE,
            )
            stored_paths[size] = stored.full_path
    finally:
        source.close()
        ctx.release_source(resolved)

    with ctx.session_factory() as session:
        image = get_image(session, image_id)
        image.thumbnail_path = stored_paths[min(stored_paths)]
        if not image.width or not image.height:
            image.width = info.width
            image.height = info.height
        if not image.mime_type and info.mime_type:
            image.mime_type = info.mime_type
        image.updated_at = time.time()
        session.commit()

    mark_stored_if_ready(ctx.session_factory, image_id)
    LOGGER.info(
        "thumbnails_generated",
        extra={"image_id": image_id, "job_id": job_id, "sizes": ",".join(str(size) for size in stored_paths)},
    )


__all__ = ["handle_thumbnail_generation"]
