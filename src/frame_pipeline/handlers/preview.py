"""PREVIEW_GENERATION: a bounded, progressive web preview."""

from __future__ import annotations

import time

from frame_pipeline.handlers.base import (
    HandlerContext,
    get_image,
    mark_image_failed,
    mark_stored_if_ready,
)
from frame_pipeline.imaging import JPEG_CONTENT_TYPE, ImageDecodeError, open_image, render_preview
from frame_pipeline.payloads import PreviewPayload
from frame_pipeline.storage import Bucket, ResolvedPath, SourceNotFoundError, storage_path
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "preview"})


def handle_preview_generation(ctx: HandlerContext, payload: PreviewPayload, job_id: str) -> None:
    image_id = payload.image_id
    config = ctx.settings.preview

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
        data = render_preview(source, config.max_side, config.quality, progressive=config.progressive)
    finally:
        source.close()
        ctx.release_source(resolved)

    stored = ctx.storage.store(
        data,
        bucket=Bucket.PROCESSED,
        path=storage_path(Bucket.PROCESSED, image_id=image_id, filename="preview"),
        content_type=JPEG_CONTENT_TYPE,
    )

    with ctx.session_factory() as session:
        image = get_image(session, image_id)
        image.preview_path = stored.full_path
        image.updated_at = time.time()
        session.commit()

    mark_stored_if_ready(ctx.session_factory, image_id)
    LOGGER.info("preview_generated", extra={"image_id": image_id, "job_id": job_id, "size_bytes": len(data)})


__all__ = ["handle_preview_generation"]
