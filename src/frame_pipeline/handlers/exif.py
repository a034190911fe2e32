"""EXIF_ENRICHMENT: copy camera and location metadata onto the image row."""

from __future__ import annotations

import time

from PIL import Image as PILImage
from sqlalchemy import update

from frame_pipeline.db import Image
from frame_pipeline.exif import read_exif_metadata
from frame_pipeline.handlers.base import HandlerContext, get_image
from frame_pipeline.payloads import ExifPayload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "exif"})


def handle_exif_enrichment(ctx: HandlerContext, payload: ExifPayload, job_id: str) -> None:
    image_id = payload.image_id

    with ctx.session_factory() as session:
        get_image(session, image_id)

    resolved = ctx.resolve_source(payload.original_path)
    try:
        with PILImage.open(resolved.local_path) as handle:
            metadata = read_exif_metadata(handle)
    finally:
        ctx.release_source(resolved)

    if metadata is None:
        LOGGER.info("exif_absent", extra={"image_id": image_id, "job_id": job_id})
        return

    with ctx.session_factory() as session:
        session.execute(
            update(Image)
            .where(Image.id == image_id)
            .values(**metadata.as_dict(), updated_at=time.time())
        )
        session.commit()

    LOGGER.info(
        "exif_enriched",
        extra={"image_id": image_id, "job_id": job_id, "has_gps": metadata.lat is not None},
    )


__all__ = ["handle_exif_enrichment"]
