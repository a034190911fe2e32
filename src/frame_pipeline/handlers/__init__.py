"""Job handlers, one module per job type, and the default registry wiring."""

from __future__ import annotations

from functools import partial

from frame_pipeline.handlers.base import HandlerContext, ImageNotFoundError
from frame_pipeline.handlers.detection import handle_face_detection, handle_object_detection
from frame_pipeline.handlers.exif import handle_exif_enrichment
from frame_pipeline.handlers.grouping import handle_face_grouping
from frame_pipeline.handlers.offload import handle_offload_original
from frame_pipeline.handlers.preview import handle_preview_generation
from frame_pipeline.handlers.thumbnail import handle_thumbnail_generation
from frame_pipeline.payloads import JobType
from frame_pipeline.registry import HandlerRegistry

DEFAULT_HANDLERS = {
    JobType.OFFLOAD_ORIGINAL: handle_offload_original,
    JobType.THUMBNAIL_GENERATION: handle_thumbnail_generation,
    JobType.PREVIEW_GENERATION: handle_preview_generation,
    JobType.EXIF_ENRICHMENT: handle_exif_enrichment,
    JobType.FACE_DETECTION: handle_face_detection,
    JobType.OBJECT_DETECTION: handle_object_detection,
    JobType.FACE_GROUPING: handle_face_grouping,
}


def build_default_registry(ctx: HandlerContext) -> HandlerRegistry:
    """Register every built-in handler bound to ``ctx``."""

    registry = HandlerRegistry()
    for job_type, handler in DEFAULT_HANDLERS.items():
        registry.register(job_type, partial(handler, ctx))
    return registry


__all__ = ["DEFAULT_HANDLERS", "HandlerContext", "ImageNotFoundError", "build_default_registry"]
