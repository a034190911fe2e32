"""Upload-side entry into the pipeline: temp file, image row, offload job."""

from __future__ import annotations

import mimetypes
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from frame_pipeline.config import Settings
from frame_pipeline.db import Album, Image, ImageStatus, SessionFactory
from frame_pipeline.hasher import compute_content_hash
from frame_pipeline.job_store import JobStore
from frame_pipeline.payloads import JobType, OffloadPayload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ingest"})


@dataclass(frozen=True)
class IngestResult:
    image_id: str
    job_id: str
    temp_path: str
    checksum: str


def _write_temp_copy(source: Path, temp_dir: Path, image_id: str) -> Path:
    temp_dir.mkdir(parents=True, exist_ok=True)
    target = temp_dir / f"{image_id}{source.suffix.lower() or '.jpg'}"
    partial = target.with_name(f"{target.name}.part")
    try:
        shutil.copyfile(source, partial)
        os.replace(partial, target)
    except OSError:
        partial.unlink(missing_ok=True)
        raise
    return target


def ingest_file(
    source: Path,
    *,
    settings: Settings,
    store: JobStore,
    session_factory: SessionFactory,
    user_id: Optional[str] = None,
    album_id: Optional[str] = None,
) -> IngestResult:
    """Stage ``source`` in the temp directory and enqueue its offload.

    The image row starts ``INGESTED``; everything after that happens in
    the job runner.
    """

    if not source.is_file():
        raise FileNotFoundError(f"Not a file: {source}")
    if not settings.storage.temp_dirs:
        raise ValueError("storage.temp_dirs must name at least one directory")

    image_id = uuid.uuid4().hex
    temp_file = _write_temp_copy(source, Path(settings.storage.temp_dirs[0]).expanduser(), image_id)
    checksum = compute_content_hash(temp_file)

    now = time.time()
    try:
        with session_factory() as session:
            if album_id and session.get(Album, album_id) is None:
                raise LookupError(f"Album not found: {album_id}")
            session.add(
                Image(
                    id=image_id,
                    user_id=user_id,
                    album_id=album_id,
                    temp_path=str(temp_file),
                    status=ImageStatus.INGESTED,
                    checksum=checksum,
                    mime_type=mimetypes.guess_type(source.name)[0],
                    created_at=now,
                    updated_at=now,
                )
            )
            session.commit()
    except Exception:
        temp_file.unlink(missing_ok=True)
        raise

    job_id = store.enqueue(
        JobType.OFFLOAD_ORIGINAL,
        OffloadPayload(image_id=image_id, temp_path=str(temp_file), checksum=checksum),
        image_id=image_id,
        max_attempts=settings.jobs.max_attempts,
    )

    LOGGER.info(
        "image_ingested",
        extra={"image_id": image_id, "job_id": job_id, "source": str(source), "checksum": checksum},
    )
    return IngestResult(image_id=image_id, job_id=job_id, temp_path=str(temp_file), checksum=checksum)


__all__ = ["IngestResult", "ingest_file"]
