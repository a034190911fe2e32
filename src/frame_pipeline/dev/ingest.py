"""CLI to ingest local image files and enqueue their offload jobs."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer

from frame_pipeline.config import load_settings
from frame_pipeline.db import session_factory
from frame_pipeline.ingest import ingest_file
from frame_pipeline.job_store import JobStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ingest_cli"})

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff", ".heic"}


def _collect(paths: List[Path]) -> List[Path]:
    files: List[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(item for item in path.rglob("*") if item.is_file() and item.suffix.lower() in IMAGE_SUFFIXES))
        elif path.is_file():
            files.append(path)
    return files


def main(
    paths: List[Path] = typer.Argument(..., exists=True, readable=True, help="Image files or directories to ingest."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner recorded on the image rows."),
    album_id: Optional[str] = typer.Option(None, "--album-id", help="Album the images belong to."),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Database URL or path. Defaults to databases.url in settings.yaml.",
    ),
) -> None:
    """Stage images in the temp directory and enqueue OFFLOAD_ORIGINAL for each."""

    settings = load_settings()
    if db:
        settings.databases.url = db

    sessions = session_factory(settings.databases.url)
    store = JobStore(sessions, worker_id=settings.jobs.worker_id, lease_timeout=settings.jobs.lease_timeout_seconds)

    files = _collect(paths)
    if not files:
        LOGGER.info("ingest_noop", extra={"paths": ",".join(str(path) for path in paths)})
        return

    ingested = 0
    for file_path in files:
        result = ingest_file(
            file_path,
            settings=settings,
            store=store,
            session_factory=sessions,
            user_id=user_id,
            album_id=album_id,
        )
        typer.echo(f"{result.image_id}\t{result.job_id}\t{file_path}")
        ingested += 1

    LOGGER.info("ingest_complete", extra={"images": ingested})


def cli() -> None:
    """Console-script entrypoint."""

    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["main", "cli"]
