"""Administrative CLI for the job table: inspect, retry, cancel, enqueue."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import typer
from sqlalchemy import select

from frame_pipeline.config import load_settings
from frame_pipeline.db import Image, ImageStatus
from frame_pipeline.job_store import JobRecord, JobStore
from frame_pipeline.payloads import FaceDetectionPayload, FaceGroupingPayload, JobType, ObjectDetectionPayload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "jobs_cli"})

app = typer.Typer(help="Inspect and manage derived-asset jobs.")


def _store(db: Optional[str]) -> JobStore:
    settings = load_settings()
    if db:
        settings.databases.url = db
    return JobStore.from_settings(settings)


def _format_ts(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _format_row(job: JobRecord) -> str:
    error = (job.last_error or "").splitlines()[0][:80] if job.last_error else ""
    return "\t".join(
        [
            job.id,
            job.type,
            job.status,
            f"{job.attempts}/{job.max_attempts}",
            job.image_id or "-",
            _format_ts(job.created_at),
            error,
        ]
    )


DB_OPTION = typer.Option(None, "--db", help="Database URL or path. Defaults to databases.url in settings.yaml.")


@app.command("list")
def list_jobs(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status, for example FAILED."),
    job_type: Optional[JobType] = typer.Option(None, "--type", help="Filter by job type."),
    image_id: Optional[str] = typer.Option(None, "--image-id", help="Filter by image id."),
    limit: int = typer.Option(50, "--limit", min=1, help="Maximum number of rows to print."),
    db: Optional[str] = DB_OPTION,
) -> None:
    """Print jobs newest first."""

    store = _store(db)
    for job in store.list_jobs(status=status.upper() if status else None, job_type=job_type, image_id=image_id, limit=limit):
        typer.echo(_format_row(job))


@app.command("counts")
def counts(db: Optional[str] = DB_OPTION) -> None:
    """Print the number of jobs in each status."""

    for status, count in sorted(_store(db).counts_by_status().items()):
        typer.echo(f"{status}\t{count}")


@app.command("retry")
def retry(job_ids: List[str] = typer.Argument(..., help="Ids of FAILED jobs to re-queue."), db: Optional[str] = DB_OPTION) -> None:
    """Re-queue failed jobs with a fresh attempt budget."""

    store = _store(db)
    missed = [job_id for job_id in job_ids if not store.retry(job_id)]
    if missed:
        typer.echo(f"Not retried (missing or not FAILED): {', '.join(missed)}", err=True)
        raise typer.Exit(code=1)


@app.command("cancel")
def cancel(job_ids: List[str] = typer.Argument(..., help="Ids of PENDING or RUNNING jobs."), db: Optional[str] = DB_OPTION) -> None:
    """Cancel pending or running jobs."""

    store = _store(db)
    missed = [job_id for job_id in job_ids if not store.cancel(job_id)]
    if missed:
        typer.echo(f"Not cancelled (missing or already settled): {', '.join(missed)}", err=True)
        raise typer.Exit(code=1)


@app.command("enqueue-detection")
def enqueue_detection(
    faces: bool = typer.Option(True, "--faces/--no-faces", help="Enqueue FACE_DETECTION jobs."),
    objects: bool = typer.Option(True, "--objects/--no-objects", help="Enqueue OBJECT_DETECTION jobs."),
    min_confidence: Optional[float] = typer.Option(None, "--min-confidence", min=0.0, max=1.0),
    db: Optional[str] = DB_OPTION,
) -> None:
    """Enqueue detection jobs for every stored image without an active one."""

    settings = load_settings()
    if db:
        settings.databases.url = db
    store = JobStore.from_settings(settings)

    with store.session_factory() as session:
        image_ids = list(
            session.execute(select(Image.id).where(Image.status == ImageStatus.STORED).order_by(Image.created_at)).scalars()
        )

    enqueued = 0
    for image_id in image_ids:
        if faces and not store.has_active_job(JobType.FACE_DETECTION, image_id):
            store.enqueue(
                JobType.FACE_DETECTION,
                FaceDetectionPayload(image_id=image_id, min_confidence=min_confidence),
                image_id=image_id,
                max_attempts=settings.jobs.max_attempts,
            )
            enqueued += 1
        if objects and not store.has_active_job(JobType.OBJECT_DETECTION, image_id):
            store.enqueue(
                JobType.OBJECT_DETECTION,
                ObjectDetectionPayload(image_id=image_id),
                image_id=image_id,
                max_attempts=settings.jobs.max_attempts,
            )
            enqueued += 1

    LOGGER.info("enqueue_detection_complete", extra={"images": len(image_ids), "jobs_enqueued": enqueued})


@app.command("enqueue-grouping")
def enqueue_grouping(
    album_id: Optional[str] = typer.Option(None, "--album-id", help="Restrict grouping to one album."),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=-1.0, max=1.0),
    db: Optional[str] = DB_OPTION,
) -> None:
    """Enqueue a FACE_GROUPING job."""

    store = _store(db)
    job_id = store.enqueue(JobType.FACE_GROUPING, FaceGroupingPayload(album_id=album_id, threshold=threshold))
    typer.echo(job_id)


def main() -> None:
    """Entrypoint used when invoking the module as a script."""

    app()


if __name__ == "__main__":
    main()


__all__ = ["app", "main"]
