"""CLI worker that drains the ``jobs`` table.

Runs the poll loop by default; ``--once`` processes a single batch and exits,
which suits cron-style or serverless invocations. Any number of workers may
point at the same database.
"""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Optional

import typer

from frame_pipeline.config import Settings, load_settings
from frame_pipeline.db import session_factory
from frame_pipeline.db_helpers import redact_database_url
from frame_pipeline.detection import PlaceholderFaceDetector, PlaceholderObjectDetector
from frame_pipeline.handlers import HandlerContext, build_default_registry
from frame_pipeline.job_store import JobStore
from frame_pipeline.runner import JobRunner
from frame_pipeline.storage import build_storage
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "worker"})


def build_runner(settings: Settings) -> JobRunner:
    """Wire store, storage, handlers and runner from ``settings``."""

    sessions = session_factory(settings.databases.url)
    store = JobStore(
        sessions,
        worker_id=settings.jobs.worker_id,
        lease_timeout=settings.jobs.lease_timeout_seconds,
    )
    ctx = HandlerContext(
        settings=settings,
        storage=build_storage(settings.storage),
        store=store,
        session_factory=sessions,
        face_detector=PlaceholderFaceDetector(embedding_dim=settings.detection.embedding_dim),
        object_detector=PlaceholderObjectDetector(embedding_dim=settings.detection.embedding_dim),
    )
    return JobRunner(
        store,
        build_default_registry(ctx),
        batch_size=settings.jobs.batch_size,
        poll_interval_ms=settings.jobs.poll_interval_ms,
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _request_stop(signum: int, _frame: object) -> None:
        LOGGER.info("worker_stop_requested", extra={"signal": signum})
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def main(
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Database URL or path. Defaults to databases.url in settings.yaml.",
    ),
    settings_path: Optional[Path] = typer.Option(
        None,
        "--settings",
        dir_okay=False,
        help="Settings YAML to load instead of config/settings.yaml.",
    ),
    once: bool = typer.Option(
        False,
        "--once/--loop",
        help="Process a single batch and exit instead of polling forever.",
    ),
    batch_size: Optional[int] = typer.Option(
        None,
        "--batch-size",
        min=1,
        help="Override jobs.batch_size from settings.yaml.",
    ),
    poll_interval_ms: Optional[int] = typer.Option(
        None,
        "--poll-interval-ms",
        min=0,
        help="Override jobs.poll_interval_ms from settings.yaml.",
    ),
    worker_id: Optional[str] = typer.Option(
        None,
        "--worker-id",
        help="Lease owner recorded on claimed jobs; defaults to host-pid-random.",
    ),
) -> None:
    """Process derived-asset jobs from the shared job table."""

    settings = load_settings(settings_path)
    if db:
        settings.databases.url = db
    if batch_size is not None:
        settings.jobs.batch_size = batch_size
    if poll_interval_ms is not None:
        settings.jobs.poll_interval_ms = poll_interval_ms
    if worker_id:
        settings.jobs.worker_id = worker_id

    runner = build_runner(settings)
    LOGGER.info(
        "worker_start",
        extra={
            "db": redact_database_url(settings.databases.url),
            "storage_backend": settings.storage.backend,
            "mode": "once" if once else "loop",
            "worker_id": runner.store.worker_id,
        },
    )

    if once:
        result = runner.tick()
        LOGGER.info(
            "worker_complete",
            extra={
                "total": result.total,
                "processed": result.processed,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        if result.failed:
            raise typer.Exit(code=1)
        return

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    runner.run_forever(stop_event)


def cli() -> None:
    """Console-script entrypoint."""

    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["build_runner", "main", "cli"]
