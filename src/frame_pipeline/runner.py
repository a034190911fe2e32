"""Job runner: claim pending jobs, dispatch them to handlers, settle the outcome."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from frame_pipeline.job_store import JobRecord, JobStore
from frame_pipeline.payloads import decode_payload
from frame_pipeline.registry import HandlerRegistry
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "runner"})


class NoHandlerError(LookupError):
    """No handler is registered for a job's type."""


class JobOutcomeStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    job_type: str
    status: str
    error: Optional[str] = None


@dataclass
class ProcessResult:
    """Counters for one batch.

    ``total`` is how many jobs were fetched; ``processed`` how many this
    worker actually ran (``succeeded + failed``); ``skipped`` lost the lease
    race to another worker.
    """

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: JobOutcome) -> None:
        if outcome.status == JobOutcomeStatus.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if outcome.status == JobOutcomeStatus.SUCCEEDED:
            self.succeeded += 1
        else:
            self.failed += 1
            self.errors.append(f"{outcome.job_id}: {outcome.error}")


class JobRunner:
    """Process jobs from a :class:`JobStore` with handlers from a :class:`HandlerRegistry`."""

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        *,
        batch_size: int = 5,
        poll_interval_ms: int = 5000,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._registry = registry
        self._batch_size = batch_size
        self._poll_interval = max(0, poll_interval_ms) / 1000.0

    @property
    def store(self) -> JobStore:
        return self._store

    def process_job(self, job: JobRecord) -> JobOutcome:
        """Claim, run and settle a single job."""

        if not self._store.try_acquire(job.id):
            LOGGER.debug("job_lease_lost", extra={"job_id": job.id, "job_type": job.type})
            return JobOutcome(job.id, job.type, JobOutcomeStatus.SKIPPED)

        claimed = self._store.get(job.id) or job
        attempts = claimed.attempts
        max_attempts = claimed.max_attempts
        started = time.monotonic()

        try:
            handler = self._registry.get(job.type)
            if handler is None:
                raise NoHandlerError(f"No handler registered for job type {job.type}")
            payload = decode_payload(job.type, job.payload)
            handler(payload, job.id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            status = self._store.fail(job.id, message, attempts, max_attempts)
            LOGGER.error(
                "job_failed",
                extra={
                    "job_id": job.id,
                    "job_type": job.type,
                    "attempts": attempts,
                    "max_attempts": max_attempts,
                    "job_status": status,
                    "error": message,
                },
            )
            return JobOutcome(job.id, job.type, JobOutcomeStatus.FAILED, message)

        self._store.complete(job.id)
        LOGGER.info(
            "job_completed",
            extra={
                "job_id": job.id,
                "job_type": job.type,
                "attempts": attempts,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return JobOutcome(job.id, job.type, JobOutcomeStatus.SUCCEEDED)

    def _process_isolated(self, job: JobRecord) -> JobOutcome:
        # Store failures while settling one job must not abort its siblings.
        try:
            return self.process_job(job)
        except Exception as exc:
            LOGGER.error("job_settle_error", extra={"job_id": job.id, "job_type": job.type, "error": str(exc)})
            return JobOutcome(job.id, job.type, JobOutcomeStatus.FAILED, str(exc))

    def process_pending(self) -> ProcessResult:
        """Fetch one batch and run it concurrently, returning the counters."""

        jobs = self._store.fetch_pending(self._batch_size)
        result = ProcessResult(total=len(jobs))
        if not jobs:
            return result

        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="job-runner") as executor:
            for outcome in executor.map(self._process_isolated, jobs):
                result.record(outcome)

        LOGGER.info(
            "job_batch_processed",
            extra={
                "total": result.total,
                "processed": result.processed,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    def tick(self) -> ProcessResult:
        """One poll iteration: reclaim expired leases, then process a batch."""

        self._store.release_expired_leases()
        return self.process_pending()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll until ``stop_event`` is set; a failing tick is logged and the loop goes on."""

        stop = stop_event or threading.Event()
        LOGGER.info(
            "runner_start",
            extra={
                "worker_id": self._store.worker_id,
                "batch_size": self._batch_size,
                "poll_interval_s": self._poll_interval,
                "handlers": ",".join(self._registry.types()),
            },
        )

        while not stop.is_set():
            try:
                self.tick()
            except Exception as exc:
                LOGGER.error("runner_tick_error", extra={"error": str(exc)})
            stop.wait(self._poll_interval)

        LOGGER.info("runner_stop", extra={"worker_id": self._store.worker_id})


__all__ = ["JobOutcome", "JobOutcomeStatus", "JobRunner", "NoHandlerError", "ProcessResult"]
