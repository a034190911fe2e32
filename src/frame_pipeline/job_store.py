"""Persistent job table access with lease-based exclusive claiming.

Any number of worker processes may share one database. A job is claimed by a
single conditional ``UPDATE`` that only succeeds while the row is still
``PENDING`` and either unlocked or holding an expired lease, so exactly one
contender wins. ``RUNNING`` rows whose worker died are returned to
``PENDING`` by :meth:`JobStore.release_expired_leases`.
"""

from __future__ import annotations

import os
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update

from frame_pipeline.config import Settings
from frame_pipeline.db import Job, JobStatus, SessionFactory
from frame_pipeline.db import session_factory as build_session_factory
from frame_pipeline.payloads import JobPayload, JobType, decode_payload, encode_payload
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "job_store"})

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
MAX_ERROR_LENGTH = 4000


def default_worker_id() -> str:
    """Host, pid and a short random suffix; unique per store instance."""

    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class JobRecord:
    """Detached snapshot of a job row."""

    id: str
    type: str
    payload: str
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    locked_at: Optional[float]
    locked_by: Optional[str]
    image_id: Optional[str]
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: Job) -> "JobRecord":
        return cls(
            id=row.id,
            type=row.type,
            payload=row.payload,
            status=row.status,
            attempts=int(row.attempts or 0),
            max_attempts=int(row.max_attempts or 0),
            last_error=row.last_error,
            locked_at=row.locked_at,
            locked_by=row.locked_by,
            image_id=row.image_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def decoded_payload(self) -> JobPayload:
        return decode_payload(self.type, self.payload)


class JobStore:
    """Enqueue, claim, and settle jobs in the shared ``jobs`` table."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        worker_id: Optional[str] = None,
        lease_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        self._session_factory = session_factory
        self._worker_id = worker_id or default_worker_id()
        self._lease_timeout = float(lease_timeout)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobStore":
        """Store bound to the configured database and lease parameters."""

        return cls(
            build_session_factory(settings.databases.url),
            worker_id=settings.jobs.worker_id,
            lease_timeout=settings.jobs.lease_timeout_seconds,
        )

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def lease_timeout(self) -> float:
        return self._lease_timeout

    def enqueue(
        self,
        job_type: JobType | str,
        payload: JobPayload,
        *,
        image_id: Optional[str] = None,
        max_attempts: int = 3,
    ) -> str:
        """Insert a new ``PENDING`` job with zero attempts and no lease; return its id."""

        type_value = JobType(job_type).value
        if payload.job_type.value != type_value:
            raise ValueError(f"Payload for {payload.job_type.value} cannot be enqueued as {type_value}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self._clock()
        with self._session_factory() as session:
            row = Job(
                type=type_value,
                payload=encode_payload(payload),
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=max_attempts,
                image_id=image_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            job_id = row.id

        LOGGER.info(
            "job_enqueued",
            extra={"job_id": job_id, "job_type": type_value, "image_id": image_id},
        )
        return job_id

    def fetch_pending(self, limit: int) -> List[JobRecord]:
        """Return up to ``limit`` claimable jobs, oldest first.

        This is a snapshot for the caller to attempt claims on; it does not
        reserve anything.
        """

        if limit <= 0:
            return []
        cutoff = self._clock() - self._lease_timeout
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PENDING,
                        or_(Job.locked_at.is_(None), Job.locked_at < cutoff),
                    )
                    .order_by(Job.created_at, Job.id)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [JobRecord.from_row(row) for row in rows]

    def try_acquire(self, job_id: str, now: Optional[float] = None) -> bool:
        """Atomically claim ``job_id`` for this worker.

        Returns ``True`` for exactly one concurrent caller; the winner's row is
        ``RUNNING`` with a fresh lease and one more attempt recorded.
        """

        now = self._clock() if now is None else now
        cutoff = now - self._lease_timeout
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PENDING,
                    or_(Job.locked_at.is_(None), Job.locked_at < cutoff),
                )
                .values(
                    status=JobStatus.RUNNING,
                    locked_at=now,
                    locked_by=self._worker_id,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
            )
            session.commit()
            acquired = result.rowcount == 1

        if acquired:
            LOGGER.debug("job_lease_acquired", extra={"job_id": job_id, "worker_id": self._worker_id})
        return acquired

    def complete(self, job_id: str) -> bool:
        """Mark a running job ``COMPLETED`` and release its lease."""

        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
                .values(
                    status=JobStatus.COMPLETED,
                    locked_at=None,
                    locked_by=None,
                    updated_at=now,
                )
            )
            session.commit()
            updated = result.rowcount == 1

        if not updated:
            LOGGER.warning("job_complete_ignored", extra={"job_id": job_id})
        return updated

    def fail(self, job_id: str, error_message: str, attempts: int, max_attempts: int) -> str:
        """Record a handler failure and release the lease.

        ``attempts`` is the count after this run's increment. The job goes back
        to ``PENDING`` while retries remain and to ``FAILED`` once
        ``attempts >= max_attempts``. Returns the status written.
        """

        status = JobStatus.FAILED if attempts >= max_attempts else JobStatus.PENDING
        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
                .values(
                    status=status,
                    last_error=(error_message or "")[:MAX_ERROR_LENGTH],
                    locked_at=None,
                    locked_by=None,
                    updated_at=now,
                )
            )
            session.commit()
            updated = result.rowcount == 1

        if not updated:
            LOGGER.warning("job_fail_ignored", extra={"job_id": job_id})
            current = self.get(job_id)
            return current.status if current is not None else status
        return status

    def release_expired_leases(self, now: Optional[float] = None) -> int:
        """Return ``RUNNING`` jobs whose lease expired to ``PENDING``.

        The stale ``locked_at`` is kept so the row is immediately claimable
        while the attempt that was in flight still counts.
        """

        now = self._clock() if now is None else now
        cutoff = now - self._lease_timeout
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.status == JobStatus.RUNNING,
                    Job.locked_at.is_not(None),
                    Job.locked_at < cutoff,
                )
                .values(status=JobStatus.PENDING, updated_at=now)
            )
            session.commit()
            released = int(result.rowcount or 0)

        if released:
            LOGGER.info("job_leases_released", extra={"count": released})
        return released

    def has_active_job(self, job_type: JobType | str, image_id: str) -> bool:
        """Whether a ``PENDING`` or ``RUNNING`` job of this type exists for the image."""

        type_value = JobType(job_type).value
        with self._session_factory() as session:
            found = session.execute(
                select(Job.id)
                .where(
                    and_(
                        Job.type == type_value,
                        Job.image_id == image_id,
                        Job.status.in_(ACTIVE_STATUSES),
                    )
                )
                .limit(1)
            ).first()
        return found is not None

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._session_factory() as session:
            row = session.get(Job, job_id)
            return JobRecord.from_row(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[JobType | str] = None,
        image_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        """Return jobs matching the filters, newest first."""

        query = select(Job)
        if status:
            query = query.where(Job.status == status)
        if job_type:
            query = query.where(Job.type == JobType(job_type).value)
        if image_id:
            query = query.where(Job.image_id == image_id)
        query = query.order_by(Job.created_at.desc(), Job.id).limit(max(1, limit))

        with self._session_factory() as session:
            return [JobRecord.from_row(row) for row in session.execute(query).scalars().all()]

    def counts_by_status(self) -> Dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
        return {str(status): int(count) for status, count in rows}

    def cancel(self, job_id: str) -> bool:
        """Cancel a ``PENDING`` or ``RUNNING`` job; later settles are ignored."""

        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES))
                .values(status=JobStatus.CANCELLED, locked_at=None, locked_by=None, updated_at=now)
            )
            session.commit()
            cancelled = result.rowcount == 1

        LOGGER.info("job_cancel", extra={"job_id": job_id, "cancelled": cancelled})
        return cancelled

    def retry(self, job_id: str) -> bool:
        """Re-queue a ``FAILED`` job with a fresh attempt budget."""

        now = self._clock()
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.FAILED)
                .values(
                    status=JobStatus.PENDING,
                    attempts=0,
                    last_error=None,
                    locked_at=None,
                    locked_by=None,
                    updated_at=now,
                )
            )
            session.commit()
            retried = result.rowcount == 1

        LOGGER.info("job_retry", extra={"job_id": job_id, "retried": retried})
        return retried


__all__ = ["ACTIVE_STATUSES", "JobRecord", "JobStore", "default_worker_id"]
