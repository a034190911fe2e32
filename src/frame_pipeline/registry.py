"""Mapping from job type to the handler that executes it."""

from __future__ import annotations

from typing import Callable, Dict, Iterator, List, Optional

from frame_pipeline.payloads import JobPayload, JobType

JobHandler = Callable[[JobPayload, str], None]


class HandlerRegistry:
    """Job type → handler, populated once at worker startup.

    Handlers are called as ``handler(payload, job_id)``.
    Registering a type twice replaces the earlier handler.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_type: JobType | str, handler: JobHandler) -> None:
        if not callable(handler):
            raise TypeError(f"Handler for {job_type} must be callable")
        self._handlers[JobType(job_type).value] = handler

    def get(self, job_type: JobType | str) -> Optional[JobHandler]:
        return self._handlers.get(str(getattr(job_type, "value", job_type)))

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return str(getattr(job_type, "value", job_type)) in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.types())

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = ["HandlerRegistry", "JobHandler"]
