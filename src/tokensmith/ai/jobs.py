"""Per-chunk job state machine for streamed executions."""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Callable

from ..services.events import EventBus, JobStateChanged

__all__ = ["JobStatus", "Job", "JobBoard", "SKIP_PREFIX", "CANCELLED"]

LOGGER = logging.getLogger(__name__)

SKIP_PREFIX = "skip:"
CANCELLED = "cancelled"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.OK, JobStatus.ERROR)

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {JobStatus.PENDING: 0, JobStatus.RUNNING: 1, JobStatus.OK: 2, JobStatus.ERROR: 2}


@dataclass(slots=True, frozen=True)
class Job:
    """Snapshot of one chunk's progress."""

    index: int
    path: str
    status: JobStatus = JobStatus.PENDING
    ms: float | None = None
    error: str | None = None
    started_at: float | None = None
    system_msg: str | None = None
    user_msg: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def skipped(self) -> bool:
        """``True`` for an intentional omission reported as ``skip: ...``."""

        return self.status is JobStatus.ERROR and (self.error or "").lstrip().lower().startswith(SKIP_PREFIX)

    @property
    def failed(self) -> bool:
        return self.status is JobStatus.ERROR and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"index": self.index, "path": self.path, "status": self.status.value}
        if self.ms is not None:
            payload["ms"] = self.ms
        if self.error is not None:
            payload["error"] = self.error
        if self.started_at is not None:
            payload["startedAt"] = self.started_at
        if self.system_msg is not None:
            payload["systemMsg"] = self.system_msg
        if self.user_msg is not None:
            payload["userMsg"] = self.user_msg
        return payload


class JobBoard:
    """Jobs of one run, keyed by chunk index.

    Transitions only move forward (``pending -> running -> ok|error``).
    Events for undeclared indices, repeated plans and regressions are logged
    and ignored so late or reordered stream events cannot corrupt state.
    """

    def __init__(self, *, bus: EventBus | None = None, clock: Callable[[], float] = time.time) -> None:
        self._jobs: dict[int, Job] = {}
        self._declared = False
        self._bus = bus
        self._clock = clock

    @property
    def declared(self) -> bool:
        return self._declared

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, index: int) -> Job | None:
        return self._jobs.get(index)

    def jobs(self) -> tuple[Job, ...]:
        return tuple(self._jobs.values())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def declare(self, chunks: Iterable[Mapping[str, Any]]) -> bool:
        if self._declared:
            LOGGER.warning("Ignoring repeated plan event")
            return False
        self._declared = True
        for chunk in chunks:
            if not isinstance(chunk, Mapping):
                continue
            index = _coerce_index(chunk.get("index"))
            if index is None:
                LOGGER.warning("Ignoring plan chunk without an integer index: %s", chunk)
                continue
            if index in self._jobs:
                LOGGER.warning("Ignoring duplicate plan chunk %s", index)
                continue
            job = Job(index=index, path=str(chunk.get("path") or ""))
            self._jobs[index] = job
            self._publish(job)
        LOGGER.debug("Declared %d job(s)", len(self._jobs))
        return True

    def start(self, index: Any) -> bool:
        job = self._lookup(index, "chunk_start")
        if job is None:
            return False
        if job.status is not JobStatus.PENDING:
            LOGGER.debug("Ignoring chunk_start for job %s in state %s", job.index, job.status.value)
            return False
        self._store(replace(job, status=JobStatus.RUNNING, started_at=self._clock()))
        return True

    def complete(
        self,
        index: Any,
        ok: bool,
        *,
        ms: float | None = None,
        error: str | None = None,
        system_msg: str | None = None,
        user_msg: str | None = None,
    ) -> bool:
        job = self._lookup(index, "chunk_complete")
        if job is None:
            return False
        if job.is_terminal:
            LOGGER.debug("Ignoring chunk_complete for finished job %s", job.index)
            return False
        self._store(
            replace(
                job,
                status=JobStatus.OK if ok else JobStatus.ERROR,
                ms=ms,
                error=None if ok else error,
                system_msg=system_msg,
                user_msg=user_msg,
            )
        )
        return True

    def cancel_unfinished(self, reason: str = CANCELLED) -> int:
        """Force every non-terminal job to ``error`` with ``reason``."""

        cancelled = 0
        for job in list(self._jobs.values()):
            if job.is_terminal:
                continue
            self._store(replace(job, status=JobStatus.ERROR, error=reason))
            cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------
    @property
    def planned(self) -> int:
        return len(self._jobs)

    @property
    def succeeded(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.OK)

    @property
    def failed(self) -> int:
        return sum(1 for job in self._jobs.values() if job.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for job in self._jobs.values() if job.skipped)

    @property
    def unfinished(self) -> int:
        return sum(1 for job in self._jobs.values() if not job.is_terminal)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _lookup(self, index: Any, event_type: str) -> Job | None:
        key = _coerce_index(index)
        job = self._jobs.get(key) if key is not None else None
        if job is None:
            LOGGER.warning("Ignoring %s for undeclared chunk %r", event_type, index)
        return job

    def _store(self, job: Job) -> None:
        previous = self._jobs.get(job.index)
        if previous is not None and job.status.rank < previous.status.rank:  # pragma: no cover - guarded by callers
            raise RuntimeError(f"Job {job.index} cannot move from {previous.status.value} to {job.status.value}")
        self._jobs[job.index] = job
        self._publish(job)

    def _publish(self, job: Job) -> None:
        if self._bus is not None:
            self._bus.publish(
                JobStateChanged(index=job.index, path=job.path, status=job.status.value, ms=job.ms, error=job.error)
            )


def _coerce_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
