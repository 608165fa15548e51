"""In-process registry of background jobs.

A job is a function run on a daemon thread. It reports progress through a
``JobHandle``; clients read that state with ``JobRegistry.poll`` and never
block on the job itself.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from clinicsync.errors import JobNotFoundError
from clinicsync.models import serialize_datetime, utc_now


logger = logging.getLogger(__name__)

JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_ERROR = "error"
TERMINAL_STATUSES = {JOB_COMPLETED, JOB_ERROR}


@dataclass
class Job:
    id: str
    kind: str
    status: str = JOB_PENDING
    progress: int = 0
    total: int = 0
    message: str = ""
    created_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    cancel_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "kind": self.kind,
            "status": self.status,
            "progress": self.progress,
            "total": self.total,
            "message": self.message,
            "createdAt": serialize_datetime(self.created_at),
            "finishedAt": serialize_datetime(self.finished_at),
            "result": dict(self.result) if self.result is not None else None,
            "error": self.error,
            "cancelRequested": self.cancel_requested,
        }


class JobHandle:
    """Write side of a job, handed to the job's target function.

    Every mutation is ignored once the job is terminal, and progress never
    moves backwards.
    """

    def __init__(self, registry: "JobRegistry", job_id: str) -> None:
        self._registry = registry
        self.job_id = job_id

    @property
    def total(self) -> int:
        with self._registry._lock:
            job = self._registry._jobs.get(self.job_id)
            return job.total if job is not None else 0

    @property
    def cancelled(self) -> bool:
        with self._registry._lock:
            job = self._registry._jobs.get(self.job_id)
            return bool(job and job.cancel_requested)

    def _update(self, mutate: Callable[[Job], None]) -> None:
        with self._registry._lock:
            job = self._registry._jobs.get(self.job_id)
            if job is None or job.terminal:
                return
            if job.status == JOB_PENDING:
                job.status = JOB_IN_PROGRESS
            mutate(job)

    def set_total(self, total: int) -> None:
        def mutate(job: Job) -> None:
            job.total = max(0, int(total))
            if job.total and job.progress > job.total:
                job.progress = job.total

        self._update(mutate)

    def set_progress(self, progress: int, message: str | None = None) -> None:
        def mutate(job: Job) -> None:
            value = int(progress)
            if job.total:
                value = min(value, job.total)
            if value > job.progress:
                job.progress = value
            if message is not None:
                job.message = message

        self._update(mutate)

    def advance(self, step: int, message: str | None = None) -> None:
        with self._registry._lock:
            job = self._registry._jobs.get(self.job_id)
            current = job.progress if job is not None else 0
            self.set_progress(current + max(0, int(step)), message)

    def set_message(self, message: str) -> None:
        def mutate(job: Job) -> None:
            job.message = message

        self._update(mutate)

    def complete(self, result: dict[str, Any] | None = None, message: str | None = None) -> None:
        self._registry._finish(self.job_id, JOB_COMPLETED, result=result, message=message)

    def fail(self, error: str, result: dict[str, Any] | None = None) -> None:
        self._registry._finish(self.job_id, JOB_ERROR, result=result, error=error)


class JobRegistry:
    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], datetime] = utc_now) -> None:
        self.ttl = timedelta(seconds=max(1, int(ttl_seconds)))
        self._clock = clock
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._done: dict[str, threading.Event] = {}

    def _evict_expired(self) -> None:
        now = self._clock()
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.terminal and job.finished_at is not None and now - job.finished_at >= self.ttl
            ]
            for job_id in expired:
                self._jobs.pop(job_id, None)
                self._done.pop(job_id, None)
        if expired:
            logger.debug("Evicted %d expired jobs", len(expired))

    def create(self, kind: str, total: int = 0, message: str = "", job_id: str | None = None) -> JobHandle:
        self._evict_expired()
        job_id = job_id or uuid.uuid4().hex
        with self._lock:
            self._jobs[job_id] = Job(
                id=job_id,
                kind=kind,
                total=max(0, int(total)),
                message=message,
                created_at=self._clock(),
            )
            self._done[job_id] = threading.Event()
        return JobHandle(self, job_id)

    def launch(self, handle: JobHandle, target: Callable[[JobHandle], Any]) -> threading.Thread:
        def runner() -> None:
            try:
                target(handle)
            except Exception as exc:
                logger.exception("Job %s failed", handle.job_id)
                handle.fail(f"{type(exc).__name__}: {exc}")
                return
            # Targets that return without reporting a final state are done.
            handle.complete()

        thread = threading.Thread(target=runner, name=f"job-{handle.job_id[:8]}", daemon=True)
        thread.start()
        return thread

    def submit(
        self,
        kind: str,
        target: Callable[[JobHandle], Any],
        total: int = 0,
        message: str = "",
        job_id: str | None = None,
    ) -> str:
        handle = self.create(kind, total=total, message=message, job_id=job_id)
        self.launch(handle, target)
        return handle.job_id

    def _finish(
        self,
        job_id: str,
        status: str,
        *,
        result: dict[str, Any] | None = None,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.terminal:
                return
            job.status = status
            job.finished_at = self._clock()
            if result is not None:
                job.result = dict(result)
            if message is not None:
                job.message = message
            if error is not None:
                job.error = error
                job.message = message or error
            if status == JOB_COMPLETED and job.total and not job.cancel_requested:
                job.progress = job.total
            done = self._done.get(job_id)
        if done is not None:
            done.set()

    def get(self, job_id: str) -> Job:
        self._evict_expired()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"job {job_id} not found")
            return Job(**{name: getattr(job, name) for name in job.__dataclass_fields__})

    def poll(self, job_id: str) -> dict[str, Any]:
        return self.get(job_id).to_dict()

    def cancel(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"job {job_id} not found")
            if not job.terminal:
                job.cancel_requested = True
        return self.get(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> Job:
        with self._lock:
            done = self._done.get(job_id)
        if done is None:
            raise JobNotFoundError(f"job {job_id} not found")
        done.wait(timeout)
        return self.get(job_id)
