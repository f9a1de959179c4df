"""In-process registry of long-running jobs (searches, scrapes, embeddings).

The registry is authoritative for liveness: progress, cancellation and
completion are applied in memory first, then written to the job store on a
best-effort basis so that a restarted process can recover what happened.
All mutation happens on the event loop thread between awaits, so the job
map needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from xsearch import config
from xsearch.job_store import JobStore
from xsearch.models import Job, JobProgress, JobStatus, JobType
from xsearch.store import utcnow

logger = logging.getLogger(__name__)

JobListener = Callable[[list[Job]], None]


class CancellationToken:
    """Read-only view of a cancellation flag; only the tracker can set it."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class JobContext:
    """Handle given to the operation running under a job."""

    def __init__(
        self, job_id: str, token: CancellationToken, tracker: JobTrackingService
    ) -> None:
        self.job_id = job_id
        self.token = token
        self._tracker = tracker

    def is_cancelled(self) -> bool:
        return self.token.cancelled

    def update_progress(self, current: int, total: int, message: str) -> None:
        self._tracker.update_progress(self.job_id, current, total, message)


class JobTrackingService:
    """Create, observe, cancel and recover background jobs."""

    def __init__(
        self,
        store: JobStore | None = None,
        *,
        grace_period: float = config.JOB_GRACE_PERIOD,
        stale_after: float = config.JOB_STALE_AFTER,
        retention: float = config.JOB_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._grace_period = grace_period
        self._stale_after = timedelta(seconds=stale_after)
        self._retention = timedelta(seconds=retention)
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._listeners: list[JobListener] = []
        self._evictions: dict[str, asyncio.TimerHandle] = {}
        self._init_task: asyncio.Future[None] | None = None
        self._initialized = False

    # ── lifecycle ───────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Recover from a previous crash. Safe to call repeatedly and concurrently."""
        if self._initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._recover())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise
        self._initialized = True

    async def _recover(self) -> None:
        if self._store is None:
            return
        now = self._clock()
        try:
            failed = self._store.fail_stale_jobs(now - self._stale_after, now)
            purged = self._store.purge_jobs(now - self._retention)
            recent = self._store.load_jobs(now - self._retention)
        except Exception:
            logger.warning("Job recovery failed; starting with an empty registry", exc_info=True)
            return

        if failed:
            logger.warning("Marked %d stale running job(s) as failed", failed)
        if purged:
            logger.info("Purged %d job row(s) older than %s", purged, self._retention)

        loaded = 0
        for job in recent:
            if job.id in self._jobs:
                continue
            self._jobs[job.id] = job
            loaded += 1
            if job.status is not JobStatus.RUNNING:
                self._schedule_eviction(job.id)
        if loaded:
            logger.info("Loaded %d recent job(s) from the store", loaded)
            self._notify()

    def shutdown(self) -> None:
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()

    # ── mutations ───────────────────────────────────────────────────────

    def create_job(self, job_type: JobType | str, metadata: dict[str, Any] | None = None) -> JobContext:
        job_type = JobType(job_type)
        now = self._clock()
        job = Job(
            id=self._new_id(job_type, now),
            type=job_type,
            started_at=now,
            progress=JobProgress(message=f"Starting {job_type}..."),
            metadata=dict(metadata or {}),
        )
        token = CancellationToken()
        self._jobs[job.id] = job
        self._tokens[job.id] = token
        logger.info("Job %s started", job.id)

        self._persist(job)
        self._notify()
        return JobContext(job.id, token, self)

    def update_progress(self, job_id: str, current: int, total: int, message: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return
        job.progress = JobProgress(current=current, total=total, message=message)
        self._persist(job)
        self._notify()

    def complete_job(
        self, job_id: str, success: bool = True, error_message: str | None = None
    ) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return
        job.status = JobStatus.COMPLETED if success else JobStatus.FAILED
        job.completed_at = self._clock()
        job.error_message = None if success else error_message
        self._tokens.pop(job_id, None)
        logger.info("Job %s %s", job_id, job.status)

        self._persist(job)
        self._notify()
        self._schedule_eviction(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Request cooperative cancellation; False if the job isn't running."""
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return False

        token = self._tokens.pop(job_id, None)
        if token is not None:
            token._cancelled = True
        job.status = JobStatus.CANCELLED
        job.completed_at = self._clock()
        logger.info("Job %s cancelled", job_id)

        self._persist(job)
        self._notify()
        self._schedule_eviction(job_id)
        return True

    # ── queries ─────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def get_active_jobs(self) -> list[Job]:
        return [j.model_copy(deep=True) for j in self._jobs.values() if j.status is JobStatus.RUNNING]

    def get_all_jobs(self) -> list[Job]:
        return [j.model_copy(deep=True) for j in self._jobs.values()]

    def owns(self, job_id: str) -> bool:
        """True while *job_id* was created here and has not finished.

        Running jobs recovered from the store belong to a dead process and
        are never owned.
        """
        return job_id in self._tokens

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── private ─────────────────────────────────────────────────────────

    def _new_id(self, job_type: JobType, now: datetime) -> str:
        base = f"{job_type}-{int(now.timestamp() * 1000)}"
        job_id, n = base, 1
        while job_id in self._jobs:
            job_id = f"{base}-{n}"
            n += 1
        return job_id

    def _persist(self, job: Job) -> None:
        if self._store is None:
            return
        try:
            self._store.save_job(job)
        except Exception:
            logger.warning("Failed to persist job %s", job.id, exc_info=True)

    def _notify(self) -> None:
        if not self._listeners:
            return
        jobs = self.get_all_jobs()
        for listener in list(self._listeners):
            try:
                listener(jobs)
            except Exception:
                logger.exception("Job listener %r failed", listener)

    def _schedule_eviction(self, job_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (plain synchronous caller): the job stays until shutdown.
            return
        previous = self._evictions.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        self._evictions[job_id] = loop.call_later(self._grace_period, self._evict, job_id)

    def _evict(self, job_id: str) -> None:
        self._evictions.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.status is JobStatus.RUNNING:
            return
        del self._jobs[job_id]
        logger.debug("Evicted job %s", job_id)
        self._notify()
