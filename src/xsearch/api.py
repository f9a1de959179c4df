"""HTTP surface for job status: poll, server-sent events, cancel, and launching searches."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from xsearch.engine import SearchSessionEngine
from xsearch.errors import ConflictError, NotFoundError, ValidationError
from xsearch.jobs import JobTrackingService
from xsearch.models import Job, SearchRequest

logger = logging.getLogger(__name__)

PING_INTERVAL = 15.0


class JobsResponse(BaseModel):
    jobs: list[Job]
    active: int = Field(..., description="Number of jobs still running")


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class LaunchResponse(BaseModel):
    session_id: int
    job_id: str | None = None


def _snapshot(jobs: list[Job]) -> str:
    payload = [job.model_dump(mode="json") for job in jobs]
    return f"event: jobs\ndata: {json.dumps(payload)}\n\n"


async def job_events(
    tracker: JobTrackingService, ping_interval: float = PING_INTERVAL
) -> AsyncIterator[str]:
    """Yield an SSE snapshot now and after every change, with pings in between."""
    queue: asyncio.Queue[list[Job]] = asyncio.Queue()
    unsubscribe = tracker.subscribe(queue.put_nowait)
    try:
        yield _snapshot(tracker.get_all_jobs())
        while True:
            try:
                jobs = await asyncio.wait_for(queue.get(), timeout=ping_interval)
            except TimeoutError:
                yield ": ping\n\n"
                continue
            yield _snapshot(jobs)
    finally:
        unsubscribe()


def build_router(
    tracker: JobTrackingService, engine: SearchSessionEngine | None = None
) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["jobs"])
    # Strong references so running searches aren't garbage-collected.
    tasks: set[asyncio.Task[object]] = set()

    def _launch(coro: Coroutine[Any, Any, object]) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(_reap)

    def _reap(task: asyncio.Task[object]) -> None:
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background search failed: %s", task.exception())

    @router.get("/jobs", response_model=JobsResponse)
    async def list_jobs() -> JobsResponse:
        return JobsResponse(jobs=tracker.get_all_jobs(), active=len(tracker.get_active_jobs()))

    @router.get("/jobs/stream")
    async def stream_jobs() -> StreamingResponse:
        return StreamingResponse(
            job_events(tracker),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @router.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str) -> Job:
        job = tracker.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job

    @router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
    async def cancel_job(job_id: str) -> CancelResponse:
        return CancelResponse(job_id=job_id, cancelled=tracker.cancel_job(job_id))

    if engine is None:
        return router

    @router.post("/searches", response_model=LaunchResponse, status_code=202)
    async def start_search(request: SearchRequest) -> LaunchResponse:
        try:
            run = engine.open_search(request)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        _launch(engine.run(run))
        return LaunchResponse(session_id=run.session_id, job_id=run.job_id)

    @router.post("/sessions/{session_id}/resume", response_model=LaunchResponse, status_code=202)
    async def resume_session(session_id: int) -> LaunchResponse:
        try:
            run = engine.open_resume(session_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        _launch(engine.run(run))
        return LaunchResponse(session_id=run.session_id, job_id=run.job_id)

    return router


def create_app(
    tracker: JobTrackingService, engine: SearchSessionEngine | None = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await tracker.initialize()
        yield
        tracker.shutdown()

    app = FastAPI(title="xsearch", lifespan=lifespan)
    app.include_router(build_router(tracker, engine))
    return app
