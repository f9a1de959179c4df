"""Tests for the job status HTTP API."""

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from xsearch.api import create_app, job_events
from xsearch.engine import SearchSessionEngine
from xsearch.jobs import JobTrackingService
from xsearch.models import DateRange, JobType, SearchMode, TweetItem
from xsearch.session_store import SessionStore
from xsearch.store import TweetStore


class _EmptySource:
    async def search(
        self,
        query: str,
        page_size: int = 100,
        mode: SearchMode = SearchMode.LATEST,
        cursor: str | None = None,
        date_range: DateRange | None = None,
    ) -> AsyncIterator[TweetItem]:
        return
        yield


class TestJobRoutes:
    def test_list_and_get(self) -> None:
        tracker = JobTrackingService()
        ctx = tracker.create_job(JobType.SEARCH, {"session_id": 3})

        with TestClient(create_app(tracker)) as client:
            resp = client.get("/api/jobs")
            assert resp.status_code == 200
            body = resp.json()
            assert body["active"] == 1
            assert body["jobs"][0]["id"] == ctx.job_id
            assert body["jobs"][0]["metadata"] == {"session_id": 3}

            resp = client.get(f"/api/jobs/{ctx.job_id}")
            assert resp.status_code == 200
            assert resp.json()["status"] == "running"

            assert client.get("/api/jobs/missing").status_code == 404

    def test_cancel(self) -> None:
        tracker = JobTrackingService()
        ctx = tracker.create_job(JobType.SEARCH)

        with TestClient(create_app(tracker)) as client:
            resp = client.post(f"/api/jobs/{ctx.job_id}/cancel")
            assert resp.json() == {"job_id": ctx.job_id, "cancelled": True}
            assert ctx.is_cancelled()

            again = client.post(f"/api/jobs/{ctx.job_id}/cancel")
            assert again.json()["cancelled"] is False
            assert client.post("/api/jobs/missing/cancel").json()["cancelled"] is False


class TestSearchRoutes:
    @pytest.fixture()
    def client(self, tmp_path: Path):
        db = tmp_path / "api.sqlite3"
        tracker = JobTrackingService()
        engine = SearchSessionEngine(_EmptySource(), TweetStore(db), SessionStore(db), tracker)
        with TestClient(create_app(tracker, engine)) as client:
            yield client

    def test_invalid_search_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/searches", json={"variants": []})
        assert resp.status_code == 422

    def test_search_is_accepted(self, client: TestClient) -> None:
        resp = client.post("/api/searches", json={"variants": ["AGI"], "max_tweets": 5})
        assert resp.status_code == 202
        body = resp.json()
        assert body["session_id"] >= 1
        assert body["job_id"].startswith("search-")

    def test_resume_unknown_session_is_404(self, client: TestClient) -> None:
        assert client.post("/api/sessions/999/resume").status_code == 404

    def test_routes_absent_without_engine(self) -> None:
        with TestClient(create_app(JobTrackingService())) as client:
            assert client.post("/api/searches", json={"variants": ["AGI"]}).status_code in (404, 405)


class TestJobEvents:
    pytestmark = pytest.mark.asyncio

    async def test_snapshot_then_updates(self) -> None:
        tracker = JobTrackingService()
        events = job_events(tracker, ping_interval=5)

        first = await anext(events)
        assert first.startswith("event: jobs\n")
        assert json.loads(first.split("data: ", 1)[1]) == []

        ctx = tracker.create_job(JobType.SEARCH)
        update = await anext(events)
        payload = json.loads(update.split("data: ", 1)[1])
        assert payload[0]["id"] == ctx.job_id

        await events.aclose()
        assert tracker._listeners == []
        tracker.shutdown()

    async def test_ping_when_idle(self) -> None:
        tracker = JobTrackingService()
        events = job_events(tracker, ping_interval=0.01)
        await anext(events)
        ping = await asyncio.wait_for(anext(events), timeout=1)
        assert ping == ": ping\n\n"
        await events.aclose()
