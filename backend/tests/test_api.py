"""
HTTP-level tests for the market-intelligence routes.

The job store is pointed at the in-memory test database and Celery's
``send_task`` is patched, so no broker or worker is needed.
"""
import uuid
from unittest.mock import patch, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.api.routes_market_intel import get_job_store
from app.models.market_intel_job import JobStatus
from app.services.job_store import JobStore
from app.services.orchestrator import RUN_COLLECTION_TASK

BASE = "/api/market-intelligence"


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def send_task():
    with patch("app.services.orchestrator.celery_app.send_task") as mocked:
        mocked.return_value = MagicMock(id="task-abc")
        yield mocked


@pytest.fixture
def client(store, send_task):
    app.dependency_overrides[get_job_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _awaiting_job(store, top_asins):
    job = store.create(keywords=["ceramic mug"], marketplace="amazon.com")
    store.transition(job.id, JobStatus.COLLECTING)
    store.transition(
        job.id,
        JobStatus.AWAITING_SELECTION,
        top_asins=top_asins,
        competitors_data=[{"asin": a, "title": a} for a in top_asins],
    )
    return job


class TestCreateJob:
    def test_creates_pending_job_and_enqueues_collection(self, client, store, send_task):
        resp = client.post(
            BASE,
            json={
                "keywords": ["  Ceramic   Mug ", "ceramic mug", "Coffee Mug"],
                "marketplace": "www.Amazon.co.uk",
                "max_competitors": 50,
                "requested_by": "alice",
            },
        )
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "pending"
        assert body["task_id"] == "task-abc"
        assert body["keywords"] == ["ceramic mug", "coffee mug"]
        assert body["marketplace"] == "amazon.co.uk"

        job = store.get(uuid.UUID(body["id"]))
        assert job.max_competitors == 20
        assert job.requested_by == "alice"
        send_task.assert_called_once_with(
            RUN_COLLECTION_TASK, args=[body["id"]], queue="market_intel"
        )

    def test_single_keyword_string_is_accepted(self, client):
        resp = client.post(BASE, json={"keywords": "ceramic mug"})
        assert resp.status_code == 202
        assert resp.json()["keywords"] == ["ceramic mug"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"keywords": []},
            {"keywords": ["   "]},
            {"keywords": [f"kw {i}" for i in range(11)]},
            {"keywords": ["mug"], "marketplace": "ebay.com"},
            {"keywords": ["mug"], "reviews_per_product": 5},
        ],
    )
    def test_rejects_invalid_requests(self, client, send_task, payload):
        resp = client.post(BASE, json=payload)
        assert resp.status_code == 422
        send_task.assert_not_called()


class TestReadJobs:
    def test_get_job(self, client, store):
        job = _awaiting_job(store, ["B0MUG00001"])
        resp = client.get(f"{BASE}/{job.id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "awaiting_selection"
        assert body["top_asins"] == ["B0MUG00001"]

    def test_get_unknown_job_is_404(self, client):
        assert client.get(f"{BASE}/{uuid.uuid4()}").status_code == 404

    def test_list_jobs_with_search(self, client, store):
        store.create(keywords=["ceramic mug"], marketplace="amazon.com")
        store.create(keywords=["yoga mat"], marketplace="amazon.com")

        resp = client.get(BASE, params={"search": "mug"})
        assert resp.status_code == 200
        assert [j["keywords"] for j in resp.json()] == [["ceramic mug"]]
        assert len(client.get(BASE).json()) == 2


class TestSelectAndResume:
    def test_select_products(self, client, store):
        job = _awaiting_job(store, ["B0MUG00001", "B0MUG00002"])
        resp = client.post(f"{BASE}/{job.id}/select", json={"selected_asins": ["b0mug00002"]})

        assert resp.status_code == 202
        assert resp.json()["status"] == "collected"
        assert store.get(job.id).selected_asins == ["B0MUG00002"]

    def test_select_requires_awaiting_selection(self, client, store):
        job = store.create(keywords=["ceramic mug"], marketplace="amazon.com")
        resp = client.post(f"{BASE}/{job.id}/select", json={"selected_asins": ["B0MUG00001"]})
        assert resp.status_code == 400

    def test_select_rejects_malformed_asins(self, client, store):
        job = _awaiting_job(store, ["B0MUG00001"])
        resp = client.post(f"{BASE}/{job.id}/select", json={"selected_asins": ["not-an-asin"]})
        assert resp.status_code == 422

    def test_select_unknown_job_is_404(self, client):
        resp = client.post(f"{BASE}/{uuid.uuid4()}/select", json={"selected_asins": ["B0MUG00001"]})
        assert resp.status_code == 404

    def test_resume_failed_job(self, client, store):
        job = _awaiting_job(store, ["B0MUG00001"])
        store.transition(job.id, JobStatus.ANALYZING, selected_asins=["B0MUG00001"])
        store.fail(job.id, "Only 0/1 products returned reviews")

        resp = client.post(f"{BASE}/{job.id}/resume")
        assert resp.status_code == 202
        assert resp.json()["task_id"] == "task-abc"

    def test_resume_rejects_non_failed_job(self, client, store):
        job = _awaiting_job(store, ["B0MUG00001"])
        assert client.post(f"{BASE}/{job.id}/resume").status_code == 400


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestApiKey:
    def test_key_required_when_configured(self, client, monkeypatch):
        from app.api import routes_market_intel

        monkeypatch.setattr(routes_market_intel.settings, "API_AUTH_KEY", "s3cret")

        assert client.get(BASE).status_code == 401
        assert client.get(BASE, headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get(BASE, headers={"X-API-Key": "s3cret"}).status_code == 200
