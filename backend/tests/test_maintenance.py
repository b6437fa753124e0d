"""
Tests for the periodic maintenance tasks: stale-job watchdog and retention.
"""
from datetime import datetime, timedelta
from unittest.mock import patch, MagicMock

from app.models.cached_lookup import CachedLookup
from app.models.market_intel_job import JobStatus
from app.services.cache import CacheLayer, CacheKey
from app.services.job_store import JobStore
from app.services.orchestrator import confirm_selection
from app.services.retention import purge_expired
from app.services.watchdog import fail_stale_jobs

NOW = datetime(2025, 6, 1, 12, 0)


def _store_at(session_factory, when):
    return JobStore(session_factory, clock=lambda: when)


class TestWatchdog:
    def test_fails_only_stale_in_flight_jobs(self, session_factory):
        old = _store_at(session_factory, NOW - timedelta(hours=3))
        stale = old.create(keywords=["ceramic mug"], marketplace="amazon.com")
        old.transition(stale.id, JobStatus.COLLECTING, top_asins=["B0MUG00001"])

        finished = old.create(keywords=["yoga mat"], marketplace="amazon.com")
        old.fail(finished.id, "earlier failure")

        recent = _store_at(session_factory, NOW - timedelta(minutes=5))
        fresh = recent.create(keywords=["travel mug"], marketplace="amazon.com")
        recent.transition(fresh.id, JobStatus.COLLECTING)

        failed_ids = fail_stale_jobs(session_factory, timedelta(minutes=90), now=NOW)

        store = JobStore(session_factory)
        assert failed_ids == [str(stale.id)]
        job = store.get(stale.id)
        assert job.status == JobStatus.FAILED
        assert "90 minutes" in job.error_message
        assert "Retry" in job.error_message
        assert job.top_asins == ["B0MUG00001"]
        assert store.get(finished.id).error_message == "earlier failure"
        assert store.get(fresh.id).status == JobStatus.COLLECTING

    def test_stalled_job_can_be_resumed(self, session_factory):
        old = _store_at(session_factory, NOW - timedelta(hours=2))
        job = old.create(keywords=["ceramic mug"], marketplace="amazon.com")
        for status in (JobStatus.COLLECTING, JobStatus.AWAITING_SELECTION):
            old.transition(job.id, status)
        old.transition(job.id, JobStatus.ANALYZING, selected_asins=["B0MUG00001"])

        fail_stale_jobs(session_factory, timedelta(minutes=90), now=NOW)

        store = JobStore(session_factory)
        assert store.get(job.id).status == JobStatus.FAILED
        store.transition(job.id, JobStatus.ANALYZING)
        assert store.get(job.id).status == JobStatus.ANALYZING

    def test_job_awaiting_selection_is_left_for_the_user(self, session_factory):
        old = _store_at(session_factory, NOW - timedelta(hours=6))
        job = old.create(keywords=["ceramic mug"], marketplace="amazon.com")
        old.transition(job.id, JobStatus.COLLECTING)
        old.transition(
            job.id, JobStatus.AWAITING_SELECTION, top_asins=["B0MUG00001", "B0MUG00002"]
        )

        assert fail_stale_jobs(session_factory, timedelta(minutes=90), now=NOW) == []

        store = JobStore(session_factory)
        assert store.get(job.id).status == JobStatus.AWAITING_SELECTION
        with patch("app.services.orchestrator.celery_app.send_task") as send_task:
            send_task.return_value = MagicMock(id="task-1")
            task_id = confirm_selection(job.id, ["B0MUG00002"], store=store)

        assert task_id == "task-1"
        selected = store.get(job.id)
        assert selected.status == JobStatus.COLLECTED
        assert selected.selected_asins == ["B0MUG00002"]


class TestRetention:
    def test_purges_old_cache_entries_and_jobs(self, session_factory):
        old_clock = lambda: NOW - timedelta(days=120)
        new_clock = lambda: NOW - timedelta(days=1)

        CacheLayer(session_factory, clock=old_clock).put(
            CacheKey.product("B0MUG00001", "amazon.com"), {"title": "old"}
        )
        CacheLayer(session_factory, clock=new_clock).put(
            CacheKey.product("B0MUG00002", "amazon.com"), {"title": "new"}
        )
        _store_at(session_factory, NOW - timedelta(days=120)).create(
            keywords=["ceramic mug"], marketplace="amazon.com"
        )
        new_job = _store_at(session_factory, NOW - timedelta(days=1)).create(
            keywords=["ceramic mug"], marketplace="amazon.com"
        )

        counts = purge_expired(
            session_factory, cache_retention_days=30, job_retention_days=90, now=NOW
        )

        assert counts == {"cache_entries": 1, "jobs": 1}
        db = session_factory()
        try:
            assert [row.lookup_key for row in db.query(CachedLookup).all()] == ["B0MUG00002"]
        finally:
            db.close()
        store = JobStore(session_factory)
        assert [j.id for j in store.list_recent()] == [new_job.id]

    def test_refreshed_cache_entry_survives(self, session_factory):
        key = CacheKey.search("ceramic mug", "amazon.com")
        CacheLayer(session_factory, clock=lambda: NOW - timedelta(days=60)).put(key, {"v": 1})
        CacheLayer(session_factory, clock=lambda: NOW - timedelta(days=2)).put(key, {"v": 2})

        counts = purge_expired(
            session_factory, cache_retention_days=30, job_retention_days=90, now=NOW
        )
        assert counts["cache_entries"] == 0
