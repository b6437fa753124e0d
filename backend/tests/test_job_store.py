"""
Tests for the job record lifecycle and persistence helpers.
"""
from datetime import datetime, timedelta

import pytest

from app.models.market_intel_job import JobStatus, IN_FLIGHT_STATUSES
from app.services.job_store import (
    InvalidJobState,
    JobNotFound,
    JobStore,
    can_transition,
    ensure_transition,
    make_progress,
)


class TickingClock:
    def __init__(self):
        self.now = datetime(2025, 5, 1, 9, 0)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _create(store: JobStore, **overrides):
    fields = {"keywords": ["ceramic mug"], "marketplace": "amazon.com"}
    fields.update(overrides)
    return store.create(**fields)


class TestTransitions:
    """The lifecycle table allows forward moves, resume, and failure from in-flight states."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.COLLECTING),
            (JobStatus.COLLECTING, JobStatus.AWAITING_SELECTION),
            (JobStatus.AWAITING_SELECTION, JobStatus.COLLECTED),
            (JobStatus.AWAITING_SELECTION, JobStatus.ANALYZING),
            (JobStatus.COLLECTED, JobStatus.ANALYZING),
            (JobStatus.ANALYZING, JobStatus.COMPLETED),
            (JobStatus.FAILED, JobStatus.ANALYZING),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current", sorted(IN_FLIGHT_STATUSES, key=lambda s: s.value))
    def test_any_in_flight_state_can_fail(self, current):
        assert can_transition(current, JobStatus.FAILED)

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.COLLECTED),
            (JobStatus.PENDING, JobStatus.ANALYZING),
            (JobStatus.COLLECTING, JobStatus.COMPLETED),
            (JobStatus.COMPLETED, JobStatus.FAILED),
            (JobStatus.COMPLETED, JobStatus.ANALYZING),
            (JobStatus.FAILED, JobStatus.COLLECTING),
            (JobStatus.FAILED, JobStatus.FAILED),
        ],
    )
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidJobState):
            ensure_transition(current, target)


class TestJobStore:
    def test_create_starts_pending_with_progress(self, session_factory):
        job = _create(JobStore(session_factory))
        assert job.status == JobStatus.PENDING
        assert job.progress["step"] == "pending"
        assert job.max_competitors == 10
        assert job.reviews_per_product == 200

    def test_update_stamps_updated_at(self, session_factory):
        store = JobStore(session_factory, clock=TickingClock())
        job = _create(store)
        store.update(job.id, progress=make_progress("keyword_search", 0, 1, "Searching..."))

        reloaded = store.get(job.id)
        assert reloaded.updated_at > job.updated_at
        assert reloaded.progress["message"] == "Searching..."

    def test_transition_validates_and_sets_fields(self, session_factory):
        store = JobStore(session_factory)
        job = _create(store)

        with pytest.raises(InvalidJobState):
            store.transition(job.id, JobStatus.ANALYZING)
        assert store.get(job.id).status == JobStatus.PENDING

        store.transition(job.id, JobStatus.COLLECTING, external_calls_used=3)
        reloaded = store.get(job.id)
        assert reloaded.status == JobStatus.COLLECTING
        assert reloaded.external_calls_used == 3

    def test_completed_sets_completed_at(self, session_factory):
        store = JobStore(session_factory)
        job = _create(store)
        for status in (
            JobStatus.COLLECTING,
            JobStatus.AWAITING_SELECTION,
            JobStatus.ANALYZING,
            JobStatus.COMPLETED,
        ):
            store.transition(job.id, status)
        assert store.get(job.id).completed_at is not None

    def test_fail_keeps_collected_data_and_truncates_message(self, session_factory):
        store = JobStore(session_factory)
        job = _create(store)
        store.transition(job.id, JobStatus.COLLECTING, top_asins=["B0MUG00001"])
        store.fail(job.id, "x" * 800)

        reloaded = store.get(job.id)
        assert reloaded.status == JobStatus.FAILED
        assert len(reloaded.error_message) == 500
        assert reloaded.top_asins == ["B0MUG00001"]

    def test_fail_does_not_touch_terminal_jobs(self, session_factory):
        store = JobStore(session_factory)
        job = _create(store)
        for status in (
            JobStatus.COLLECTING,
            JobStatus.AWAITING_SELECTION,
            JobStatus.ANALYZING,
            JobStatus.COMPLETED,
        ):
            store.transition(job.id, status)

        store.fail(job.id, "late failure")
        reloaded = store.get(job.id)
        assert reloaded.status == JobStatus.COMPLETED
        assert reloaded.error_message is None

    def test_get_unknown_job_raises(self, session_factory):
        import uuid

        with pytest.raises(JobNotFound):
            JobStore(session_factory).get(uuid.uuid4())

    def test_list_recent_filters_and_orders(self, session_factory):
        store = JobStore(session_factory, clock=TickingClock())
        _create(store, keywords=["ceramic mug"])
        _create(store, keywords=["travel mug"], marketplace="amazon.co.uk")
        newest = _create(store, keywords=["yoga mat"])

        assert store.list_recent()[0].id == newest.id
        assert {tuple(j.keywords) for j in store.list_recent(search="MUG")} == {
            ("ceramic mug",),
            ("travel mug",),
        }
        uk = store.list_recent(marketplace="amazon.co.uk")
        assert [j.keywords for j in uk] == [["travel mug"]]
        assert len(store.list_recent(limit=2)) == 2
