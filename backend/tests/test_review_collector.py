"""
Tests for the parallel review collector.

All timing runs on FakeClock, so the staggered launch, the polling cadence
and the one-hour ceiling are asserted exactly without real waits.
"""
import asyncio

from app.services.cache import CacheLayer, CacheKey
from app.services.review_collector import ReviewCollector, ReviewJobPhase, ReviewJobTable
from app.services.timeouts import TIMED_OUT, race_timeout

from tests.fixtures.market_intel_fixtures import (
    FakeClock,
    FakeReviewsConnector,
    make_asin,
    make_config,
    make_review_item,
)

MARKETPLACE = "amazon.com"


def _collector(session_factory, reviews: FakeReviewsConnector, clock: FakeClock, **overrides):
    config = make_config(clock, **overrides)
    return ReviewCollector(reviews, CacheLayer(session_factory, ttl=config.cache_ttl), config)


def _asins(n: int):
    return [make_asin("REV", i) for i in range(n)]


class TestSuccessThreshold:
    """A batch succeeds only when at least 75% of products return reviews."""

    def test_eight_of_ten_succeeds(self, session_factory):
        clock = FakeClock()
        asins = _asins(10)
        reviews = FakeReviewsConnector(
            {asins[0]: {"status": "FAILED"}, asins[1]: {"launch_error": "quota exceeded"}},
            clock=clock,
        )
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect(asins, MARKETPLACE, 100)
        )

        assert result.success is True
        assert result.done == 8
        assert result.failed == 2
        assert result.success_rate == 0.8
        assert set(result.results) == set(asins)
        assert len(result.results[asins[2]]) == 5

    def test_eight_of_ten_succeeds_when_two_time_out(self, session_factory):
        clock = FakeClock()
        asins = _asins(10)
        reviews = FakeReviewsConnector(
            {asins[3]: {"hang": "launch"}, asins[7]: {"hang": "fetch"}},
            clock=clock,
        )
        collector = _collector(session_factory, reviews, clock, item_timeout=0.05)
        result = asyncio.run(collector.collect(asins, MARKETPLACE, 100))

        assert result.success is True
        assert result.done == 8
        assert result.failed == 2
        assert result.results[asins[3]] == []
        assert result.results[asins[7]] == []
        assert len(result.results[asins[0]]) == 5
        # The hung launch never produced a run to poll or fetch
        assert asins[3] not in reviews.polls
        assert asins[7] in reviews.fetches
        cached = CacheLayer(session_factory).get(CacheKey.reviews(asins[7], MARKETPLACE, "recent"))
        assert cached is None

    def test_seven_of_ten_fails_with_retry_hint(self, session_factory):
        clock = FakeClock()
        asins = _asins(10)
        reviews = FakeReviewsConnector(
            {a: {"status": "ABORTED"} for a in asins[:3]},
            clock=clock,
        )
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect(asins, MARKETPLACE, 100)
        )

        assert result.success is False
        assert result.done == 7
        assert "7/10" in result.error
        assert "Retry" in result.error
        # Partial results are still reported
        assert len(result.results[asins[5]]) == 5

    def test_empty_input_is_a_failure(self, session_factory):
        clock = FakeClock()
        result = asyncio.run(
            _collector(session_factory, FakeReviewsConnector(), clock).collect([], MARKETPLACE, 100)
        )
        assert result.success is False
        assert result.results == {}


class TestLaunchAndPolling:
    def test_launches_are_staggered_three_seconds_apart(self, session_factory):
        clock = FakeClock(start=0.0)
        asins = _asins(4)
        reviews = FakeReviewsConnector(clock=clock)
        asyncio.run(_collector(session_factory, reviews, clock).collect(asins, MARKETPLACE, 50))

        launch_times = [t for _, t in reviews.launches]
        assert [a for a, _ in reviews.launches] == asins
        assert [b - a for a, b in zip(launch_times, launch_times[1:])] == [3.0, 3.0, 3.0]

    def test_each_cycle_fetches_finished_runs_then_polls(self, session_factory):
        clock = FakeClock()
        asins = _asins(2)
        reviews = FakeReviewsConnector({asins[1]: {"polls": 3}}, clock=clock)
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect(asins, MARKETPLACE, 50)
        )

        assert result.success is True
        assert reviews.fetches == asins
        # Poll interval between cycles is 15s
        assert clock.sleeps.count(15.0) >= 3

    def test_runs_still_pending_at_deadline_fail(self, session_factory):
        clock = FakeClock()
        asins = _asins(4)
        reviews = FakeReviewsConnector({asins[0]: {"polls": 10_000}}, clock=clock)
        collector = _collector(session_factory, reviews, clock, review_max_wait=120.0)
        result = asyncio.run(collector.collect(asins, MARKETPLACE, 50))

        assert result.done == 3
        assert result.success is True
        assert result.results[asins[0]] == []
        # The loop stops at the ceiling instead of polling forever
        assert len(reviews.polls) < 50

    def test_dataset_items_are_deduplicated_by_review_id(self, session_factory):
        clock = FakeClock()
        asin = make_asin("REV", 1)
        items = [make_review_item(asin, n % 3) for n in range(9)]
        reviews = FakeReviewsConnector({asin: {"items": items}}, clock=clock)
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect([asin], MARKETPLACE, 50)
        )

        ids = [r["id"] for r in result.results[asin]]
        assert len(ids) == 3
        assert len(set(ids)) == 3

    def test_empty_dataset_counts_as_failure(self, session_factory):
        clock = FakeClock()
        asin = make_asin("REV", 1)
        reviews = FakeReviewsConnector({asin: {"items": []}}, clock=clock)
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect([asin], MARKETPLACE, 50)
        )
        assert result.success is False
        assert result.failed == 1


class TestCacheAndFallback:
    def test_cached_products_skip_the_actor(self, session_factory):
        clock = FakeClock()
        asins = _asins(3)
        cache = CacheLayer(session_factory)
        cache.put(CacheKey.reviews(asins[0], MARKETPLACE, "recent"), [{"id": "cached"}])

        reviews = FakeReviewsConnector(clock=clock)
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect(asins, MARKETPLACE, 50)
        )

        assert result.results[asins[0]] == [{"id": "cached"}]
        assert asins[0] not in [a for a, _ in reviews.launches]

    def test_fresh_reviews_are_written_through_the_cache(self, session_factory):
        clock = FakeClock()
        asin = make_asin("REV", 7)
        reviews = FakeReviewsConnector(clock=clock)
        asyncio.run(
            _collector(session_factory, reviews, clock).collect(
                [asin], MARKETPLACE, 50, fetched_by="alice"
            )
        )

        cached = CacheLayer(session_factory).get(CacheKey.reviews(asin, MARKETPLACE, "recent"))
        assert len(cached) == 5

    def test_failed_products_use_fallback_reviews(self, session_factory):
        clock = FakeClock()
        asins = _asins(4)
        reviews = FakeReviewsConnector({asins[3]: {"status": "TIMED-OUT"}}, clock=clock)
        fallback = {asins[3]: [{"id": "TOP-1", "content": "from product page"}]}
        result = asyncio.run(
            _collector(session_factory, reviews, clock).collect(
                asins, MARKETPLACE, 50, fallback=fallback
            )
        )

        assert result.success is True
        assert result.results[asins[3]] == fallback[asins[3]]
        # Fallback never counts toward the success rate
        assert result.done == 3

    def test_progress_is_published_with_counts(self, session_factory):
        clock = FakeClock()
        asins = _asins(3)
        updates = []
        asyncio.run(
            _collector(session_factory, FakeReviewsConnector(clock=clock), clock).collect(
                asins, MARKETPLACE, 50, on_progress=updates.append
            )
        )

        assert updates
        last = updates[-1]
        assert last["step"] == "review_fetch"
        assert last["total"] == 3
        assert last["done"] == 3
        assert last["remaining"] == 0


class TestReviewJobTable:
    def test_duplicate_asins_collapse(self):
        table = ReviewJobTable(["A", "B", "A"])
        assert len(table) == 2
        assert [job.asin for job in table] == ["A", "B"]
        assert table.count(ReviewJobPhase.CACHE_CHECK) == 2


class TestRaceTimeout:
    def test_returns_result_when_fast(self):
        async def fast():
            return 42

        assert asyncio.run(race_timeout(fast(), 1.0)) == 42

    def test_returns_sentinel_when_slow(self):
        async def slow():
            await asyncio.sleep(5)

        result = asyncio.run(race_timeout(slow(), 0.01))
        assert result is TIMED_OUT
        assert not result

    def test_propagates_exceptions(self):
        async def boom():
            raise ValueError("bad")

        try:
            asyncio.run(race_timeout(boom(), 1.0))
        except ValueError as e:
            assert str(e) == "bad"
        else:
            raise AssertionError("expected ValueError")
