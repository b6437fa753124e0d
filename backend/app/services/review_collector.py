"""
Parallel Review Collector

Runs one async review-scraping job per product against the Apify actor and
drives all of them through a single state machine:

1. cache check of every product,
2. staggered launch of the misses,
3. one polling loop that fetches finished datasets and polls the rest,
4. evaluation against a success threshold, with optional fallback reviews.

The job table lives only for the duration of one ``collect`` call.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from .cache import CacheLayer, CacheKey
from .connectors.apify import ApifyReviewsConnector, dedupe_reviews
from .job_store import make_progress
from .orchestrator_config import OrchestratorConfig
from .timeouts import race_timeout, TIMED_OUT

logger = logging.getLogger(__name__)

# Consecutive status-poll errors tolerated before a run is written off
MAX_POLL_ERRORS = 3


class ReviewJobPhase(str, enum.Enum):
    CACHE_CHECK = "cache_check"
    LAUNCHING = "launching"
    POLLING = "polling"
    FETCHING_RESULTS = "fetching_results"
    DONE = "done"
    FAILED = "failed"


ACTIVE_PHASES = (
    ReviewJobPhase.CACHE_CHECK,
    ReviewJobPhase.LAUNCHING,
    ReviewJobPhase.POLLING,
    ReviewJobPhase.FETCHING_RESULTS,
)


@dataclass
class ReviewJob:
    asin: str
    phase: ReviewJobPhase = ReviewJobPhase.CACHE_CHECK
    run_id: Optional[str] = None
    dataset_id: Optional[str] = None
    reviews: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    poll_errors: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class ReviewJobTable:
    """Registry of review jobs keyed by ASIN, in input order."""

    def __init__(self, asins: List[str]) -> None:
        self._jobs: Dict[str, ReviewJob] = {
            asin: ReviewJob(asin=asin) for asin in dict.fromkeys(asins)
        }

    def __iter__(self) -> Iterator[ReviewJob]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, asin: str) -> ReviewJob:
        return self._jobs[asin]

    def in_phase(self, *phases: ReviewJobPhase) -> List[ReviewJob]:
        return [job for job in self._jobs.values() if job.phase in phases]

    def count(self, *phases: ReviewJobPhase) -> int:
        return len(self.in_phase(*phases))


@dataclass
class ReviewCollectionResult:
    success: bool
    results: Dict[str, List[Dict[str, Any]]]
    error: Optional[str] = None
    success_rate: float = 0.0
    done: int = 0
    failed: int = 0
    total: int = 0


ProgressCallback = Callable[[Dict[str, Any]], None]


class ReviewCollector:
    def __init__(
        self,
        connector: ApifyReviewsConnector,
        cache: CacheLayer,
        config: OrchestratorConfig,
    ) -> None:
        self.connector = connector
        self.cache = cache
        self.config = config

    async def collect(
        self,
        asins: List[str],
        marketplace: str,
        per_product_limit: int,
        *,
        fallback: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        on_progress: Optional[ProgressCallback] = None,
        fetched_by: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> ReviewCollectionResult:
        table = ReviewJobTable(asins)
        if not len(table):
            return ReviewCollectionResult(
                success=False, results={}, error="No products selected for review collection"
            )

        log_extra = {"job_id": job_id, "step": "review_fetch"}

        for job in table:
            self._check_cache(job, marketplace)
        cached = table.count(ReviewJobPhase.DONE)
        logger.info(
            "Review cache check: %d/%d products cached",
            cached,
            len(table),
            extra=log_extra,
        )

        await self._launch_all(table, marketplace, per_product_limit, on_progress)
        await self._poll_until_settled(table, marketplace, fetched_by, on_progress)

        return self._evaluate(table, fallback or {}, log_extra)

    # ------------------------------------------------------------------
    # Phase 1: cache check
    # ------------------------------------------------------------------

    def _check_cache(self, job: ReviewJob, marketplace: str) -> None:
        key = CacheKey.reviews(job.asin, marketplace, self.config.review_sort)
        cached = self.cache.get(key, self.config.cache_ttl)
        if cached:
            job.reviews = list(cached)
            job.phase = ReviewJobPhase.DONE

    # ------------------------------------------------------------------
    # Phase 2: staggered launch
    # ------------------------------------------------------------------

    async def _launch_all(
        self,
        table: ReviewJobTable,
        marketplace: str,
        per_product_limit: int,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        to_launch = table.in_phase(ReviewJobPhase.CACHE_CHECK)
        for index, job in enumerate(to_launch):
            if index > 0:
                await self.config.sleep(self.config.review_stagger)

            self._publish(
                table,
                on_progress,
                f"Launching review collection for {job.asin} ({index + 1}/{len(to_launch)})...",
            )
            await self._launch(job, marketplace, per_product_limit)

    async def _launch(self, job: ReviewJob, marketplace: str, per_product_limit: int) -> None:
        job.phase = ReviewJobPhase.LAUNCHING
        job.started_at = self.config.clock()
        try:
            run = await race_timeout(
                self.connector.start_run(
                    job.asin, marketplace, per_product_limit, self.config.review_sort
                ),
                self.config.item_timeout,
            )
        except Exception as e:
            logger.warning(
                "Review run launch failed for %s: %s",
                job.asin,
                e,
                extra={"asin": job.asin, "step": "review_launch"},
            )
            self._mark_failed(job, f"Launch failed: {e}")
            return

        if run is TIMED_OUT:
            self._mark_failed(job, f"Launch timed out after {self.config.item_timeout:.0f}s")
            return

        job.run_id = run.id
        job.dataset_id = run.dataset_id
        if not run.is_terminal:
            job.phase = ReviewJobPhase.POLLING
        elif run.succeeded:
            job.phase = ReviewJobPhase.FETCHING_RESULTS
        else:
            self._mark_failed(job, f"Apify run {run.status}: {run.status_message or 'Unknown error'}")

    # ------------------------------------------------------------------
    # Phase 3: unified polling loop
    # ------------------------------------------------------------------

    async def _poll_until_settled(
        self,
        table: ReviewJobTable,
        marketplace: str,
        fetched_by: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        deadline = self.config.clock() + self.config.review_max_wait

        while True:
            fetching = table.in_phase(ReviewJobPhase.FETCHING_RESULTS)
            if fetching:
                await asyncio.gather(
                    *(self._fetch_results(job, marketplace, fetched_by) for job in fetching)
                )

            polling = table.in_phase(ReviewJobPhase.POLLING)
            if polling:
                await asyncio.gather(*(self._poll(job) for job in polling))

            self._publish(table, on_progress)

            if not table.in_phase(ReviewJobPhase.POLLING, ReviewJobPhase.FETCHING_RESULTS):
                break
            if self.config.clock() >= deadline:
                break
            await self.config.sleep(self.config.review_poll_interval)

        for job in table.in_phase(ReviewJobPhase.POLLING, ReviewJobPhase.FETCHING_RESULTS):
            self._mark_failed(
                job,
                f"Review collection did not finish within {self.config.review_max_wait / 60:.0f} minutes",
            )

    async def _poll(self, job: ReviewJob) -> None:
        try:
            run = await race_timeout(self.connector.get_run(job.run_id), self.config.item_timeout)
        except Exception as e:
            job.poll_errors += 1
            logger.warning(
                "Status poll failed for %s (%d/%d): %s",
                job.asin,
                job.poll_errors,
                MAX_POLL_ERRORS,
                e,
                extra={"asin": job.asin, "step": "review_poll"},
            )
            if job.poll_errors >= MAX_POLL_ERRORS:
                self._mark_failed(job, f"Status polling failed: {e}")
            return

        if run is TIMED_OUT:
            # Leave it polling; the loop deadline bounds the total wait
            return

        job.poll_errors = 0
        if run.dataset_id:
            job.dataset_id = run.dataset_id
        if not run.is_terminal:
            return
        if run.succeeded:
            job.phase = ReviewJobPhase.FETCHING_RESULTS
        else:
            self._mark_failed(job, f"Apify run {run.status}: {run.status_message or 'Unknown error'}")

    async def _fetch_results(
        self, job: ReviewJob, marketplace: str, fetched_by: Optional[str]
    ) -> None:
        if not job.dataset_id:
            self._mark_failed(job, "Run finished without a dataset")
            return

        try:
            items = await race_timeout(
                self.connector.fetch_dataset_items(job.dataset_id), self.config.item_timeout
            )
        except Exception as e:
            logger.warning(
                "Dataset fetch failed for %s: %s",
                job.asin,
                e,
                extra={"asin": job.asin, "step": "review_fetch_results"},
            )
            self._mark_failed(job, f"Dataset fetch failed: {e}")
            return

        if items is TIMED_OUT:
            self._mark_failed(job, f"Dataset fetch timed out after {self.config.item_timeout:.0f}s")
            return

        reviews = dedupe_reviews(items or [])
        if not reviews:
            self._mark_failed(job, "Review run returned no reviews")
            return

        # The actor repeats items heavily; only unique reviews are kept
        logger.info(
            "Fetched %d items (%d unique reviews) for %s",
            len(items),
            len(reviews),
            job.asin,
            extra={"asin": job.asin, "step": "review_fetch_results"},
        )
        self.cache.put(
            CacheKey.reviews(job.asin, marketplace, self.config.review_sort),
            reviews,
            fetched_by=fetched_by,
        )
        job.reviews = reviews
        job.phase = ReviewJobPhase.DONE
        job.finished_at = self.config.clock()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _mark_failed(self, job: ReviewJob, error: str) -> None:
        job.phase = ReviewJobPhase.FAILED
        job.error = error
        job.finished_at = self.config.clock()
        logger.warning(
            "Review collection failed for %s: %s",
            job.asin,
            error,
            extra={"asin": job.asin, "step": "review_fetch"},
        )

    def _eta_seconds(self, table: ReviewJobTable) -> Optional[float]:
        elapsed = [
            job.finished_at - job.started_at
            for job in table
            if job.started_at is not None and job.finished_at is not None
        ]
        if not elapsed:
            return None
        mean_elapsed = sum(elapsed) / len(elapsed)
        now = self.config.clock()
        remaining = [
            max(0.0, mean_elapsed - (now - job.started_at))
            for job in table.in_phase(*ACTIVE_PHASES)
            if job.started_at is not None
        ]
        return max(remaining) if remaining else 0.0

    def _publish(
        self,
        table: ReviewJobTable,
        on_progress: Optional[ProgressCallback],
        message: Optional[str] = None,
    ) -> None:
        if on_progress is None:
            return

        done = table.count(ReviewJobPhase.DONE)
        failed = table.count(ReviewJobPhase.FAILED)
        remaining = len(table) - done - failed
        if message is None:
            message = f"Collecting reviews: {done} done, {failed} failed, {remaining} remaining"
            eta = self._eta_seconds(table)
            if remaining and eta is not None:
                message += f" (~{max(1, round(eta / 60))} min left)"
            message += "..."

        progress = make_progress("review_fetch", done + failed, len(table), message)
        progress.update({"done": done, "failed": failed, "remaining": remaining})
        on_progress(progress)

    # ------------------------------------------------------------------
    # Phase 4: evaluation
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        table: ReviewJobTable,
        fallback: Dict[str, List[Dict[str, Any]]],
        log_extra: Dict[str, Any],
    ) -> ReviewCollectionResult:
        results: Dict[str, List[Dict[str, Any]]] = {}
        for job in table:
            if job.phase == ReviewJobPhase.DONE:
                results[job.asin] = job.reviews
            else:
                results[job.asin] = list(fallback.get(job.asin) or [])

        total = len(table)
        done = table.count(ReviewJobPhase.DONE)
        failed = total - done
        success_rate = done / total
        threshold = self.config.review_success_threshold

        logger.info(
            "Review collection finished: %d/%d succeeded (%.0f%%)",
            done,
            total,
            success_rate * 100,
            extra=log_extra,
        )

        if success_rate < threshold:
            return ReviewCollectionResult(
                success=False,
                results=results,
                error=(
                    f"Only {done}/{total} products returned reviews "
                    f"({success_rate:.0%}, need at least {threshold:.0%}). "
                    "Retry the analysis to resume."
                ),
                success_rate=success_rate,
                done=done,
                failed=failed,
                total=total,
            )

        return ReviewCollectionResult(
            success=True,
            results=results,
            success_rate=success_rate,
            done=done,
            failed=failed,
            total=total,
        )
