from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from ..core.celery_app import celery_app
from ..core.db import SessionLocal
from ..models.market_intel_job import MarketIntelJob, JobStatus
from .analysis import PHASES, PHASE_LABELS, MarketAnalyzer, build_analysis_input, merge_phase_results
from .cache import CacheLayer, CacheKey
from .connectors import MarketConnectors, get_connectors
from .dedup import dedupe_variants
from .job_store import JobStore, JobNotFound, InvalidJobState, make_progress
from .llm_costs import LLMCostTracker
from .orchestrator_config import OrchestratorConfig
from .review_collector import ReviewCollector
from .timeouts import race_timeout, TIMED_OUT

logger = logging.getLogger(__name__)

ANALYZABLE_STATUSES = frozenset(
    {JobStatus.AWAITING_SELECTION, JobStatus.COLLECTED, JobStatus.FAILED}
)


def _product_record(asin: str, product: Dict[str, Any], marketplace: str, source: str) -> Dict[str, Any]:
    """Flatten a parsed product page into the competitor record stored on the job."""
    discount = product.get("discount") or {}
    return {
        "asin": asin,
        "title": product.get("title"),
        "brand": product.get("brand"),
        "price": product.get("price"),
        "price_initial": product.get("price_initial"),
        "currency": product.get("currency"),
        "rating": product.get("rating"),
        "reviews_count": product.get("reviews_count"),
        "bullet_points": product.get("bullet_points"),
        "description": product.get("description"),
        "product_overview": product.get("product_overview"),
        "product_details": product.get("product_details"),
        "images": product.get("images") or [],
        "is_prime_eligible": bool(product.get("is_prime_eligible")),
        "amazon_choice": bool(product.get("amazon_choice")),
        "deal_type": product.get("deal_type"),
        "coupon": product.get("coupon"),
        "discount_percentage": discount.get("percentage") if isinstance(discount, dict) else None,
        "sales_volume": product.get("sales_volume"),
        "sales_rank": product.get("sales_rank"),
        "category": product.get("category"),
        "variations": product.get("variation"),
        "parent_asin": product.get("parent_asin"),
        "answered_questions_count": product.get("answered_questions_count"),
        "rating_stars_distribution": product.get("rating_stars_distribution"),
        "top_reviews": product.get("reviews") or [],
        "marketplace": marketplace,
        "source": source,
    }


def _error_record(asin: str, error: str) -> Dict[str, Any]:
    return {"asin": asin, "error": error, "source": "error"}


def _search_snapshot(keyword: str, data: Dict[str, Any], source: str) -> Dict[str, Any]:
    return {
        "keyword": keyword,
        "organic_results": data.get("organic") or [],
        "sponsored_results": data.get("paid") or [],
        "amazons_choices": data.get("amazons_choices") or [],
        "total_results_count": data.get("total_results_count") or 0,
        "source": source,
    }


class MarketIntelOrchestrator:
    """
    Drives a market-intelligence job through its two worker phases.

    ``collect`` discovers competitor products for the job's keywords and
    parks the job in ``awaiting_selection``. ``analyze`` enriches the
    selected products with reviews and Q&A, then runs the four analysis
    phases. Both persist after every unit of work so a failed job can be
    resumed without repeating paid calls.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        connectors: MarketConnectors,
        analyzer: MarketAnalyzer,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig.from_settings()
        self.connectors = connectors
        self.analyzer = analyzer
        self.store = JobStore(session_factory)
        self.cache = CacheLayer(session_factory, ttl=self.config.cache_ttl)
        self.review_collector = ReviewCollector(connectors.reviews, self.cache, self.config)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(self, job_id: UUID) -> None:
        job = self.store.get(job_id)
        self.store.transition(
            job_id,
            JobStatus.COLLECTING,
            error_message=None,
            progress=make_progress("keyword_search", 0, len(job.keywords), "Starting keyword search..."),
        )
        log_extra = {"job_id": str(job_id), "step": "collect"}
        logger.info("Starting collection for %d keyword(s)", len(job.keywords), extra=log_extra)

        try:
            await self._collect(job)
        except Exception as e:
            logger.exception("Collection failed", extra=log_extra)
            self.store.fail(job_id, str(e) or type(e).__name__)
            raise

    async def _collect(self, job: MarketIntelJob) -> None:
        keywords: List[str] = list(job.keywords)
        competitors: Dict[str, Dict[str, Any]] = {}
        snapshots: List[Dict[str, Any]] = []
        calls_used = job.external_calls_used or 0

        for ki, keyword in enumerate(keywords):
            self.store.update(
                job.id,
                progress=make_progress(
                    "keyword_search",
                    ki,
                    len(keywords),
                    f'Searching keyword "{keyword}" ({ki + 1}/{len(keywords)})...',
                ),
            )

            snapshot, fresh = await self._search(job, keyword)
            calls_used += int(fresh)
            if snapshot is not None:
                snapshots.append(snapshot)
                organic_asins = [
                    item["asin"] for item in snapshot["organic_results"] if item.get("asin")
                ]
                new_asins = [a for a in dict.fromkeys(organic_asins) if a not in competitors]
                to_lookup = new_asins[: job.max_competitors]

                if to_lookup:
                    await self.config.sleep(self.config.call_delay)

                for ai, asin in enumerate(to_lookup):
                    prefix = f"[{keyword}] " if len(keywords) > 1 else ""
                    self.store.update(
                        job.id,
                        progress=make_progress(
                            "asin_lookup",
                            ai + 1,
                            len(to_lookup),
                            f"{prefix}Fetching product {asin} ({ai + 1}/{len(to_lookup)})...",
                        ),
                    )
                    record, fresh = await self._lookup(job, asin)
                    calls_used += int(fresh)
                    competitors[asin] = record

                    if ai < len(to_lookup) - 1 and record.get("source") != "cache":
                        await self.config.sleep(self.config.call_delay)

            if ki < len(keywords) - 1:
                await self.config.sleep(self.config.keyword_delay)

        records = dedupe_variants(list(competitors.values()))
        if not records:
            self.store.update(job.id, external_calls_used=calls_used)
            self.store.fail(job.id, "No products found for any keyword")
            return

        top_asins = [r["asin"] for r in records]
        if len(keywords) == 1:
            keyword_search_data: Dict[str, Any] = snapshots[0] if snapshots else {}
        else:
            keyword_search_data = {"keywords": snapshots}

        self.store.transition(
            job.id,
            JobStatus.AWAITING_SELECTION,
            top_asins=top_asins,
            competitors_data=records,
            keyword_search_data=keyword_search_data,
            external_calls_used=calls_used,
            progress=make_progress(
                "awaiting_selection",
                0,
                0,
                f"Found {len(top_asins)} products. Select which to analyze.",
            ),
        )
        logger.info(
            "Collection complete: %d products, %d external calls",
            len(top_asins),
            calls_used,
            extra={"job_id": str(job.id), "step": "awaiting_selection"},
        )

    async def _search(self, job: MarketIntelJob, keyword: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Returns (snapshot or None, whether an external call was made)."""
        key = CacheKey.search(keyword, job.marketplace)
        cached = self.cache.get(key)
        if cached is not None:
            return _search_snapshot(keyword, cached, "cache"), False

        log_extra = {"job_id": str(job.id), "keyword": keyword, "step": "keyword_search"}
        try:
            res = await race_timeout(
                self.connectors.search.fetch(keyword=keyword, marketplace=job.marketplace, page=1),
                self.config.item_timeout,
            )
        except Exception as e:
            logger.warning("Keyword search failed: %s", e, extra=log_extra)
            return None, True

        if res is TIMED_OUT:
            logger.warning(
                "Keyword search timed out after %.0fs", self.config.item_timeout, extra=log_extra
            )
            return None, True
        if not res.success:
            logger.warning("Keyword search failed: %s", res.error, extra=log_extra)
            return None, True

        self.cache.put(key, res.data, fetched_by=job.requested_by)
        return _search_snapshot(keyword, res.data, "fresh"), True

    async def _lookup(self, job: MarketIntelJob, asin: str) -> Tuple[Dict[str, Any], bool]:
        """Returns (competitor or error record, whether an external call was made)."""
        key = CacheKey.product(asin, job.marketplace)
        cached = self.cache.get(key)
        if cached is not None:
            return _product_record(asin, cached, job.marketplace, "cache"), False

        log_extra = {"job_id": str(job.id), "asin": asin, "step": "asin_lookup"}
        try:
            res = await race_timeout(
                self.connectors.product.fetch(asin=asin, marketplace=job.marketplace),
                self.config.item_timeout,
            )
        except Exception as e:
            logger.warning("Product lookup failed: %s", e, extra=log_extra)
            return _error_record(asin, str(e) or "Lookup failed"), True

        if res is TIMED_OUT:
            logger.warning(
                "Product lookup timed out after %.0fs; skipping", self.config.item_timeout, extra=log_extra
            )
            return _error_record(asin, f"Skipped: timed out after {self.config.item_timeout:.0f}s"), True
        if not res.success:
            logger.warning("Product lookup failed: %s", res.error, extra=log_extra)
            return _error_record(asin, res.error or "Lookup failed"), True

        self.cache.put(key, res.data, fetched_by=job.requested_by)
        return _product_record(asin, res.data, job.marketplace, "fresh"), True

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, job_id: UUID, selected_asins: Optional[List[str]] = None) -> None:
        job = self.store.get(job_id)
        if job.status not in ANALYZABLE_STATUSES:
            raise InvalidJobState(f'Cannot analyze a job in status "{job.status.value}"')

        if selected_asins:
            selection = list(dict.fromkeys(selected_asins))
        else:
            selection = list(job.selected_asins or [])
        if not selection:
            raise InvalidJobState("No products selected for analysis")

        phase_results: Dict[str, Dict[str, Any]] = dict(job.phase_results or {})
        completed = self._completed_phases(phase_results)

        self.store.transition(
            job_id,
            JobStatus.ANALYZING,
            selected_asins=selection,
            error_message=None,
            progress=make_progress(
                "review_fetch",
                0,
                len(selection),
                "Starting analysis...",
                completed_phases=completed,
            ),
        )
        log_extra = {"job_id": str(job_id), "step": "analyze"}
        logger.info(
            "Starting analysis of %d products (phases done: %s)",
            len(selection),
            ", ".join(completed) or "none",
            extra=log_extra,
        )

        try:
            await self._analyze(job, selection, phase_results, completed)
        except Exception as e:
            logger.exception("Analysis failed", extra=log_extra)
            self.store.fail(job_id, str(e) or type(e).__name__)
            raise

    @staticmethod
    def _completed_phases(phase_results: Dict[str, Dict[str, Any]]) -> List[str]:
        # Only an unbroken prefix counts: phase k depends on every earlier phase
        completed: List[str] = []
        for phase in PHASES:
            if phase not in phase_results:
                break
            completed.append(phase)
        return completed

    async def _analyze(
        self,
        job: MarketIntelJob,
        selection: List[str],
        phase_results: Dict[str, Dict[str, Any]],
        completed: List[str],
    ) -> None:
        reviews = job.reviews_data
        if reviews is None:
            reviews = await self._collect_reviews(job, selection)
            if reviews is None:
                return
        else:
            logger.info(
                "Reusing persisted reviews",
                extra={"job_id": str(job.id), "step": "review_fetch"},
            )

        questions = job.questions_data
        if questions is None:
            questions = await self._collect_questions(job, selection)

        data = build_analysis_input(job, selection, reviews, questions)

        for index, phase in enumerate(PHASES):
            if phase in completed:
                continue

            number = index + 1
            self.store.update(
                job.id,
                progress=make_progress(
                    f"phase_{number}",
                    index,
                    len(PHASES),
                    f"Phase {number}: {PHASE_LABELS[phase]}...",
                    completed_phases=completed,
                ),
            )
            prior = {p: phase_results[p]["result"] for p in PHASES[:index]}
            output = await self.analyzer.run_phase(phase, data, prior)

            phase_results[phase] = output.to_record()
            completed.append(phase)
            self.store.update(
                job.id,
                phase_results=dict(phase_results),
                progress=make_progress(
                    f"phase_{number}",
                    number,
                    len(PHASES),
                    f"Phase {number} complete.",
                    completed_phases=completed,
                ),
            )

        provider = getattr(self.analyzer, "provider", "unknown")
        usage = LLMCostTracker.from_phase_results(str(job.id), phase_results, provider).summarize()
        tokens_used = sum(int(entry.get("tokens_used") or 0) for entry in phase_results.values())

        self.store.transition(
            job.id,
            JobStatus.COMPLETED,
            analysis_result=merge_phase_results(phase_results),
            model_used=phase_results[PHASES[0]].get("model"),
            tokens_used=tokens_used,
            llm_usage=usage,
            total_cost_usd=Decimal(str(usage["total_cost_usd"])),
            progress=make_progress(
                "completed",
                len(PHASES),
                len(PHASES),
                "Analysis complete.",
                completed_phases=completed,
            ),
        )
        logger.info(
            "Analysis complete (%d tokens)",
            tokens_used,
            extra={"job_id": str(job.id), "step": "completed"},
        )

    async def _collect_reviews(
        self, job: MarketIntelJob, selection: List[str]
    ) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        selected = set(selection)
        fallback = {
            record["asin"]: record.get("top_reviews") or []
            for record in (job.competitors_data or [])
            if record.get("asin") in selected and not record.get("error")
        }

        result = await self.review_collector.collect(
            selection,
            job.marketplace,
            job.reviews_per_product,
            fallback=fallback,
            on_progress=lambda progress: self.store.update(job.id, progress=progress),
            fetched_by=job.requested_by,
            job_id=str(job.id),
        )
        if not result.success:
            self.store.fail(job.id, result.error or "Review collection failed")
            return None

        self.store.update(job.id, reviews_data=result.results)
        return result.results

    async def _collect_questions(
        self, job: MarketIntelJob, selection: List[str]
    ) -> Dict[str, List[Dict[str, Any]]]:
        questions: Dict[str, List[Dict[str, Any]]] = {}
        calls_used = job.external_calls_used or 0

        for i, asin in enumerate(selection):
            self.store.update(
                job.id,
                progress=make_progress(
                    "qna_fetch",
                    i,
                    len(selection),
                    f"Fetching Q&A for {asin} ({i + 1}/{len(selection)})...",
                ),
            )

            key = CacheKey.qna(asin, job.marketplace)
            cached = self.cache.get(key)
            if cached is not None:
                questions[asin] = list(cached)
                continue

            calls_used += 1
            log_extra = {"job_id": str(job.id), "asin": asin, "step": "qna_fetch"}
            try:
                res = await race_timeout(
                    self.connectors.questions.fetch(asin=asin, marketplace=job.marketplace, page=1),
                    self.config.item_timeout,
                )
            except Exception as e:
                logger.warning("Q&A fetch failed: %s", e, extra=log_extra)
                res = None

            if res is TIMED_OUT:
                logger.warning("Q&A fetch timed out; skipping", extra=log_extra)
            elif res is not None and res.success:
                self.cache.put(key, res.data, fetched_by=job.requested_by)
                questions[asin] = list(res.data)
            elif res is not None:
                logger.warning("Q&A fetch failed: %s", res.error, extra=log_extra)

            if i < len(selection) - 1:
                await self.config.sleep(self.config.call_delay)

        self.store.update(job.id, questions_data=questions, external_calls_used=calls_used)
        return questions


def get_orchestrator() -> MarketIntelOrchestrator:
    return MarketIntelOrchestrator(
        session_factory=SessionLocal,
        connectors=get_connectors(),
        analyzer=MarketAnalyzer(),
        config=OrchestratorConfig.from_settings(),
    )


# ---------------------------------------------------------------------------
# Service entry points (called from the API layer)
# ---------------------------------------------------------------------------

RUN_COLLECTION_TASK = "app.services.orchestrator.run_collection"
RUN_ANALYSIS_TASK = "app.services.orchestrator.run_analysis"


def _enqueue(task_name: str, job_id: str):
    return celery_app.send_task(task_name, args=[job_id], queue="market_intel")


def start_collection(
    *,
    keywords: List[str],
    marketplace: str,
    max_competitors: int = 10,
    reviews_per_product: int = 200,
    requested_by: str | None = None,
    store: JobStore | None = None,
) -> Tuple[MarketIntelJob, str]:
    """Create a pending job and enqueue its collection. Returns (job, task id)."""
    store = store or JobStore(SessionLocal)
    job = store.create(
        keywords=keywords,
        marketplace=marketplace,
        max_competitors=max_competitors,
        reviews_per_product=reviews_per_product,
        requested_by=requested_by,
    )
    task = _enqueue(RUN_COLLECTION_TASK, str(job.id))
    logger.info(
        "Queued collection",
        extra={"job_id": str(job.id), "keyword": ", ".join(keywords), "step": "pending"},
    )
    return job, task.id


def confirm_selection(
    job_id: UUID,
    selected_asins: List[str],
    *,
    store: JobStore | None = None,
) -> str:
    """Record the user's product selection and enqueue analysis. Returns the task id."""
    store = store or JobStore(SessionLocal)
    job = store.get(job_id)
    if job.status != JobStatus.AWAITING_SELECTION:
        raise InvalidJobState(
            f'Products can only be selected while awaiting selection (status is "{job.status.value}")'
        )

    selection = list(dict.fromkeys(a.strip() for a in selected_asins if a and a.strip()))
    if not selection:
        raise InvalidJobState("Select at least one product")

    known = set(job.top_asins or [])
    unknown = [a for a in selection if a not in known]
    if unknown:
        raise InvalidJobState(f"Unknown products in selection: {', '.join(unknown)}")

    store.transition(
        job_id,
        JobStatus.COLLECTED,
        selected_asins=selection,
        progress=make_progress(
            "collected", 0, 0, f"{len(selection)} products selected. Queued for analysis."
        ),
    )
    return _enqueue(RUN_ANALYSIS_TASK, str(job_id)).id


def resume_analysis(job_id: UUID, *, store: JobStore | None = None) -> str:
    """Re-enqueue analysis for a failed job; completed work is reused."""
    store = store or JobStore(SessionLocal)
    job = store.get(job_id)
    if job.status != JobStatus.FAILED:
        raise InvalidJobState(f'Only failed jobs can be resumed (status is "{job.status.value}")')
    if not job.selected_asins:
        raise InvalidJobState("Job has no product selection to resume")

    logger.info("Resuming analysis", extra={"job_id": str(job_id), "step": "resume"})
    return _enqueue(RUN_ANALYSIS_TASK, str(job_id)).id


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(name=RUN_COLLECTION_TASK, bind=True, queue="market_intel")
def run_collection(self, job_id: str):
    try:
        asyncio.run(get_orchestrator().collect(UUID(job_id)))
    except (JobNotFound, InvalidJobState) as e:
        # Duplicate or stale delivery; the job has moved on
        logger.warning("Skipping collection: %s", e, extra={"job_id": job_id, "step": "collect"})


@celery_app.task(name=RUN_ANALYSIS_TASK, bind=True, queue="market_intel")
def run_analysis(self, job_id: str, selected_asins: Optional[List[str]] = None):
    try:
        asyncio.run(get_orchestrator().analyze(UUID(job_id), selected_asins))
    except (JobNotFound, InvalidJobState) as e:
        logger.warning("Skipping analysis: %s", e, extra={"job_id": job_id, "step": "analyze"})
