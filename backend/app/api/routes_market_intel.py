from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Security
from fastapi.security.api_key import APIKeyHeader

from ..core.config import get_settings
from ..core.db import SessionLocal
from ..schemas.market_intel import (
    MarketIntelRequest,
    MarketIntelCreated,
    MarketIntelJobOut,
    MarketIntelJobSummary,
    SelectionRequest,
    TaskAccepted,
)
from ..models.market_intel_job import JobStatus
from ..services.job_store import JobStore, JobNotFound, InvalidJobState
from ..services.orchestrator import start_collection, confirm_selection, resume_analysis

router = APIRouter(tags=["market-intelligence"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
logger = logging.getLogger(__name__)

LIST_LIMIT = 20


def get_job_store() -> JobStore:
    return JobStore(SessionLocal)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Header-based API key check.

    - In dev with no API_AUTH_KEY configured, auth is skipped.
    - Otherwise X-API-Key must equal API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


@router.post("/market-intelligence", response_model=MarketIntelCreated, status_code=202)
def create_market_intel_job(
    payload: MarketIntelRequest,
    store: JobStore = Depends(get_job_store),
    _: None = Depends(verify_api_key),
):
    job, task_id = start_collection(
        keywords=payload.keywords,
        marketplace=payload.marketplace,
        max_competitors=payload.max_competitors,
        reviews_per_product=payload.reviews_per_product,
        requested_by=payload.requested_by,
        store=store,
    )
    logger.info(
        "Market intelligence job created",
        extra={"job_id": str(job.id), "keyword": ", ".join(payload.keywords), "step": "job_created"},
    )
    summary = MarketIntelJobSummary.model_validate(job)
    return MarketIntelCreated(**summary.model_dump(), task_id=task_id)


@router.get("/market-intelligence", response_model=list[MarketIntelJobSummary])
def list_market_intel_jobs(
    search: str | None = Query(default=None, max_length=200),
    marketplace: str | None = Query(default=None),
    store: JobStore = Depends(get_job_store),
    _: None = Depends(verify_api_key),
):
    return store.list_recent(search=search, marketplace=marketplace, limit=LIST_LIMIT)


@router.get("/market-intelligence/{job_id}", response_model=MarketIntelJobOut)
def get_market_intel_job(
    job_id: UUID,
    store: JobStore = Depends(get_job_store),
    _: None = Depends(verify_api_key),
):
    try:
        return store.get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/market-intelligence/{job_id}/select", response_model=TaskAccepted, status_code=202)
def select_products(
    job_id: UUID,
    payload: SelectionRequest,
    store: JobStore = Depends(get_job_store),
    _: None = Depends(verify_api_key),
):
    try:
        task_id = confirm_selection(job_id, payload.selected_asins, store=store)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobState as e:
        raise HTTPException(status_code=400, detail=str(e))

    return TaskAccepted(job_id=job_id, task_id=task_id, status=JobStatus.COLLECTED)


@router.post("/market-intelligence/{job_id}/resume", response_model=TaskAccepted, status_code=202)
def resume_market_intel_job(
    job_id: UUID,
    store: JobStore = Depends(get_job_store),
    _: None = Depends(verify_api_key),
):
    try:
        task_id = resume_analysis(job_id, store=store)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobState as e:
        raise HTTPException(status_code=400, detail=str(e))

    return TaskAccepted(job_id=job_id, task_id=task_id, status=JobStatus.FAILED)
