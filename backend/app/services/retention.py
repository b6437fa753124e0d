from __future__ import annotations

from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session, sessionmaker

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.cached_lookup import CachedLookup
from ..models.market_intel_job import MarketIntelJob

logger = logging.getLogger(__name__)
settings = get_settings()


def purge_expired(
    session_factory: sessionmaker,
    cache_retention_days: int,
    job_retention_days: int,
    now: datetime | None = None,
) -> dict:
    """
    Delete cache entries and jobs past their retention window.

    - cached_lookups: by ``updated_at`` (a refreshed entry is kept).
    - market_intel_jobs: by ``created_at``.
    """
    now = now or datetime.utcnow()
    db: Session = session_factory()
    try:
        deleted_cache = (
            db.query(CachedLookup)
            .filter(CachedLookup.updated_at < now - timedelta(days=cache_retention_days))
            .delete(synchronize_session=False)
        )
        deleted_jobs = (
            db.query(MarketIntelJob)
            .filter(MarketIntelJob.created_at < now - timedelta(days=job_retention_days))
            .delete(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "Error during retention cleanup",
            extra={"step": "retention"},
        )
        raise
    finally:
        db.close()

    logger.info(
        "Retention cleanup removed %d cache entries and %d jobs",
        deleted_cache,
        deleted_jobs,
        extra={"step": "retention"},
    )
    return {"cache_entries": deleted_cache, "jobs": deleted_jobs}


@celery_app.task(name="app.services.retention.cleanup_expired")
def cleanup_expired() -> dict:
    """Daily beat task enforcing CACHE_RETENTION_DAYS and JOB_RETENTION_DAYS."""
    return purge_expired(
        SessionLocal,
        cache_retention_days=settings.CACHE_RETENTION_DAYS,
        job_retention_days=settings.JOB_RETENTION_DAYS,
    )
