from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import List

from sqlalchemy.orm import Session, sessionmaker

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.market_intel_job import MarketIntelJob, JobStatus, RUNNING_STATUSES

logger = logging.getLogger(__name__)
settings = get_settings()


def fail_stale_jobs(
    session_factory: sessionmaker,
    stale_after: timedelta,
    now: datetime | None = None,
) -> List[str]:
    """
    Fail worker-owned jobs that have stopped making progress.

    Every sub-step of collection and analysis stamps ``updated_at``, so a job
    that has not been touched for ``stale_after`` has lost its worker.
    Jobs awaiting the user's product selection are never touched.
    Persisted data is left untouched so the job can be resumed.
    """
    now = now or datetime.utcnow()
    cutoff = now - stale_after
    db: Session = session_factory()
    try:
        stale = (
            db.query(MarketIntelJob)
            .filter(
                MarketIntelJob.status.in_(list(RUNNING_STATUSES)),
                MarketIntelJob.updated_at < cutoff,
            )
            .all()
        )
        minutes = int(stale_after.total_seconds() // 60)
        for job in stale:
            job.status = JobStatus.FAILED
            job.error_message = (
                f"Job stalled: no progress for {minutes} minutes. Retry the analysis to resume."
            )
            job.updated_at = now
        db.commit()
        failed_ids = [str(job.id) for job in stale]
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    for job_id in failed_ids:
        logger.warning("Marked stale job as failed", extra={"job_id": job_id, "step": "watchdog"})
    return failed_ids


@celery_app.task(name="app.services.watchdog.mark_stale_jobs_failed")
def mark_stale_jobs_failed() -> int:
    return len(
        fail_stale_jobs(SessionLocal, timedelta(minutes=settings.MI_STALE_JOB_MINUTES))
    )
