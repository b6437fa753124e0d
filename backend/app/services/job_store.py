from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List
from uuid import UUID

from sqlalchemy import String, cast
from sqlalchemy.orm import sessionmaker

from ..models.market_intel_job import MarketIntelJob, JobStatus, IN_FLIGHT_STATUSES

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LEN = 500


class JobNotFound(LookupError):
    pass


class InvalidJobState(ValueError):
    pass


_FORWARD_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.COLLECTING}),
    JobStatus.COLLECTING: frozenset({JobStatus.AWAITING_SELECTION}),
    JobStatus.AWAITING_SELECTION: frozenset({JobStatus.COLLECTED, JobStatus.ANALYZING}),
    JobStatus.COLLECTED: frozenset({JobStatus.ANALYZING}),
    JobStatus.ANALYZING: frozenset({JobStatus.COMPLETED}),
    JobStatus.COMPLETED: frozenset(),
    # resume
    JobStatus.FAILED: frozenset({JobStatus.ANALYZING}),
}

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    status: targets | ({JobStatus.FAILED} if status in IN_FLIGHT_STATUSES else frozenset())
    for status, targets in _FORWARD_TRANSITIONS.items()
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidJobState(
            f'Cannot move job from "{JobStatus(current).value}" to "{JobStatus(target).value}"'
        )


def make_progress(
    step: str,
    current: int,
    total: int,
    message: str,
    completed_phases: list[str] | None = None,
) -> Dict[str, Any]:
    progress: Dict[str, Any] = {
        "step": step,
        "current": current,
        "total": total,
        "message": message,
    }
    if completed_phases is not None:
        progress["completed_phases"] = list(completed_phases)
    return progress


class JobStore:
    """
    Narrow persistence API for market-intelligence job records.

    Each call is one short transaction. ``update`` is a blind overwrite of the
    given fields (plus ``updated_at``); the phase currently running owns the
    fields it writes, so no read-modify-write is needed.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create(self, **fields: Any) -> MarketIntelJob:
        now = self._clock()
        db = self._session_factory()
        try:
            job = MarketIntelJob(
                status=JobStatus.PENDING,
                progress=make_progress("pending", 0, 0, "Queued."),
                created_at=now,
                updated_at=now,
                **fields,
            )
            db.add(job)
            db.commit()
            db.refresh(job)
            return job
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, job_id: UUID) -> MarketIntelJob:
        db = self._session_factory()
        try:
            job = db.query(MarketIntelJob).filter(MarketIntelJob.id == job_id).first()
            if not job:
                raise JobNotFound(f"Market intelligence job {job_id} not found")
            return job
        finally:
            db.close()

    def update(self, job_id: UUID, **fields: Any) -> None:
        db = self._session_factory()
        try:
            job = db.query(MarketIntelJob).filter(MarketIntelJob.id == job_id).first()
            if not job:
                raise JobNotFound(f"Market intelligence job {job_id} not found")
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = self._clock()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def transition(self, job_id: UUID, target: JobStatus, **fields: Any) -> None:
        """Validate and apply a lifecycle move together with any other fields."""
        db = self._session_factory()
        try:
            job = db.query(MarketIntelJob).filter(MarketIntelJob.id == job_id).first()
            if not job:
                raise JobNotFound(f"Market intelligence job {job_id} not found")
            ensure_transition(job.status, target)
            for key, value in fields.items():
                setattr(job, key, value)
            job.status = target
            job.updated_at = self._clock()
            if target == JobStatus.COMPLETED:
                job.completed_at = job.updated_at
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "Job moved to %s",
            JobStatus(target).value,
            extra={"job_id": str(job_id), "step": JobStatus(target).value},
        )

    def fail(self, job_id: UUID, message: str) -> None:
        """
        Persist a failure without touching any data gathered so far.

        Terminal jobs are left alone so a late failure cannot overwrite a
        completed result.
        """
        db = self._session_factory()
        try:
            job = db.query(MarketIntelJob).filter(MarketIntelJob.id == job_id).first()
            if not job:
                return
            if job.status not in IN_FLIGHT_STATUSES:
                logger.warning(
                    "Not failing job in terminal status %s: %s",
                    job.status.value,
                    message,
                    extra={"job_id": str(job_id)},
                )
                return
            job.status = JobStatus.FAILED
            job.error_message = (message or "Unknown error")[:MAX_ERROR_MESSAGE_LEN]
            job.updated_at = self._clock()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.warning(
            "Job failed: %s",
            message,
            extra={"job_id": str(job_id), "step": "failed"},
        )

    def list_recent(
        self,
        search: str | None = None,
        marketplace: str | None = None,
        limit: int = 20,
    ) -> List[MarketIntelJob]:
        """Most recently created jobs, optionally filtered by keyword text and marketplace."""
        db = self._session_factory()
        try:
            query = db.query(MarketIntelJob)
            if search:
                query = query.filter(
                    cast(MarketIntelJob.keywords, String).ilike(f"%{search.strip().lower()}%")
                )
            if marketplace:
                query = query.filter(MarketIntelJob.marketplace == marketplace)
            return query.order_by(MarketIntelJob.created_at.desc()).limit(limit).all()
        finally:
            db.close()
