from celery import Celery
from celery.schedules import crontab

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "market_intel",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={
        "app.services.orchestrator.run_collection": {"queue": "market_intel"},
        "app.services.orchestrator.run_analysis": {"queue": "market_intel"},
    },
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    imports=(
        "app.services.orchestrator",
        "app.services.watchdog",
        "app.services.retention",
    ),
    beat_schedule={
        # Jobs whose worker died never reach a terminal state on their own
        "mark-stale-market-intel-jobs": {
            "task": "app.services.watchdog.mark_stale_jobs_failed",
            "schedule": crontab(minute="*/10"),
        },
        "cleanup-expired-market-intel-data": {
            "task": "app.services.retention.cleanup_expired",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
