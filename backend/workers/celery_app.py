"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "salesdash",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.business_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.anomalies.*": {"queue": "anomalies"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Evaluates the previous day's close-out once it is complete
        "process-anomalies-daily": {
            "task": "workers.anomalies.process_anomalies",
            "schedule": crontab(hour=settings.anomaly_schedule_hour, minute=settings.anomaly_schedule_minute),
            "options": {"queue": "anomalies"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="anomalies")
