"""
Anomaly Workers — scheduled sales anomaly detection.

process_anomalies evaluates "yesterday" (relative to the business-timezone
date at invocation) for every active channel and persists anomalies not yet
in the log. Safe to retry: already-persisted keys are skipped.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import date, datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.anomalies.process_anomalies",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def process_anomalies(self, evaluation_date: str | None = None):
    """
    Daily job: detect sales anomalies for yesterday and persist new ones.

    Args:
        evaluation_date: ISO date to evaluate as "today" (manual backfill).
            Defaults to the current business date.

    Returns:
        {
            "status": "success",
            "processed_channels": 4,
            "detected_anomalies": 3,
            ...
        }
    """
    from core.clock import business_today

    run_id = self.request.id or "manual"
    run_date = date.fromisoformat(evaluation_date) if evaluation_date else business_today()
    logger.info("anomalies.task.started", evaluation_date=run_date.isoformat(), run_id=run_id)

    async def _process():
        from alerts.engine import run_anomaly_pipeline
        from core.config import get_settings

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await run_anomaly_pipeline(db, run_date)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_process())
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "anomalies.task.failed",
            evaluation_date=run_date.isoformat(),
            run_id=run_id,
            error=str(exc),
            exc_info=True,
        )
        raise self.retry(exc=exc)

    result = {
        "status": "success",
        **summary,
        "run_id": run_id,
        "completed_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info("anomalies.task.completed", **result)
    return result
