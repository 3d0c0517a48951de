"""
Anomaly Engine — load, detect, reconcile and publish.

Pipeline (run daily by workers.anomalies.process_anomalies, or on demand):
  1. Load active channels + the trailing 31 days of sales
  2. Detect candidates for "yesterday" (alerts.detector)
  3. Reconcile against the anomaly log: insert only unseen
     (channel, type, detected_at) keys
  4. Publish newly persisted anomalies via Redis pub/sub

Re-running the pipeline for the same evaluation date is a no-op after the
first successful run.
"""

import json
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import detector, sources, store
from alerts.detector import DetectedAnomaly, Thresholds
from alerts.errors import StoreWriteFailure
from core.config import get_settings

logger = structlog.get_logger()

ANOMALY_CHANNEL = "anomalies"


@dataclass
class ReconcileResult:
    inserted: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0


def thresholds_from_settings() -> Thresholds:
    settings = get_settings()
    return Thresholds(
        baseline_days=settings.anomaly_baseline_days,
        drop_pct=settings.anomaly_drop_threshold_pct,
        critical_drop_pct=settings.anomaly_critical_drop_pct,
        spike_pct=settings.anomaly_spike_threshold_pct,
    )


# ──────────────────────────────────────────────────────────────────────────
# Detection
# ──────────────────────────────────────────────────────────────────────────


async def detect_for_date(
    db: AsyncSession,
    evaluation_date: date,
    thresholds: Thresholds | None = None,
) -> tuple[int, list[DetectedAnomaly]]:
    """
    Load catalog + sales and run the detector.

    Returns (active channel count, candidates). Raises DataUnavailable when
    either source cannot be read.
    """
    thresholds = thresholds or thresholds_from_settings()
    channels = await sources.list_active_channels(db)
    sales = await sources.list_sales_in_range(
        db,
        start=detector.lookback_start(evaluation_date, thresholds),
        end=evaluation_date,
    )
    logger.info(
        "anomaly.data_loaded",
        evaluation_date=evaluation_date.isoformat(),
        channels=len(channels),
        sales=len(sales),
    )
    return len(channels), detector.detect(channels, sales, evaluation_date, thresholds)


# ──────────────────────────────────────────────────────────────────────────
# Reconcile
# ──────────────────────────────────────────────────────────────────────────


async def reconcile(
    db: AsyncSession,
    candidates: list[DetectedAnomaly],
    detected_at: date,
) -> ReconcileResult:
    """
    Persist candidates whose identity key is not yet in the anomaly log.

    Each insert commits on its own, so one failing candidate does not block
    the others. If any insert failed, StoreWriteFailure is raised after every
    candidate has been attempted; rows committed so far stay persisted and
    the next run picks up the rest.
    """
    result = ReconcileResult()
    if not candidates:
        return result

    seen = await store.existing_keys(db, detected_at)

    for candidate in candidates:
        key = candidate.key
        if key in seen:
            result.skipped += 1
            continue

        row = store.build_row(candidate)
        db.add(row)
        try:
            await db.commit()
        except IntegrityError:
            # Another run inserted the same key between our read and write
            await db.rollback()
            result.skipped += 1
            logger.info("anomaly.reconcile_race_skipped", channel_id=str(candidate.channel_id), type=candidate.type.value)
            continue
        except SQLAlchemyError as exc:
            await db.rollback()
            result.failed += 1
            logger.error(
                "anomaly.reconcile_insert_failed",
                channel_id=str(candidate.channel_id),
                type=candidate.type.value,
                error=str(exc),
            )
            continue

        seen.add(key)
        result.inserted.append(_serialize(row, candidate.channel_name))

    logger.info(
        "anomaly.reconcile_complete",
        detected_at=detected_at.isoformat(),
        inserted=len(result.inserted),
        skipped=result.skipped,
        failed=result.failed,
    )
    if result.failed:
        raise StoreWriteFailure(
            f"{result.failed} anomaly insert(s) failed for {detected_at.isoformat()}",
            inserted=result.inserted,
        )
    return result


def _serialize(row, channel_name: str) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "channel_id": str(row.channel_id),
        "channel_name": channel_name,
        "type": row.type,
        "severity": row.severity,
        "message": row.message,
        "current_value": row.current_value,
        "expected_value": row.expected_value,
        "variation_percentage": row.variation_percentage,
        "detected_at": row.detected_at.isoformat(),
        "created_at": row.created_at.isoformat(),
    }


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


async def publish_anomalies(anomalies: list[dict[str, Any]]) -> int:
    """
    Publish newly persisted anomalies to Redis pub/sub for WebSocket delivery.
    Returns number of subscribers notified.
    """
    if not anomalies:
        return 0

    redis = aioredis.from_url(get_settings().redis_url)
    try:
        total_subs = 0
        for anomaly in anomalies:
            payload = json.dumps({"type": "anomaly", "payload": anomaly})
            total_subs += await redis.publish(ANOMALY_CHANNEL, payload)
        return total_subs
    finally:
        await redis.aclose()


async def _publish_best_effort(anomalies: list[dict[str, Any]]) -> None:
    try:
        await publish_anomalies(anomalies)
    except Exception as exc:  # noqa: BLE001
        logger.warning("anomaly.publish_failed", error=str(exc), count=len(anomalies))


# ──────────────────────────────────────────────────────────────────────────
# Master Pipeline
# ──────────────────────────────────────────────────────────────────────────


async def run_anomaly_pipeline(db: AsyncSession, evaluation_date: date) -> dict[str, Any]:
    """
    Full batch pipeline for one evaluation date.

    Returns:
        {
            "processed_channels": 4,
            "detected_anomalies": 3,
            "inserted_anomalies": 2,
            "skipped_existing": 1,
            "detected_at": "2026-10-17",
        }
    """
    detected_at = evaluation_date - timedelta(days=1)
    logger.info("anomaly.pipeline_start", evaluation_date=evaluation_date.isoformat())

    processed_channels, candidates = await detect_for_date(db, evaluation_date)
    try:
        result = await reconcile(db, candidates, detected_at)
    except StoreWriteFailure as exc:
        # Rows committed before the failure are skipped on retry, so announce them now
        await _publish_best_effort(exc.inserted)
        raise
    await _publish_best_effort(result.inserted)

    summary = {
        "processed_channels": processed_channels,
        "detected_anomalies": len(candidates),
        "inserted_anomalies": len(result.inserted),
        "skipped_existing": result.skipped,
        "detected_at": detected_at.isoformat(),
    }
    logger.info("anomaly.pipeline_complete", **summary)
    return summary
