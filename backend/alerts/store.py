"""
Anomaly Store — persistence for the `anomaly_logs` table.

Rows are append-only. The only mutation is a one-way dismissal
(`dismissed_at` / `dismissed_by`); nothing here deletes rows.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.detector import AnomalySeverity, AnomalyType, DetectedAnomaly
from alerts.errors import AnomalyNotFound, AnomalyStoreError, StoreWriteFailure
from core.clock import business_today
from core.config import get_settings
from db.models import AnomalyLog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SeverityCounts:
    total: int
    critical: int
    high: int
    medium: int
    info: int


def counts_by_severity(active: list[AnomalyLog]) -> SeverityCounts:
    """Tally anomalies per severity tier."""
    tally = {severity: 0 for severity in AnomalySeverity}
    for anomaly in active:
        tally[AnomalySeverity(anomaly.severity)] += 1
    return SeverityCounts(
        total=len(active),
        critical=tally[AnomalySeverity.CRITICAL],
        high=tally[AnomalySeverity.HIGH],
        medium=tally[AnomalySeverity.MEDIUM],
        info=tally[AnomalySeverity.INFO],
    )


def _window_start(window_days: int | None, today: date | None) -> date:
    days = window_days or get_settings().anomaly_active_window_days
    return (today or business_today()) - timedelta(days=days)


async def list_active(
    db: AsyncSession,
    window_days: int | None = None,
    today: date | None = None,
) -> list[AnomalyLog]:
    """Non-dismissed anomalies detected within the window, newest created first."""
    cutoff = _window_start(window_days, today)
    try:
        result = await db.execute(
            select(AnomalyLog)
            .where(
                AnomalyLog.detected_at >= cutoff,
                AnomalyLog.dismissed_at.is_(None),
            )
            .order_by(AnomalyLog.created_at.desc())
        )
    except SQLAlchemyError as exc:
        raise AnomalyStoreError("Could not list active anomalies") from exc
    return list(result.scalars().all())


async def list_history(
    db: AsyncSession,
    window_days: int | None = None,
    today: date | None = None,
    channel_id: uuid.UUID | None = None,
    severity: AnomalySeverity | None = None,
    anomaly_type: AnomalyType | None = None,
) -> list[AnomalyLog]:
    """Every anomaly (active or dismissed) in the window, newest detected first."""
    cutoff = _window_start(window_days, today)
    query = select(AnomalyLog).where(AnomalyLog.detected_at >= cutoff)
    if channel_id:
        query = query.where(AnomalyLog.channel_id == channel_id)
    if severity:
        query = query.where(AnomalyLog.severity == severity.value)
    if anomaly_type:
        query = query.where(AnomalyLog.type == anomaly_type.value)
    query = query.order_by(AnomalyLog.detected_at.desc(), AnomalyLog.created_at.desc())

    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        raise AnomalyStoreError("Could not list anomaly history") from exc
    return list(result.scalars().all())


async def existing_keys(db: AsyncSession, detected_at: date) -> set[tuple[uuid.UUID, str, date]]:
    """Identity keys already persisted for one detection day."""
    try:
        result = await db.execute(
            select(AnomalyLog.channel_id, AnomalyLog.type, AnomalyLog.detected_at).where(
                AnomalyLog.detected_at == detected_at
            )
        )
    except SQLAlchemyError as exc:
        raise AnomalyStoreError("Could not read existing anomalies") from exc
    return {(row.channel_id, row.type, row.detected_at) for row in result.all()}


def build_row(candidate: DetectedAnomaly) -> AnomalyLog:
    return AnomalyLog(
        id=uuid.uuid4(),
        channel_id=candidate.channel_id,
        type=candidate.type.value,
        severity=candidate.severity.value,
        message=candidate.message,
        current_value=candidate.current_value,
        expected_value=candidate.expected_value,
        variation_percentage=candidate.variation_percentage,
        detected_at=candidate.detected_at,
        created_at=datetime.utcnow(),
        dismissed_at=None,
    )


async def dismiss(
    db: AsyncSession,
    anomaly_id: uuid.UUID,
    dismissed_by: str | None = None,
    now: datetime | None = None,
) -> AnomalyLog:
    """
    Soft-remove an anomaly from the active set.

    Dismissing an already-dismissed anomaly changes nothing: the first
    dismissal's timestamp and author are kept.
    """
    try:
        anomaly = await db.get(AnomalyLog, anomaly_id)
    except SQLAlchemyError as exc:
        raise AnomalyStoreError("Could not read anomaly") from exc
    if anomaly is None:
        raise AnomalyNotFound(anomaly_id)

    if anomaly.dismissed_at is not None:
        logger.info("anomaly.dismiss_noop", anomaly_id=str(anomaly_id))
        return anomaly

    anomaly.dismissed_at = now or datetime.utcnow()
    anomaly.dismissed_by = dismissed_by
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("anomaly.dismiss_failed", anomaly_id=str(anomaly_id), error=str(exc))
        raise StoreWriteFailure(f"Could not dismiss anomaly {anomaly_id}") from exc

    logger.info("anomaly.dismissed", anomaly_id=str(anomaly_id), dismissed_by=dismissed_by)
    return anomaly
