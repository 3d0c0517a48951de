"""
Anomalies API — sales anomalies per channel.

Endpoints:
  GET  /anomalies — Active (non-dismissed) anomalies
  GET  /anomalies/summary — Active anomaly counts by severity
  GET  /anomalies/history — All anomalies in the window, dismissed included
  GET  /anomalies/preview — Live detection over current data (advisory)
  POST /anomalies/detect — Run the detection + persistence pipeline now
  POST /anomalies/{anomaly_id}/dismiss — Dismiss one anomaly
"""

from datetime import date, datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import engine, store
from alerts.detector import AnomalySeverity, AnomalyType, DetectedAnomaly
from alerts.errors import AnomalyNotFound, AnomalyStoreError, DataUnavailable
from alerts.presentation import SEVERITY_RANK, severity_display, type_display
from api.deps import get_current_user, get_db
from core.clock import business_today
from db.models import AnomalyLog, Channel

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/anomalies", tags=["anomalies"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AnomalyResponse(BaseModel):
    id: UUID
    channel_id: UUID
    channel_name: str | None
    type: AnomalyType
    type_label: str
    icon: str
    severity: AnomalySeverity
    severity_label: str
    severity_color: str
    message: str
    current_value: float
    expected_value: float
    variation_percentage: float
    detected_at: date
    created_at: datetime
    dismissed_at: datetime | None
    dismissed_by: str | None


class AnomalySummary(BaseModel):
    total: int
    critical: int
    high: int
    medium: int
    info: int


class PreviewAnomaly(BaseModel):
    channel_id: UUID
    channel_name: str
    type: AnomalyType
    type_label: str
    severity: AnomalySeverity
    severity_label: str
    message: str
    current_value: float
    expected_value: float
    variation_percentage: float
    detected_at: date
    already_saved: bool


class PreviewResponse(BaseModel):
    available: bool
    evaluation_date: date
    anomalies: list[PreviewAnomaly]


class DetectionRunResponse(BaseModel):
    status: str
    processed_channels: int
    detected_anomalies: int
    inserted_anomalies: int
    skipped_existing: int
    detected_at: date


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[AnomalyResponse])
async def list_active_anomalies(
    days: int | None = Query(None, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Non-dismissed anomalies detected in the last `days` days, newest first."""
    try:
        anomalies = await store.list_active(db, window_days=days)
    except AnomalyStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    names = await _channel_names(db, anomalies)
    return [_serialize(anomaly, names) for anomaly in anomalies]


@router.get("/summary", response_model=AnomalySummary)
async def get_anomaly_summary(
    days: int | None = Query(None, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Active anomaly counts by severity."""
    try:
        anomalies = await store.list_active(db, window_days=days)
    except AnomalyStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    counts = store.counts_by_severity(anomalies)
    return AnomalySummary(
        total=counts.total,
        critical=counts.critical,
        high=counts.high,
        medium=counts.medium,
        info=counts.info,
    )


@router.get("/history", response_model=list[AnomalyResponse])
async def list_anomaly_history(
    days: int | None = Query(None, ge=1, le=365),
    channel_id: UUID | None = None,
    severity: AnomalySeverity | None = None,
    anomaly_type: AnomalyType | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """All anomalies in the window, active and dismissed, newest detected first."""
    try:
        anomalies = await store.list_history(
            db,
            window_days=days,
            channel_id=channel_id,
            severity=severity,
            anomaly_type=anomaly_type,
        )
    except AnomalyStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    names = await _channel_names(db, anomalies)
    return [_serialize(anomaly, names) for anomaly in anomalies]


@router.get("/preview", response_model=PreviewResponse)
async def preview_anomalies(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Run detection over the current data without persisting anything.

    Advisory only: the persisted list is authoritative. When channels or
    sales cannot be read the preview is reported as unavailable.
    """
    evaluation_date = business_today()
    try:
        _, candidates = await engine.detect_for_date(db, evaluation_date)
    except DataUnavailable:
        logger.warning("anomaly.preview_unavailable", evaluation_date=evaluation_date.isoformat())
        return PreviewResponse(available=False, evaluation_date=evaluation_date, anomalies=[])

    saved: set = set()
    if candidates:
        try:
            saved = await store.existing_keys(db, candidates[0].detected_at)
        except AnomalyStoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc))

    candidates = sorted(candidates, key=lambda c: SEVERITY_RANK[c.severity])
    return PreviewResponse(
        available=True,
        evaluation_date=evaluation_date,
        anomalies=[_preview(candidate, saved) for candidate in candidates],
    )


@router.post("/detect", response_model=DetectionRunResponse)
async def trigger_anomaly_detection(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Run detection + persistence for yesterday immediately.

    Normally runs automatically once a day after midnight.
    """
    try:
        summary = await engine.run_anomaly_pipeline(db, business_today())
    except (DataUnavailable, AnomalyStoreError) as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    logger.info("anomaly.manual_detect", user=user.get("sub"), **summary)
    return DetectionRunResponse(status="success", **summary)


@router.post("/{anomaly_id}/dismiss", response_model=AnomalyResponse)
async def dismiss_anomaly(
    anomaly_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Dismiss an anomaly so it no longer shows as active."""
    try:
        anomaly = await store.dismiss(db, anomaly_id, dismissed_by=user.get("sub"))
    except AnomalyNotFound:
        raise HTTPException(status_code=404, detail="Anomaly not found")
    except AnomalyStoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    names = await _channel_names(db, [anomaly])
    return _serialize(anomaly, names)


# ─── Helpers ────────────────────────────────────────────────────────────────


async def _channel_names(db: AsyncSession, anomalies: list[AnomalyLog]) -> dict[UUID, str]:
    channel_ids = {anomaly.channel_id for anomaly in anomalies}
    if not channel_ids:
        return {}
    result = await db.execute(select(Channel.id, Channel.name).where(Channel.id.in_(channel_ids)))
    return {row.id: row.name for row in result.all()}


def _serialize(anomaly: AnomalyLog, names: dict[UUID, str]) -> AnomalyResponse:
    severity = severity_display(anomaly.severity)
    kind = type_display(anomaly.type)
    return AnomalyResponse(
        id=anomaly.id,
        channel_id=anomaly.channel_id,
        channel_name=names.get(anomaly.channel_id),
        type=anomaly.type,
        type_label=kind["label"],
        icon=kind["icon"],
        severity=anomaly.severity,
        severity_label=severity["label"],
        severity_color=severity["color"],
        message=anomaly.message,
        current_value=anomaly.current_value,
        expected_value=anomaly.expected_value,
        variation_percentage=anomaly.variation_percentage,
        detected_at=anomaly.detected_at,
        created_at=anomaly.created_at,
        dismissed_at=anomaly.dismissed_at,
        dismissed_by=anomaly.dismissed_by,
    )


def _preview(candidate: DetectedAnomaly, saved: set) -> PreviewAnomaly:
    return PreviewAnomaly(
        channel_id=candidate.channel_id,
        channel_name=candidate.channel_name,
        type=candidate.type,
        type_label=type_display(candidate.type)["label"],
        severity=candidate.severity,
        severity_label=severity_display(candidate.severity)["label"],
        message=candidate.message,
        current_value=candidate.current_value,
        expected_value=candidate.expected_value,
        variation_percentage=candidate.variation_percentage,
        detected_at=candidate.detected_at,
        already_saved=candidate.key in saved,
    )
