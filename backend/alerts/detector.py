"""
Sales Anomaly Detector — trailing 30-day baseline comparison.

Pure and side-effect-free. The API preview and the scheduled batch job both
call `detect()` with whatever channel/sales data they have loaded.

Rules (evaluated independently per active channel, for "yesterday"):
  - ABRUPT_DROP: variation < -30% (CRITICAL below -50%, else HIGH)
  - SALES_SPIKE: variation > +100% (INFO)
  - NO_SALES:    nothing sold yesterday while the baseline mean is > 0 (HIGH)

GOAL_FAR is part of the type taxonomy but no rule emits it.
"""

import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

import pandas as pd
import structlog

logger = structlog.get_logger()


class AnomalyType(str, Enum):
    ABRUPT_DROP = "ABRUPT_DROP"
    SALES_SPIKE = "SALES_SPIKE"
    NO_SALES = "NO_SALES"
    GOAL_FAR = "GOAL_FAR"  # reserved


class AnomalySeverity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    INFO = "INFO"


BASELINE_DAYS = 30
DROP_THRESHOLD_PCT = 30.0
CRITICAL_DROP_PCT = 50.0
SPIKE_THRESHOLD_PCT = 100.0


@dataclass(frozen=True)
class ChannelRef:
    id: uuid.UUID
    name: str


@dataclass(frozen=True)
class DailySaleRecord:
    channel_id: uuid.UUID
    sale_date: date
    amount: float


@dataclass(frozen=True)
class DetectedAnomaly:
    channel_id: uuid.UUID
    channel_name: str
    type: AnomalyType
    severity: AnomalySeverity
    message: str
    current_value: float
    expected_value: float
    variation_percentage: float
    detected_at: date

    @property
    def key(self) -> tuple[uuid.UUID, str, date]:
        """Identity used for deduplication against the anomaly log."""
        return (self.channel_id, self.type.value, self.detected_at)


@dataclass(frozen=True)
class Thresholds:
    baseline_days: int = BASELINE_DAYS
    drop_pct: float = DROP_THRESHOLD_PCT
    critical_drop_pct: float = CRITICAL_DROP_PCT
    spike_pct: float = SPIKE_THRESHOLD_PCT


def lookback_start(evaluation_date: date, thresholds: Thresholds | None = None) -> date:
    """First sale date the detector needs for `evaluation_date`."""
    thresholds = thresholds or Thresholds()
    return evaluation_date - timedelta(days=thresholds.baseline_days + 1)


def detect(
    channels: list[ChannelRef],
    sales: list[DailySaleRecord],
    evaluation_date: date,
    thresholds: Thresholds | None = None,
) -> list[DetectedAnomaly]:
    """
    Compare each active channel's sales for the day before `evaluation_date`
    against the mean of the preceding window.

    The baseline window is [evaluation_date - 31d, evaluation_date - 1d):
    it excludes today and the tested day itself. Channels without any record
    in that window are skipped. Never raises.
    """
    thresholds = thresholds or Thresholds()
    if not channels or not sales:
        return []

    yesterday = evaluation_date - timedelta(days=1)
    window_start = lookback_start(evaluation_date, thresholds)

    df = pd.DataFrame(
        [
            {
                "channel_id": str(sale.channel_id),
                "sale_date": pd.Timestamp(sale.sale_date),
                "amount": float(sale.amount or 0),
            }
            for sale in sales
        ]
    )
    # Collapse duplicate rows for the same channel/day into the day's total
    daily = df.groupby(["channel_id", "sale_date"], as_index=False)["amount"].sum()

    in_baseline = (daily["sale_date"] >= pd.Timestamp(window_start)) & (daily["sale_date"] < pd.Timestamp(yesterday))
    baseline_means = daily[in_baseline].groupby("channel_id")["amount"].mean().to_dict()
    yesterday_values = daily[daily["sale_date"] == pd.Timestamp(yesterday)].set_index("channel_id")["amount"].to_dict()

    anomalies: list[DetectedAnomaly] = []
    for channel in channels:
        key = str(channel.id)
        if key not in baseline_means:
            continue

        baseline_mean = float(baseline_means[key])
        yesterday_value = float(yesterday_values.get(key, 0.0))
        anomalies.extend(
            _classify(channel, yesterday_value, baseline_mean, yesterday, thresholds)
        )

    logger.debug(
        "anomaly.detect_complete",
        evaluation_date=evaluation_date.isoformat(),
        channels=len(channels),
        anomalies=len(anomalies),
    )
    return anomalies


def variation_pct(current: float, baseline_mean: float) -> float:
    """Percent change vs. the baseline; 0 when the baseline is zero."""
    if baseline_mean > 0:
        return (current - baseline_mean) / baseline_mean * 100
    return 0.0


def _classify(
    channel: ChannelRef,
    yesterday_value: float,
    baseline_mean: float,
    detected_at: date,
    thresholds: Thresholds,
) -> list[DetectedAnomaly]:
    variation = variation_pct(yesterday_value, baseline_mean)
    found: list[DetectedAnomaly] = []

    def _emit(anomaly_type, severity, message, pct):
        found.append(
            DetectedAnomaly(
                channel_id=channel.id,
                channel_name=channel.name,
                type=anomaly_type,
                severity=severity,
                message=message,
                current_value=yesterday_value,
                expected_value=baseline_mean,
                variation_percentage=pct,
                detected_at=detected_at,
            )
        )

    if variation < -thresholds.drop_pct:
        severity = AnomalySeverity.CRITICAL if variation < -thresholds.critical_drop_pct else AnomalySeverity.HIGH
        _emit(
            AnomalyType.ABRUPT_DROP,
            severity,
            f"{channel.name} caiu {abs(variation):.0f}% vs média de {thresholds.baseline_days} dias",
            variation,
        )

    if variation > thresholds.spike_pct:
        _emit(
            AnomalyType.SALES_SPIKE,
            AnomalySeverity.INFO,
            f"{channel.name} teve pico de {variation:.0f}% acima da média",
            variation,
        )

    if yesterday_value == 0 and baseline_mean > 0:
        _emit(
            AnomalyType.NO_SALES,
            AnomalySeverity.HIGH,
            f"{channel.name} não registrou vendas ontem",
            -100.0,
        )

    return found
