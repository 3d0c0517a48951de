"""
SalesDash Database Models

Tables:
  1. channels      - Sales channels (marketplaces, storefronts)
  2. daily_sales   - Total recognized sales per channel per day
  3. anomaly_logs  - Persisted sales anomalies (append-only, soft-dismiss)

Channels and daily sales are maintained by the dashboard's CRUD screens;
the anomaly subsystem only reads them.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from alerts.detector import AnomalySeverity, AnomalyType
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Channels ────────────────────────────────────────────────────────────


class Channel(Base):
    __tablename__ = "channels"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False, default="marketplace")
    icon_url = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_channels_active", "is_active"),)

    sales = relationship("DailySale", back_populates="channel")
    anomalies = relationship("AnomalyLog", back_populates="channel")


# ─── 2. Daily Sales ─────────────────────────────────────────────────────────


class DailySale(Base):
    __tablename__ = "daily_sales"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    channel_id = Column(GUID(), ForeignKey("channels.id"), nullable=False)
    sale_date = Column(Date, nullable=False)
    amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("channel_id", "sale_date", name="uq_daily_sales_channel_date"),
        Index("ix_daily_sales_date", "sale_date"),
        CheckConstraint("amount >= 0", name="ck_daily_sales_amount"),
    )

    channel = relationship("Channel", back_populates="sales")


# ─── 3. Anomaly Logs ────────────────────────────────────────────────────────


class AnomalyLog(Base):
    __tablename__ = "anomaly_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    channel_id = Column(GUID(), ForeignKey("channels.id"), nullable=False)
    type = Column(String(20), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    current_value = Column(Float, nullable=False)
    expected_value = Column(Float, nullable=False)
    variation_percentage = Column(Float, nullable=False)
    detected_at = Column(Date, nullable=False)  # the sales day being evaluated
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    dismissed_at = Column(DateTime)
    dismissed_by = Column(String(255))

    __table_args__ = (
        # Identity key: at most one row per channel, type and day
        UniqueConstraint("channel_id", "type", "detected_at", name="uq_anomaly_logs_identity"),
        Index("ix_anomaly_logs_detected", "detected_at"),
        Index("ix_anomaly_logs_active", "detected_at", postgresql_where=text("dismissed_at IS NULL")),
        CheckConstraint(_in_clause("type", AnomalyType), name="ck_anomaly_logs_type"),
        CheckConstraint(_in_clause("severity", AnomalySeverity), name="ck_anomaly_logs_severity"),
    )

    channel = relationship("Channel", back_populates="anomalies")
