"""
Read-only access to the channel catalog and the daily sales table.

Database failures surface as `DataUnavailable`, which is fatal to a batch run
and turns the interactive preview off.
"""

from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.detector import ChannelRef, DailySaleRecord
from alerts.errors import DataUnavailable
from db.models import Channel, DailySale

logger = structlog.get_logger()


async def list_active_channels(db: AsyncSession) -> list[ChannelRef]:
    """All channels currently flagged active."""
    try:
        result = await db.execute(select(Channel.id, Channel.name).where(Channel.is_active.is_(True)).order_by(Channel.name))
    except SQLAlchemyError as exc:
        logger.error("anomaly.channels_unavailable", error=str(exc))
        raise DataUnavailable("Could not read channel catalog") from exc
    return [ChannelRef(id=row.id, name=row.name) for row in result.all()]


async def list_sales_in_range(db: AsyncSession, start: date, end: date) -> list[DailySaleRecord]:
    """Daily sales with `start <= sale_date < end`."""
    try:
        result = await db.execute(
            select(DailySale.channel_id, DailySale.sale_date, DailySale.amount).where(
                DailySale.sale_date >= start,
                DailySale.sale_date < end,
            )
        )
    except SQLAlchemyError as exc:
        logger.error("anomaly.sales_unavailable", start=start.isoformat(), end=end.isoformat(), error=str(exc))
        raise DataUnavailable("Could not read daily sales") from exc
    return [
        DailySaleRecord(channel_id=row.channel_id, sale_date=row.sale_date, amount=float(row.amount or 0))
        for row in result.all()
    ]
