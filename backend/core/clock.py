"""Business-calendar "today" shared by the API, workers and scripts."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from core.config import get_settings


def business_today() -> date:
    """Current calendar date in the configured business timezone."""
    tz = ZoneInfo(get_settings().business_timezone)
    return datetime.now(timezone.utc).astimezone(tz).date()
