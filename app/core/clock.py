"""
Canonical clock.

All booking, payment and result timestamps are civil time in the configured
zone, stored without an offset.
"""
from datetime import date, datetime
from zoneinfo import ZoneInfo

from app.core.config import settings

_zone = ZoneInfo(settings.TIMEZONE)


def now() -> datetime:
    """Current civil time in the service time zone."""
    return datetime.now(_zone).replace(tzinfo=None)


def today() -> date:
    """Current civil date in the service time zone."""
    return now().date()
