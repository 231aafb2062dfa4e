"""
Timezone utilities for tenant-aware date handling.

Membership windows and ledger dates are calendar dates in the gym's own
timezone. A renewal paid at 00:30 IST must start on the Indian date, not the
UTC one.
"""
from datetime import datetime, date
from typing import Optional
import pytz

from config import settings


def get_tenant_timezone(tenant_timezone: Optional[str] = None) -> pytz.timezone:
    """
    Get pytz timezone object for tenant.

    Args:
        tenant_timezone: Timezone string (e.g., "Asia/Kolkata")

    Returns:
        pytz timezone object
    """
    try:
        return pytz.timezone(tenant_timezone or settings.DEFAULT_TIMEZONE)
    except pytz.exceptions.UnknownTimeZoneError:
        # Fallback to UTC if invalid timezone
        return pytz.UTC


def get_tenant_today(tenant_timezone: Optional[str] = None) -> date:
    """
    Get current date in tenant's timezone.

    This ensures "today" reflects the gym's local time,
    not the server's UTC time.
    """
    tz = get_tenant_timezone(tenant_timezone)
    utc_now = datetime.utcnow().replace(tzinfo=pytz.UTC)
    return utc_now.astimezone(tz).date()
