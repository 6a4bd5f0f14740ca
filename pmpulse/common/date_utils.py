"""
Date utilities for sync operations.

Provides the naive-UTC clock used for all persisted timestamps and the date
range calculation for incremental and full sync windows.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple


def utc_now() -> datetime:
    """
    Current UTC time as a naive datetime.

    All persisted timestamps are naive UTC so that PostgreSQL and SQLite
    compare them the same way.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_sync_date_range(
    mode: str,
    incremental_days: int = 7,
    full_lookback_days: int = 365,
    today: Optional[date] = None
) -> Tuple[date, date]:
    """
    Get the from/to date range for date-bounded reports (bills, work orders).

    Args:
        mode: 'incremental' or 'full'
        incremental_days: Days to look back on incremental runs (default: 7)
        full_lookback_days: Days to look back on full runs (default: 365)
        today: Reference date (default: today)

    Returns:
        Tuple of (from_date, to_date)

    Example (if today is 2026-01-08):
        >>> get_sync_date_range('incremental')
        (date(2026, 1, 1), date(2026, 1, 8))
    """
    today = today or date.today()
    days_back = full_lookback_days if mode == 'full' else incremental_days
    return today - timedelta(days=days_back), today


def minutes_since(moment: datetime, now: Optional[datetime] = None) -> float:
    """
    Minutes elapsed since a naive-UTC moment.

    Args:
        moment: Earlier timestamp
        now: Reference time (default: utc_now())

    Returns:
        float: Elapsed minutes (negative if moment is in the future)
    """
    now = now or utc_now()
    return (now - moment).total_seconds() / 60.0


def parse_date_string(date_str: str) -> date:
    """
    Parse a date string in YYYY-MM-DD format.

    Args:
        date_str: Date string in YYYY-MM-DD format (e.g., "2025-01-15")

    Returns:
        date object

    Raises:
        ValueError: If the string is not a valid YYYY-MM-DD date
    """
    return datetime.strptime(date_str, '%Y-%m-%d').date()
