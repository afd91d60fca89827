# filename: time_utils.py

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

import pytz

logger = logging.getLogger(__name__)

RECURRING_TOLERANCE_MINUTES = 5


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def format_datetime(dt: datetime) -> str:
    """Format datetime for JSON serialization"""
    return dt.isoformat() if dt else None


def parse_datetime(dt_str: str) -> datetime:
    """Parse datetime from JSON string, assuming UTC when no offset is given"""
    if not dt_str:
        return None
    parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = pytz.UTC.localize(parsed)
    return parsed


def window_start(now: datetime, window_seconds: int) -> datetime:
    """Start of the trailing window ending at now"""
    return now - timedelta(seconds=window_seconds)


def is_time_to_run(local_now: datetime, scheduled_time: Optional[str],
                   tolerance_minutes: int = RECURRING_TOLERANCE_MINUTES) -> bool:
    """
    Check whether local_now is within tolerance of an "HH:MM" time of day.
    No time configured means any time of day.
    """
    if not scheduled_time:
        return True
    try:
        hours, minutes = [int(part) for part in scheduled_time.split(':')[:2]]
    except ValueError:
        logger.error(f"Invalid recurring time '{scheduled_time}'")
        return False
    scheduled = local_now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    diff_minutes = abs((local_now - scheduled).total_seconds()) / 60
    return diff_minutes <= tolerance_minutes


def is_recurring_due(config: Optional[Dict[str, Any]], now: datetime,
                     timezone: str = 'Europe/Berlin') -> bool:
    """
    Decide whether a recurring campaign should run at `now`.

    config keys: frequency (daily | weekly | monthly), days (weekday numbers
    with 0 = Sunday for weekly, days of month for monthly), time ("HH:MM"),
    start_date / end_date (ISO timestamps).
    """
    if not config:
        return False

    try:
        start_date = parse_datetime(config.get('start_date'))
        end_date = parse_datetime(config.get('end_date'))
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid recurring date range {config}: {str(e)}")
        return False
    if start_date and start_date > now:
        return False
    if end_date and end_date < now:
        return False

    local_now = now.astimezone(pytz.timezone(timezone))
    frequency = config.get('frequency')
    days = config.get('days')

    if frequency == 'daily':
        return is_time_to_run(local_now, config.get('time'))

    if frequency == 'weekly' and isinstance(days, list):
        # isoweekday: Monday = 1 .. Sunday = 7
        day_of_week = local_now.isoweekday() % 7
        return day_of_week in days and is_time_to_run(local_now, config.get('time'))

    if frequency == 'monthly' and isinstance(days, list):
        return local_now.day in days and is_time_to_run(local_now, config.get('time'))

    return False
