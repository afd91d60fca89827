# Location: campaign_delivery/utils/__init__.py

from .time_utils import (
    utc_now,
    format_datetime,
    parse_datetime,
    window_start,
    is_recurring_due,
)

from .personalization import (
    build_message,
    convert_to_tracking_links,
    add_tracking_pixel,
    unsubscribe_url,
    open_tracking_url,
    click_tracking_url,
)

__all__ = [
    'utc_now',
    'format_datetime',
    'parse_datetime',
    'window_start',
    'is_recurring_due',
    'build_message',
    'convert_to_tracking_links',
    'add_tracking_pixel',
    'unsubscribe_url',
    'open_tracking_url',
    'click_tracking_url',
]
