# Location: campaign_delivery/models/__init__.py

from .campaign import (
    Campaign,
    EmailBatch,
    EmailRecipient,
    UnsubscribeToken,
    CampaignStatus,
    ScheduleType,
    BatchStatus,
    RecipientStatus,
    TERMINAL_CAMPAIGN_STATUSES,
    HELD_CAMPAIGN_STATUSES,
)
from .target import AllUsers, ByTag, External, TargetConfig, parse_target_config, dump_target_config

__all__ = [
    'Campaign',
    'EmailBatch',
    'EmailRecipient',
    'UnsubscribeToken',
    'CampaignStatus',
    'ScheduleType',
    'BatchStatus',
    'RecipientStatus',
    'TERMINAL_CAMPAIGN_STATUSES',
    'HELD_CAMPAIGN_STATUSES',
    'AllUsers',
    'ByTag',
    'External',
    'TargetConfig',
    'parse_target_config',
    'dump_target_config',
]
