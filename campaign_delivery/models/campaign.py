# filename: campaign.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import pytz
from pydantic import BaseModel, field_validator


class CampaignStatus(str, Enum):
    DRAFT = 'draft'
    SCHEDULED = 'scheduled'
    ACTIVE = 'active'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    FAILED = 'failed'
    PARTIAL = 'partial'


class ScheduleType(str, Enum):
    IMMEDIATE = 'immediate'
    SCHEDULED = 'scheduled'
    RECURRING = 'recurring'


class BatchStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class RecipientStatus(str, Enum):
    PENDING = 'pending'
    SENDING = 'sending'
    SENT = 'sent'
    SKIPPED = 'skipped'
    FAILED = 'failed'


TERMINAL_CAMPAIGN_STATUSES = {
    CampaignStatus.COMPLETED,
    CampaignStatus.PARTIAL,
    CampaignStatus.FAILED,
}

# campaigns in these states keep their batches parked until resumed
HELD_CAMPAIGN_STATUSES = {CampaignStatus.PAUSED, CampaignStatus.DRAFT}


def _as_utc(value):
    # timestamptz columns come back with an offset, older rows may not
    if isinstance(value, datetime) and value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value


class _Row(BaseModel):
    """Common behaviour for rows read from the store"""

    @field_validator('*', mode='after')
    @classmethod
    def _localize_datetimes(cls, value):
        return _as_utc(value)

    def to_row(self) -> Dict[str, Any]:
        """Serialize for an insert, dropping unset server-side fields"""
        data = self.model_dump(mode='json')
        for key in ('id', 'created_at'):
            if data.get(key) is None:
                data.pop(key, None)
        return data


class Campaign(_Row):
    """One bulk email send request"""
    id: Optional[str] = None
    subject: str
    content: str
    status: CampaignStatus = CampaignStatus.DRAFT
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE
    target_config: Optional[Dict[str, Any]] = None
    recurring_config: Optional[Dict[str, Any]] = None
    template_id: Optional[str] = None
    sent_by: Optional[str] = None
    recipient_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    open_count: int = 0
    total_batches: Optional[int] = None
    created_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion_time: Optional[datetime] = None

    @field_validator('status', 'schedule_type', mode='before')
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator('recipient_count', 'sent_count', 'failed_count',
                     'skipped_count', 'open_count', mode='before')
    @classmethod
    def _null_counter(cls, value):
        return 0 if value is None else value


class EmailBatch(_Row):
    """A time-boxed slice of a campaign's recipients"""
    id: Optional[str] = None
    campaign_id: str
    batch_number: int = 1
    total_batches: int = 1
    scheduled_time: Optional[datetime] = None
    status: BatchStatus = BatchStatus.PENDING
    recipient_count: Optional[int] = None
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    estimated_completion_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator('status', mode='before')
    @classmethod
    def _normalize_status(cls, value):
        # legacy rows were written as PENDING / COMPLETED
        return value.lower() if isinstance(value, str) else value

    @field_validator('batch_number', 'total_batches', mode='before')
    @classmethod
    def _default_number(cls, value):
        return 1 if value is None else value

    @field_validator('sent_count', 'failed_count', 'skipped_count', mode='before')
    @classmethod
    def _null_counter(cls, value):
        return 0 if value is None else value

    @property
    def processed_count(self) -> int:
        return self.sent_count + self.failed_count + self.skipped_count


class EmailRecipient(_Row):
    """One (campaign, address) delivery unit"""
    id: Optional[str] = None
    campaign_id: str
    batch_id: Optional[str] = None
    recipient_id: Optional[str] = None
    recipient_email: str
    status: RecipientStatus = RecipientStatus.PENDING
    unsubscribe_token: Optional[str] = None
    sent_at: Optional[datetime] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    opened: bool = False
    opened_at: Optional[datetime] = None
    open_count: int = 0

    @field_validator('status', mode='before')
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator('retry_count', 'open_count', mode='before')
    @classmethod
    def _null_counter(cls, value):
        return 0 if value is None else value

    @field_validator('opened', mode='before')
    @classmethod
    def _null_flag(cls, value):
        return bool(value)


class UnsubscribeToken(_Row):
    token: str
    email: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
