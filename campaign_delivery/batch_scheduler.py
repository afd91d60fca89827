# filename: batch_scheduler.py

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Callable, Optional

from .config import DeliverySettings
from .models.campaign import BatchStatus, EmailBatch
from .utils.time_utils import format_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass
class BatchPlan:
    first_batch_id: str
    scheduled_time: datetime
    total_batches: int
    estimated_completion_time: datetime
    batch_number: int


class BatchScheduler:
    """
    Splits a campaign into batch_size slices sent batch_interval apart.
    Only the next batch is ever written; the delivery worker asks for the
    following one when a batch completes with recipients still pending.
    """

    def __init__(self, store, settings: DeliverySettings,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.settings = settings
        self.clock = clock

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.settings.batch_interval_seconds)

    def total_batches_for(self, recipient_count: int) -> int:
        return math.ceil(max(0, recipient_count) / self.settings.batch_size)

    def _next_slot(self, campaign_id: str):
        """(scheduled_time, batch_number) for a new batch after any existing one"""
        now = self.clock()
        try:
            last_batch = self.store.get_latest_batch(campaign_id)
        except Exception as e:
            logger.error(f"Error fetching existing batches for campaign {campaign_id}: {str(e)}")
            last_batch = None

        if last_batch is None:
            return now + self.interval, 1

        start = now + self.interval
        if last_batch.scheduled_time is not None:
            start = max(start, last_batch.scheduled_time + self.interval)
        return start, last_batch.batch_number + 1

    def _insert(self, campaign_id: str, scheduled_time: datetime, batch_number: int,
                total_batches: int, recipient_count: int,
                estimated_completion_time: Optional[datetime]) -> EmailBatch:
        batch = EmailBatch(
            campaign_id=campaign_id,
            batch_number=batch_number,
            total_batches=total_batches,
            scheduled_time=scheduled_time,
            status=BatchStatus.PENDING,
            recipient_count=recipient_count,
            estimated_completion_time=estimated_completion_time,
        )
        return self.store.insert_batch(batch)

    def schedule_batches(self, campaign_id: str, recipient_count: int) -> BatchPlan:
        # a written batch always counts itself
        total_batches = max(1, self.total_batches_for(recipient_count))
        logger.info(f"Creating {total_batches} batches for {recipient_count} recipients "
                    f"({self.settings.batch_size} per batch)")
        if total_batches > self.settings.max_batch_count:
            logger.warning(f"Campaign {campaign_id} needs {total_batches} batches, "
                           f"more than the configured maximum of {self.settings.max_batch_count}")

        scheduled_time, batch_number = self._next_slot(campaign_id)
        estimated_completion_time = scheduled_time + (total_batches - 1) * self.interval

        batch = self._insert(
            campaign_id, scheduled_time, batch_number, total_batches,
            min(recipient_count, self.settings.batch_size), estimated_completion_time,
        )
        logger.info(f"Scheduled batch {batch_number} of campaign {campaign_id} for "
                    f"{format_datetime(scheduled_time)}, estimated completion "
                    f"{format_datetime(estimated_completion_time)}")

        try:
            self.store.update_campaign(campaign_id, {
                'total_batches': total_batches,
                'estimated_completion_time': format_datetime(estimated_completion_time),
            })
        except Exception as e:
            logger.error(f"Error updating batch totals for campaign {campaign_id}: {str(e)}")

        return BatchPlan(
            first_batch_id=batch.id,
            scheduled_time=scheduled_time,
            total_batches=total_batches,
            estimated_completion_time=estimated_completion_time,
            batch_number=batch_number,
        )

    def create_immediate_batch(self, campaign_id: str, recipient_count: int) -> EmailBatch:
        """A batch due right away, used when the quota can absorb the whole campaign"""
        now = self.clock()
        last_batch = self.store.get_latest_batch(campaign_id)
        batch_number = last_batch.batch_number + 1 if last_batch else 1
        total_batches = batch_number - 1 + max(1, self.total_batches_for(recipient_count))
        batch = self._insert(
            campaign_id, now, batch_number, total_batches, recipient_count, now,
        )
        logger.info(f"Created immediate batch {batch.id} for campaign {campaign_id} "
                    f"with {recipient_count} recipients")
        return batch

    def schedule_follow_up(self, batch: EmailBatch, remaining: int) -> EmailBatch:
        """Next batch in the sequence once `batch` has completed with recipients left"""
        scheduled_time, batch_number = self._next_slot(batch.campaign_id)
        batches_left = max(1, self.total_batches_for(remaining))
        total_batches = max(batch.total_batches, batch_number + batches_left - 1)
        estimated_completion_time = scheduled_time + (batches_left - 1) * self.interval

        follow_up = self._insert(
            batch.campaign_id, scheduled_time, batch_number, total_batches,
            min(remaining, self.settings.batch_size), estimated_completion_time,
        )
        logger.info(f"Scheduled follow-up batch {batch_number}/{total_batches} for campaign "
                    f"{batch.campaign_id} at {format_datetime(scheduled_time)} "
                    f"({remaining} recipients pending)")
        return follow_up
