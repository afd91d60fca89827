# filename: campaign_scheduler.py

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .auth import INTERNAL_ACTOR
from .batch_scheduler import BatchScheduler
from .campaign_manager import CampaignManager
from .config import DeliverySettings
from .delivery_worker import BatchResult
from .models.campaign import Campaign, CampaignStatus, RecipientStatus, ScheduleType
from .state_machine import transition_recipient
from .utils.time_utils import RECURRING_TOLERANCE_MINUTES, format_datetime, is_recurring_due, utc_now

logger = logging.getLogger(__name__)

STUCK_SENDING_MESSAGE = 'Delivery interrupted while sending; not retried to avoid a duplicate'


@dataclass
class DueBatchReport:
    results: List[BatchResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'results': [result.to_dict() for result in self.results],
            'errors': self.errors,
        }


@dataclass
class DueCampaignReport:
    started: List[str] = field(default_factory=list)
    recurring: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'started': self.started, 'recurring': self.recurring, 'errors': self.errors}


class CampaignScheduler:
    """
    Time-driven entry point, meant to be called by cron. Starts campaigns
    whose time has come and works through batches that are due.
    """

    def __init__(self, store=None, settings: Optional[DeliverySettings] = None,
                 transport=None, clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], None] = time.sleep):
        self.manager = CampaignManager(store, settings=settings, transport=transport,
                                       clock=clock, sleep=sleep)
        self.store = self.manager.store
        self.clock = clock

    @property
    def settings(self) -> DeliverySettings:
        return self.manager.settings

    def process_due_batches(self, limit: int = 10, max_to_send: int = 50) -> DueBatchReport:
        report = DueBatchReport()
        now = self.clock()
        batches = self.store.list_due_batches(now, limit)
        logger.info(f"Found {len(batches)} pending batches due at {format_datetime(now)}")

        for batch in batches:
            try:
                result = self.manager.process_batch(INTERNAL_ACTOR, batch.id, max_to_send=max_to_send)
                report.results.append(result)
                logger.info(f"Batch {batch.id}: {result.message}")
            except Exception as e:
                logger.error(f"Error processing batch {batch.id}: {str(e)}")
                report.errors.append({'batch_id': batch.id, 'error': str(e)})
        return report

    def is_recurring_due(self, campaign: Campaign, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        if not is_recurring_due(campaign.recurring_config, now, self.settings.recurring_timezone):
            return False

        # the tolerance window spans several cron ticks; one run per window
        latest = self.store.get_latest_batch(campaign.id)
        guard = timedelta(minutes=2 * RECURRING_TOLERANCE_MINUTES)
        if latest is not None and latest.scheduled_time is not None \
                and now - latest.scheduled_time < guard:
            return False
        return True

    def run_recurring(self, campaign: Campaign) -> Optional[str]:
        """Pick up new recipients of a recurring campaign and queue them right away"""
        self.manager.resolver.resolve_recipients(campaign.id, campaign.target_config)
        pending = self.store.count_recipients(campaign.id, RecipientStatus.PENDING.value)
        if pending == 0:
            logger.info(f"Recurring campaign {campaign.id} has no new recipients")
            return None
        scheduler = BatchScheduler(self.store, self.settings, clock=self.clock)
        batch = scheduler.create_immediate_batch(campaign.id, pending)
        return batch.id

    def start_due_campaigns(self) -> DueCampaignReport:
        report = DueCampaignReport()
        now = self.clock()

        scheduled = self.store.list_campaigns(CampaignStatus.SCHEDULED.value,
                                              schedule_type=ScheduleType.SCHEDULED.value,
                                              scheduled_before=now)
        logger.info(f"{len(scheduled)} scheduled campaigns are due")
        for campaign in scheduled:
            try:
                self.manager.start(INTERNAL_ACTOR, campaign.id)
                report.started.append(campaign.id)
            except Exception as e:
                logger.error(f"Error starting campaign {campaign.id}: {str(e)}")
                report.errors.append({'campaign_id': campaign.id, 'error': str(e)})

        recurring = self.store.list_campaigns(CampaignStatus.ACTIVE.value,
                                              schedule_type=ScheduleType.RECURRING.value)
        for campaign in recurring:
            try:
                if not self.is_recurring_due(campaign, now):
                    continue
                self.run_recurring(campaign)
                report.recurring.append(campaign.id)
            except Exception as e:
                logger.error(f"Error running recurring campaign {campaign.id}: {str(e)}")
                report.errors.append({'campaign_id': campaign.id, 'error': str(e)})

        logger.info(f"Started {len(report.started)} scheduled and {len(report.recurring)} recurring campaigns")
        return report

    def sweep_stuck_recipients(self) -> int:
        """
        Fail recipients left in 'sending' by a worker that died mid-send.
        The message may or may not have gone out, so they are not requeued.
        """
        cutoff = self.clock() - timedelta(minutes=self.settings.stuck_sending_minutes)
        stuck = self.store.list_stuck_recipients(cutoff)
        swept = 0
        campaigns = set()
        for recipient in stuck:
            target = transition_recipient(RecipientStatus.SENDING, RecipientStatus.FAILED)
            try:
                if self.store.update_recipient(recipient.id, {
                    'status': target.value,
                    'error_message': STUCK_SENDING_MESSAGE,
                }, expected_status=RecipientStatus.SENDING.value):
                    swept += 1
                    campaigns.add(recipient.campaign_id)
            except Exception as e:
                logger.error(f"Error failing stuck recipient {recipient.id}: {str(e)}")

        for campaign_id in campaigns:
            self.manager.worker.finalize_campaign(campaign_id)
        if swept:
            logger.warning(f"Marked {swept} recipients stuck in 'sending' as failed")
        return swept

    def tick(self, limit: int = 10, max_to_send: int = 50) -> Dict[str, Any]:
        campaigns = self.start_due_campaigns()
        batches = self.process_due_batches(limit=limit, max_to_send=max_to_send)
        swept = self.sweep_stuck_recipients()
        return {
            'campaigns': campaigns.to_dict(),
            'batches': batches.to_dict(),
            'swept': swept,
        }
