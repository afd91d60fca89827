# filename: campaign_manager.py

from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .auth import Actor, require_admin
from .batch_scheduler import BatchScheduler
from .config import DeliverySettings, load_settings
from .delivery_worker import BatchResult, DeliveryWorker
from .exceptions import InvalidCampaignRequest, InvalidTransition, NotFound, RateLimitExceeded
from .lib.supabase_client import get_store
from .models.campaign import BatchStatus, Campaign, CampaignStatus, RecipientStatus, ScheduleType
from .models.target import dump_target_config, parse_target_config
from .quota_tracker import QuotaStatus, QuotaTracker
from .recipient_resolver import RecipientResolver
from .state_machine import campaign_action_target, transition_batch
from .utils.time_utils import format_datetime, utc_now

logger = logging.getLogger(__name__)

DUPLICATE_SUFFIX = ' (Kopie)'


@dataclass
class StartResult:
    campaign_id: str
    status: str
    recipient_count: int = 0
    pending_count: int = 0
    immediate: bool = False
    batch_id: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    total_batches: int = 0
    estimated_completion_time: Optional[datetime] = None
    batch_result: Optional[BatchResult] = None
    message: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'campaign_id': self.campaign_id,
            'status': self.status,
            'recipient_count': self.recipient_count,
            'pending_count': self.pending_count,
            'immediate': self.immediate,
            'batch_id': self.batch_id,
            'scheduled_time': format_datetime(self.scheduled_time),
            'total_batches': self.total_batches,
            'estimated_completion_time': format_datetime(self.estimated_completion_time),
            'batch_result': self.batch_result.to_dict() if self.batch_result else None,
            'message': self.message,
        }


@dataclass
class CampaignStats:
    campaign_id: str
    status: str
    recipient_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    pending_count: int
    open_count: int
    batches: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'campaign_id': self.campaign_id,
            'status': self.status,
            'recipient_count': self.recipient_count,
            'sent_count': self.sent_count,
            'failed_count': self.failed_count,
            'skipped_count': self.skipped_count,
            'pending_count': self.pending_count,
            'open_count': self.open_count,
            'batches': self.batches,
        }


class CampaignManager:
    """
    Admin-facing campaign actions. Every public method takes the acting
    user first and checks it before touching any state.
    """

    def __init__(self, store=None, settings: Optional[DeliverySettings] = None,
                 transport=None, clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store if store is not None else get_store()
        self._settings = settings
        self.clock = clock
        self.worker = DeliveryWorker(self.store, settings=settings, transport=transport,
                                     clock=clock, sleep=sleep)
        self.resolver = RecipientResolver(self.store)

    @property
    def settings(self) -> DeliverySettings:
        if self._settings is None:
            return load_settings(self.store)
        return self._settings

    def _get_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        return campaign

    def _set_status(self, campaign: Campaign, target: CampaignStatus,
                    extra: Optional[Dict[str, Any]] = None) -> Campaign:
        data = {'status': target.value}
        data.update(extra or {})
        if not self.store.update_campaign(campaign.id, data, expected_status=campaign.status.value):
            # someone else moved the campaign in the meantime
            current = self._get_campaign(campaign.id)
            raise InvalidTransition('campaign', current.status.value, target.value)
        logger.info(f"Campaign {campaign.id}: {campaign.status.value} -> {target.value}")
        return self._get_campaign(campaign.id)

    # --- creation --------------------------------------------------------

    def create_campaign(self, actor: Actor, subject: str, content: str,
                        target_config: Optional[Dict[str, Any]] = None,
                        schedule_type: str = ScheduleType.IMMEDIATE.value,
                        scheduled_at: Optional[datetime] = None,
                        recurring_config: Optional[Dict[str, Any]] = None,
                        template_id: Optional[str] = None) -> Campaign:
        require_admin(actor)
        target = parse_target_config(target_config)
        schedule_type = ScheduleType(schedule_type)

        if schedule_type == ScheduleType.SCHEDULED and scheduled_at is None:
            raise InvalidCampaignRequest("Scheduled campaigns need a scheduled_at time")
        if schedule_type == ScheduleType.RECURRING and not recurring_config:
            raise InvalidCampaignRequest("Recurring campaigns need a recurring_config")

        quota = QuotaTracker(self.store, self.settings, clock=self.clock)
        if not quota.check_user_quota(actor.user_id):
            status = quota.get_quota_status()
            raise RateLimitExceeded(
                f"Campaign limit of {self.settings.max_campaigns_per_user_window} per window reached",
                reset_time=status.reset_time,
            )

        campaign = self.store.insert_campaign(Campaign(
            subject=subject,
            content=content,
            status=CampaignStatus.DRAFT,
            schedule_type=schedule_type,
            target_config=dump_target_config(target),
            recurring_config=recurring_config,
            template_id=template_id,
            sent_by=actor.user_id,
            scheduled_at=scheduled_at,
        ))
        logger.info(f"Created campaign {campaign.id} ({schedule_type.value}, {target.segment_type})")
        return campaign

    # --- lifecycle actions -----------------------------------------------

    def schedule(self, actor: Actor, campaign_id: str) -> Campaign:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        target = campaign_action_target('schedule', campaign.status)
        if campaign.schedule_type == ScheduleType.IMMEDIATE:
            raise InvalidCampaignRequest("Immediate campaigns cannot be scheduled")
        if campaign.schedule_type == ScheduleType.SCHEDULED and campaign.scheduled_at is None:
            raise InvalidCampaignRequest("No time given for the scheduled campaign")
        return self._set_status(campaign, target)

    def start(self, actor: Actor, campaign_id: str, process_inline: bool = False,
              max_to_send: int = 50) -> StartResult:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        target = campaign_action_target('start', campaign.status)

        if campaign.status == CampaignStatus.PAUSED:
            # its batches are still there, the next run picks them up
            campaign = self._set_status(campaign, target)
            return StartResult(campaign_id=campaign.id, status=campaign.status.value,
                               recipient_count=campaign.recipient_count,
                               message="Campaign resumed")

        # fail on a broken target before the status changes
        parse_target_config(campaign.target_config)
        campaign = self._set_status(campaign, target)
        return self._launch(campaign, process_inline, max_to_send)

    def _launch(self, campaign: Campaign, process_inline: bool, max_to_send: int) -> StartResult:
        """Resolve recipients and create the first batch of an active campaign"""
        settings = self.settings
        self.resolver.resolve_recipients(campaign.id, campaign.target_config)
        total = self.store.count_recipients(campaign.id)
        pending = self.store.count_recipients(campaign.id, RecipientStatus.PENDING.value)

        if pending == 0:
            status = self.worker.finalize_campaign(campaign.id)
            logger.info(f"Campaign {campaign.id} has no pending recipients")
            return StartResult(campaign_id=campaign.id,
                               status=(status or campaign.status).value,
                               recipient_count=total, message="No recipients to send to")

        scheduler = BatchScheduler(self.store, settings, clock=self.clock)
        quota = QuotaTracker(self.store, settings, clock=self.clock).check_quota(pending)

        if quota.can_send_now:
            batch = scheduler.create_immediate_batch(campaign.id, pending)
            self.store.update_campaign(campaign.id, {
                'total_batches': batch.total_batches,
                'estimated_completion_time': format_datetime(batch.scheduled_time),
            })
            result = StartResult(campaign_id=campaign.id, status=CampaignStatus.ACTIVE.value,
                                 recipient_count=total, pending_count=pending, immediate=True,
                                 batch_id=batch.id, scheduled_time=batch.scheduled_time,
                                 total_batches=batch.total_batches,
                                 estimated_completion_time=batch.scheduled_time,
                                 message="Campaign started")
            if process_inline:
                result.batch_result = self.worker.process_batch(batch.id, max_to_send=max_to_send)
                result.status = self._get_campaign(campaign.id).status.value
            return result

        plan = scheduler.schedule_batches(campaign.id, pending)
        logger.info(f"Quota allows {quota.remaining} of {pending} messages now, "
                    f"campaign {campaign.id} deferred to {format_datetime(plan.scheduled_time)}")
        return StartResult(campaign_id=campaign.id, status=CampaignStatus.ACTIVE.value,
                           recipient_count=total, pending_count=pending, immediate=False,
                           batch_id=plan.first_batch_id, scheduled_time=plan.scheduled_time,
                           total_batches=plan.total_batches,
                           estimated_completion_time=plan.estimated_completion_time,
                           message="Hourly quota reached, campaign scheduled in batches")

    def schedule_or_start(self, actor: Actor, campaign_id: str, process_inline: bool = False,
                          max_to_send: int = 50):
        """Schedule future campaigns, start everything else"""
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        in_future = campaign.scheduled_at is not None and campaign.scheduled_at > self.clock()
        if campaign.schedule_type == ScheduleType.SCHEDULED and in_future:
            return self.schedule(actor, campaign_id)
        return self.start(actor, campaign_id, process_inline=process_inline, max_to_send=max_to_send)

    def pause(self, actor: Actor, campaign_id: str) -> Campaign:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        return self._set_status(campaign, campaign_action_target('pause', campaign.status))

    def resume(self, actor: Actor, campaign_id: str) -> Campaign:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        return self._set_status(campaign, campaign_action_target('resume', campaign.status))

    def cancel(self, actor: Actor, campaign_id: str) -> Campaign:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        cancelled = self._set_status(campaign, campaign_action_target('cancel', campaign.status))
        self._fail_pending_batches(cancelled.id)
        return cancelled

    def _fail_pending_batches(self, campaign_id: str) -> int:
        """Retire parked batches so a restart plans from a clean slate"""
        target = transition_batch(BatchStatus.PENDING, BatchStatus.FAILED)
        failed = 0
        for batch in self.store.list_batches(campaign_id):
            if batch.status != BatchStatus.PENDING:
                continue
            if self.store.update_batch(batch.id, {'status': target.value},
                                       expected_status=BatchStatus.PENDING.value):
                failed += 1
        if failed:
            logger.info(f"Campaign {campaign_id} cancelled, {failed} pending batches marked failed")
        return failed

    def duplicate(self, actor: Actor, campaign_id: str) -> Campaign:
        require_admin(actor)
        source = self._get_campaign(campaign_id)
        copy = self.store.insert_campaign(Campaign(
            subject=f"{source.subject}{DUPLICATE_SUFFIX}",
            content=source.content,
            status=CampaignStatus.DRAFT,
            schedule_type=source.schedule_type,
            target_config=source.target_config,
            recurring_config=source.recurring_config,
            template_id=source.template_id,
            sent_by=actor.user_id or source.sent_by,
        ))
        logger.info(f"Duplicated campaign {source.id} as {copy.id}")
        return copy

    def delete_campaign(self, actor: Actor, campaign_id: str) -> None:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        self.store.delete_campaign(campaign.id)
        logger.info(f"Deleted campaign {campaign.id} ({campaign.status.value})")

    # --- delivery and reporting ------------------------------------------

    def process_batch(self, actor: Actor, batch_id: str, max_to_send: int = 50) -> BatchResult:
        require_admin(actor)
        max_to_send = min(max_to_send, self.settings.max_per_invocation)
        return self.worker.process_batch(batch_id, max_to_send=max_to_send)

    def get_quota_status(self, actor: Actor) -> QuotaStatus:
        require_admin(actor)
        return QuotaTracker(self.store, self.settings, clock=self.clock).get_quota_status()

    def get_campaign_stats(self, actor: Actor, campaign_id: str) -> CampaignStats:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        counts = {status.value: self.store.count_recipients(campaign.id, status.value)
                  for status in RecipientStatus}
        batches = [{
            'id': batch.id,
            'batch_number': batch.batch_number,
            'total_batches': batch.total_batches,
            'status': batch.status.value,
            'scheduled_time': format_datetime(batch.scheduled_time),
            'recipient_count': batch.recipient_count,
            'sent_count': batch.sent_count,
            'failed_count': batch.failed_count,
            'skipped_count': batch.skipped_count,
        } for batch in self.store.list_batches(campaign.id)]
        return CampaignStats(
            campaign_id=campaign.id,
            status=campaign.status.value,
            recipient_count=self.store.count_recipients(campaign.id),
            sent_count=counts[RecipientStatus.SENT.value],
            failed_count=counts[RecipientStatus.FAILED.value],
            skipped_count=counts[RecipientStatus.SKIPPED.value],
            pending_count=counts[RecipientStatus.PENDING.value] + counts[RecipientStatus.SENDING.value],
            open_count=campaign.open_count,
            batches=batches,
        )

    def get_recipient_failures(self, actor: Actor, campaign_id: str) -> List[Dict[str, Any]]:
        require_admin(actor)
        campaign = self._get_campaign(campaign_id)
        return [{
            'id': recipient.id,
            'recipient_email': recipient.recipient_email,
            'error_message': recipient.error_message,
            'retry_count': recipient.retry_count,
            'last_attempt_at': format_datetime(recipient.last_attempt_at),
        } for recipient in self.store.list_recipients(campaign.id, RecipientStatus.FAILED.value)]
