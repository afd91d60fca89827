# filename: delivery_worker.py

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

from .batch_scheduler import BatchScheduler
from .config import DeliverySettings, load_settings
from .exceptions import ConfigurationError, InvalidTransition, NotFound
from .lib.smtp_based_functions import SmtpTransport
from .models.campaign import (
    BatchStatus,
    Campaign,
    CampaignStatus,
    EmailBatch,
    EmailRecipient,
    HELD_CAMPAIGN_STATUSES,
    RecipientStatus,
    ScheduleType,
    UnsubscribeToken,
)
from .quota_tracker import QuotaTracker
from .retry_policy import RetryPolicy
from .state_machine import (
    final_campaign_status,
    transition_batch,
    transition_campaign,
    transition_recipient,
)
from .utils.personalization import build_message
from .utils.time_utils import format_datetime, utc_now

logger = logging.getLogger(__name__)

UNSUBSCRIBE_TOKEN_TTL = timedelta(days=365)
MAX_ERROR_LENGTH = 500
UNSUBSCRIBED_REASON = 'unsubscribed'


@dataclass
class BatchResult:
    ok: bool
    message: str
    batch_id: str
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    ran: bool = True
    batch_status: Optional[str] = None
    follow_up_batch_id: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.skipped

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['processed'] = self.processed
        return data


class DeliveryWorker:
    """
    Sends one batch's worth of pending recipients, one message at a time.

    Every entry into a batch goes through a conditional pending -> processing
    update, and every recipient through pending -> sending, so two workers
    started on the same batch never deliver the same row twice.
    """

    def __init__(self, store, settings: Optional[DeliverySettings] = None,
                 transport=None, retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = utc_now,
                 sleep: Callable[[float], None] = time.sleep,
                 token_factory: Callable[[], str] = lambda: secrets.token_hex(32)):
        self.store = store
        self.settings = settings
        self.transport = transport
        self.retry_policy = retry_policy
        self.clock = clock
        self.sleep = sleep
        self.token_factory = token_factory

    # --- wiring ----------------------------------------------------------

    def _load_settings(self) -> DeliverySettings:
        # admin settings can change between runs, so they are read per batch
        return self.settings if self.settings is not None else load_settings(self.store)

    def _open_transport(self, settings: DeliverySettings):
        if self.transport is not None:
            return self.transport, False
        return SmtpTransport.from_settings(settings), True

    def _retry_policy(self, settings: DeliverySettings) -> RetryPolicy:
        if self.retry_policy is not None:
            return self.retry_policy
        return RetryPolicy(max_attempts=settings.max_retries, sleep=self.sleep)

    # --- status helpers --------------------------------------------------

    def _move_batch(self, batch: EmailBatch, current: BatchStatus, target: BatchStatus,
                    extra: Optional[Dict[str, Any]] = None) -> bool:
        target = transition_batch(current, target)
        data = {'status': target.value}
        data.update(extra or {})
        return self.store.update_batch(batch.id, data, expected_status=current.value)

    def _move_recipient(self, recipient: EmailRecipient, current: RecipientStatus,
                        target: RecipientStatus, extra: Optional[Dict[str, Any]] = None) -> bool:
        target = transition_recipient(current, target)
        data = {'status': target.value}
        data.update(extra or {})
        return self.store.update_recipient(recipient.id, data, expected_status=current.value)

    def _release_batch(self, batch: EmailBatch):
        try:
            self._move_batch(batch, BatchStatus.PROCESSING, BatchStatus.PENDING)
        except Exception as e:
            logger.error(f"Error releasing batch {batch.id} back to pending: {str(e)}")

    def _pending_count(self, campaign_id: str) -> int:
        return self.store.count_recipients(campaign_id, RecipientStatus.PENDING.value)

    # --- entry point -----------------------------------------------------

    def process_batch(self, batch_id: str, max_to_send: int = 50) -> BatchResult:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found")

        if batch.status != BatchStatus.PENDING:
            logger.info(f"Batch {batch_id} is already {batch.status.value}, skipping")
            return BatchResult(ok=True, ran=False, batch_id=batch_id,
                               message=f"Batch is already {batch.status.value}",
                               batch_status=batch.status.value)

        campaign = self.store.get_campaign(batch.campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign {batch.campaign_id} for batch {batch_id} not found")

        if campaign.status in HELD_CAMPAIGN_STATUSES:
            logger.info(f"Campaign {campaign.id} is {campaign.status.value}, leaving batch {batch_id} pending")
            return BatchResult(ok=True, ran=False, batch_id=batch_id,
                               message=f"Campaign is {campaign.status.value}",
                               batch_status=batch.status.value)

        if not self._move_batch(batch, BatchStatus.PENDING, BatchStatus.PROCESSING):
            logger.info(f"Batch {batch_id} was claimed by another worker")
            return BatchResult(ok=True, ran=False, batch_id=batch_id,
                               message="Batch is already being processed",
                               batch_status=BatchStatus.PROCESSING.value)

        try:
            settings = self._load_settings()
            transport, owns_transport = self._open_transport(settings)
        except ConfigurationError as e:
            logger.error(f"Batch {batch_id} failed: {str(e)}")
            self._move_batch(batch, BatchStatus.PROCESSING, BatchStatus.FAILED)
            raise

        try:
            return self._run(batch, campaign, settings, transport, max_to_send)
        except Exception as e:
            logger.error(f"Batch processing error for {batch_id}: {str(e)}")
            self._release_batch(batch)
            raise
        finally:
            if owns_transport:
                transport.close()

    # --- the send loop ---------------------------------------------------

    def _run(self, batch: EmailBatch, campaign: Campaign, settings: DeliverySettings,
             transport, max_to_send: int) -> BatchResult:
        quota = QuotaTracker(self.store, settings, clock=self.clock)

        requested = max(0, int(max_to_send))
        limit = min(requested, settings.max_per_invocation)
        limit = min(limit, quota.check_quota(limit).remaining)

        if limit <= 0:
            self._move_batch(batch, BatchStatus.PROCESSING, BatchStatus.PENDING)
            remaining = self._pending_count(campaign.id)
            logger.info(f"Hourly quota exhausted, batch {batch.id} will continue next run "
                        f"({remaining} recipients pending)")
            return BatchResult(ok=True, batch_id=batch.id, remaining=remaining,
                               message="Hourly quota exhausted, will continue next run",
                               batch_status=BatchStatus.PENDING.value)

        recipients = self.store.fetch_pending_recipients(campaign.id, limit)
        if not recipients:
            self._move_batch(batch, BatchStatus.PROCESSING, BatchStatus.COMPLETED)
            self.finalize_campaign(campaign.id)
            return BatchResult(ok=True, batch_id=batch.id,
                               message="No pending recipients found for this batch",
                               batch_status=BatchStatus.COMPLETED.value)

        logger.info(f"[Campaign {campaign.id}] Processing batch {batch.batch_number}/{batch.total_batches} "
                    f"with {len(recipients)} recipients")

        unsubscribed = self.store.unsubscribed_among(r.recipient_email for r in recipients)
        try:
            names = self.store.get_user_names([r.recipient_id for r in recipients if r.recipient_id])
        except Exception as e:
            logger.error(f"Error loading recipient names, using fallback: {str(e)}")
            names = {}

        retry_policy = self._retry_policy(settings)
        sent = failed = skipped = 0

        try:
            for recipient in recipients:
                if recipient.recipient_email.lower() in unsubscribed:
                    if self._skip_unsubscribed(recipient):
                        skipped += 1
                    continue

                outcome = self._deliver(recipient, batch, campaign, settings, transport,
                                        retry_policy, names.get(recipient.recipient_id))
                if outcome == RecipientStatus.SENT:
                    sent += 1
                elif outcome == RecipientStatus.FAILED:
                    failed += 1
        finally:
            # count what went out even when the loop is cut short
            try:
                self.store.increment_batch_counters(batch.id, sent=sent, failed=failed, skipped=skipped)
            except Exception as e:
                logger.error(f"Error updating counters of batch {batch.id}: {str(e)}")

        remaining = self._pending_count(campaign.id)
        resolved = sent + failed + skipped
        slice_done = batch.recipient_count is None \
            or batch.processed_count + resolved >= batch.recipient_count
        if resolved == len(recipients) and (slice_done or remaining == 0):
            new_status = BatchStatus.COMPLETED
        else:
            new_status = BatchStatus.PENDING
        self._move_batch(batch, BatchStatus.PROCESSING, new_status)

        follow_up_id = None
        if new_status == BatchStatus.COMPLETED and remaining > 0:
            follow_up_id = self._schedule_follow_up(batch, settings, remaining)

        self.finalize_campaign(campaign.id)

        logger.info(f"[Campaign {campaign.id}] Batch {batch.id}: {sent} sent, {failed} failed, "
                    f"{skipped} skipped, {remaining} pending")
        return BatchResult(ok=True, message="Batch processing completed", batch_id=batch.id,
                           sent=sent, failed=failed, skipped=skipped, remaining=remaining,
                           batch_status=new_status.value, follow_up_batch_id=follow_up_id)

    def _skip_unsubscribed(self, recipient: EmailRecipient) -> bool:
        logger.info(f"Skipping unsubscribed recipient: {recipient.recipient_email}")
        try:
            return self._move_recipient(recipient, RecipientStatus.PENDING, RecipientStatus.SKIPPED,
                                        {'error_message': UNSUBSCRIBED_REASON})
        except Exception as e:
            logger.error(f"Error marking {recipient.recipient_email} as skipped: {str(e)}")
            return True

    def _ensure_unsubscribe_token(self, recipient: EmailRecipient) -> str:
        if recipient.unsubscribe_token:
            return recipient.unsubscribe_token

        token = self.token_factory()
        try:
            self.store.insert_unsubscribe_token(UnsubscribeToken(
                token=token,
                email=recipient.recipient_email,
                expires_at=self.clock() + UNSUBSCRIBE_TOKEN_TTL,
            ))
            self.store.update_recipient(recipient.id, {'unsubscribe_token': token})
        except Exception as e:
            logger.error(f"Error storing unsubscribe token for {recipient.recipient_email}: {str(e)}")
        return token

    def _deliver(self, recipient: EmailRecipient, batch: EmailBatch, campaign: Campaign,
                 settings: DeliverySettings, transport, retry_policy: RetryPolicy,
                 name: Optional[str]) -> Optional[RecipientStatus]:
        try:
            claimed = self._move_recipient(recipient, RecipientStatus.PENDING, RecipientStatus.SENDING, {
                'batch_id': batch.id,
                'last_attempt_at': format_datetime(self.clock()),
            })
        except Exception as e:
            logger.error(f"Error claiming recipient {recipient.id}: {str(e)}")
            return None
        if not claimed:
            logger.info(f"Recipient {recipient.id} is no longer pending, skipping")
            return None

        token = self._ensure_unsubscribe_token(recipient)
        message = build_message(
            campaign.content,
            base_url=settings.base_url,
            recipient_id=recipient.id,
            campaign_id=campaign.id,
            unsubscribe_token=token,
            recipient_name=name,
            name_fallback=settings.name_fallback,
            track_clicks=settings.track_clicks,
        )

        outcome = retry_policy.run(
            lambda: transport.send(recipient.recipient_email, campaign.subject,
                                   message['html'], message['headers']),
            description=f"Sending to {recipient.recipient_email}",
        )

        try:
            if outcome.success:
                self._move_recipient(recipient, RecipientStatus.SENDING, RecipientStatus.SENT, {
                    'sent_at': format_datetime(self.clock()),
                    'retry_count': outcome.failed_attempts,
                    'error_message': None,
                })
            else:
                self._move_recipient(recipient, RecipientStatus.SENDING, RecipientStatus.FAILED, {
                    'error_message': (outcome.error_message or 'Unknown error')[:MAX_ERROR_LENGTH],
                    'retry_count': outcome.attempts,
                })
        except Exception as e:
            # the send itself already happened (or definitively failed)
            logger.error(f"Error recording delivery result for {recipient.recipient_email}: {str(e)}")

        if outcome.success:
            return RecipientStatus.SENT
        logger.error(f"Giving up on {recipient.recipient_email} after {outcome.attempts} attempts: "
                     f"{outcome.error_message}")
        return RecipientStatus.FAILED

    def _schedule_follow_up(self, batch: EmailBatch, settings: DeliverySettings,
                            remaining: int) -> Optional[str]:
        try:
            others = [b for b in self.store.list_batches(batch.campaign_id)
                      if b.id != batch.id and b.status in (BatchStatus.PENDING, BatchStatus.PROCESSING)]
            if others:
                return None
            scheduler = BatchScheduler(self.store, settings, clock=self.clock)
            return scheduler.schedule_follow_up(batch, remaining).id
        except Exception as e:
            logger.error(f"Error scheduling follow-up batch for campaign {batch.campaign_id}: {str(e)}")
            return None

    # --- campaign aggregate ----------------------------------------------

    def refresh_campaign_counters(self, campaign_id: str) -> Dict[str, int]:
        counts = {
            status.value: self.store.count_recipients(campaign_id, status.value)
            for status in (RecipientStatus.SENT, RecipientStatus.FAILED,
                           RecipientStatus.SKIPPED, RecipientStatus.PENDING,
                           RecipientStatus.SENDING)
        }
        counts['total'] = self.store.count_recipients(campaign_id)
        self.store.update_campaign(campaign_id, {
            'recipient_count': counts['total'],
            'sent_count': counts['sent'],
            'failed_count': counts['failed'],
            'skipped_count': counts['skipped'],
        })
        return counts

    def finalize_campaign(self, campaign_id: str) -> Optional[CampaignStatus]:
        """
        Refresh the campaign's aggregate counters and, once nothing is pending
        or in flight, move it to completed, partial or failed. Returns the
        terminal status when the transition happened.
        """
        try:
            counts = self.refresh_campaign_counters(campaign_id)
            if counts['pending'] > 0 or counts['sending'] > 0:
                return None

            campaign = self.store.get_campaign(campaign_id)
            if campaign is None:
                return None
            if campaign.schedule_type == ScheduleType.RECURRING:
                # stays active between runs
                return None
            target = final_campaign_status(counts['sent'], counts['failed'])
            try:
                transition_campaign(campaign.status, target)
            except InvalidTransition as e:
                logger.info(f"Not finalizing campaign {campaign_id}: {str(e)}")
                return None

            if self.store.update_campaign(campaign_id, {
                'status': target.value,
                'completed_at': format_datetime(self.clock()),
            }, expected_status=campaign.status.value):
                logger.info(f"Campaign {campaign_id} finished with status {target.value}")
                return target
        except Exception as e:
            logger.error(f"Error finalizing campaign {campaign_id}: {str(e)}")
        return None
