import os
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from supabase import create_client, Client

from ..models.campaign import (
    BatchStatus,
    Campaign,
    EmailBatch,
    EmailRecipient,
    HELD_CAMPAIGN_STATUSES,
    RecipientStatus,
    UnsubscribeToken,
)

logger = logging.getLogger(__name__)

CAMPAIGNS = 'email_campaigns'
BATCHES = 'email_batches'
RECIPIENTS = 'email_recipients'
UNSUBSCRIBE_TOKENS = 'unsubscribe_tokens'
UNSUBSCRIBED = 'unsubscribed_emails'
LINK_CLICKS = 'email_link_clicks'
USERS = 'users'
USER_TAGS = 'user_tags'
SYSTEM_SETTINGS = 'system_settings'

PAGE_SIZE = 1000


def _iso(value: datetime) -> str:
    return value.isoformat()


class SupabaseStore:
    """
    Persistence for campaigns, batches and recipients on top of Supabase.
    Status changes that must not race go through conditional updates
    (`expected_status`), which PostgREST applies as a single UPDATE ... WHERE.
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            url = os.environ.get("SUPABASE_URL")
            key = os.environ.get("SUPABASE_KEY")
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")
            client = create_client(url, key)
        self.client: Client = client

    # --- generic helpers -------------------------------------------------

    def _select_all(self, query_factory) -> List[Dict]:
        """Page through a select; PostgREST caps single responses"""
        rows = []
        start = 0
        while True:
            result = query_factory().range(start, start + PAGE_SIZE - 1).execute()
            page = result.data or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    def _count(self, query) -> int:
        result = query.execute()
        return result.count or 0

    def _conditional_update(self, table: str, uid: str, data: Dict[str, Any],
                            expected_status: Optional[str] = None) -> bool:
        query = self.client.from_(table).update(data).eq("id", uid)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        result = query.execute()
        return bool(result.data)

    # --- campaigns -------------------------------------------------------

    def insert_campaign(self, campaign: Campaign) -> Campaign:
        result = self.client.from_(CAMPAIGNS).insert(campaign.to_row()).execute()
        return Campaign.model_validate(result.data[0])

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        result = self.client.from_(CAMPAIGNS).select("*").eq("id", campaign_id).execute()
        return Campaign.model_validate(result.data[0]) if result.data else None

    def update_campaign(self, campaign_id: str, data: Dict[str, Any],
                        expected_status: Optional[str] = None) -> bool:
        return self._conditional_update(CAMPAIGNS, campaign_id, data, expected_status)

    def list_campaigns(self, status: str, schedule_type: Optional[str] = None,
                       scheduled_before: Optional[datetime] = None) -> List[Campaign]:
        query = self.client.from_(CAMPAIGNS).select("*").eq("status", status)
        if schedule_type is not None:
            query = query.eq("schedule_type", schedule_type)
        if scheduled_before is not None:
            query = query.lte("scheduled_at", _iso(scheduled_before))
        result = query.execute()
        return [Campaign.model_validate(row) for row in result.data or []]

    def count_campaigns_by_user_since(self, user_id: str, since: datetime) -> int:
        return self._count(
            self.client.from_(CAMPAIGNS)
            .select("id", count="exact", head=True)
            .eq("sent_by", user_id)
            .gte("created_at", _iso(since))
        )

    def delete_campaign(self, campaign_id: str) -> None:
        """Delete a campaign with everything it owns"""
        self.client.from_(LINK_CLICKS).delete().eq("campaign_id", campaign_id).execute()
        self.client.from_(RECIPIENTS).delete().eq("campaign_id", campaign_id).execute()
        self.client.from_(BATCHES).delete().eq("campaign_id", campaign_id).execute()
        self.client.from_(CAMPAIGNS).delete().eq("id", campaign_id).execute()

    def increment_campaign_opens(self, campaign_id: str) -> None:
        # read-modify-write; open counts are statistics, a lost increment is tolerated
        result = self.client.from_(CAMPAIGNS).select("open_count").eq("id", campaign_id).execute()
        if not result.data:
            return
        current = result.data[0].get("open_count") or 0
        self.client.from_(CAMPAIGNS).update({"open_count": current + 1}).eq("id", campaign_id).execute()

    # --- batches ---------------------------------------------------------

    def insert_batch(self, batch: EmailBatch) -> EmailBatch:
        result = self.client.from_(BATCHES).insert(batch.to_row()).execute()
        return EmailBatch.model_validate(result.data[0])

    def get_batch(self, batch_id: str) -> Optional[EmailBatch]:
        result = self.client.from_(BATCHES).select("*").eq("id", batch_id).execute()
        return EmailBatch.model_validate(result.data[0]) if result.data else None

    def get_latest_batch(self, campaign_id: str) -> Optional[EmailBatch]:
        result = self.client.from_(BATCHES) \
            .select("*") \
            .eq("campaign_id", campaign_id) \
            .order("batch_number", desc=True) \
            .limit(1) \
            .execute()
        return EmailBatch.model_validate(result.data[0]) if result.data else None

    def list_batches(self, campaign_id: str) -> List[EmailBatch]:
        result = self.client.from_(BATCHES) \
            .select("*") \
            .eq("campaign_id", campaign_id) \
            .order("batch_number") \
            .execute()
        return [EmailBatch.model_validate(row) for row in result.data or []]

    def list_due_batches(self, now: datetime, limit: int) -> List[EmailBatch]:
        """Pending batches that are due, leaving out those of paused or draft campaigns"""
        result = self.client.from_(BATCHES) \
            .select(f"*, {CAMPAIGNS}!inner(status)") \
            .eq("status", BatchStatus.PENDING.value) \
            .not_.in_(f"{CAMPAIGNS}.status", sorted(s.value for s in HELD_CAMPAIGN_STATUSES)) \
            .lte("scheduled_time", _iso(now)) \
            .order("scheduled_time") \
            .limit(limit) \
            .execute()
        return [EmailBatch.model_validate(row) for row in result.data or []]

    def update_batch(self, batch_id: str, data: Dict[str, Any],
                     expected_status: Optional[str] = None) -> bool:
        return self._conditional_update(BATCHES, batch_id, data, expected_status)

    def increment_batch_counters(self, batch_id: str, sent: int = 0, failed: int = 0,
                                 skipped: int = 0) -> None:
        # only the worker holding the batch in 'processing' writes these
        batch = self.get_batch(batch_id)
        if batch is None:
            return
        self.client.from_(BATCHES).update({
            "sent_count": batch.sent_count + sent,
            "failed_count": batch.failed_count + failed,
            "skipped_count": batch.skipped_count + skipped,
        }).eq("id", batch_id).execute()

    # --- recipients ------------------------------------------------------

    def insert_recipients(self, rows: List[Dict[str, Any]]) -> int:
        """Bulk insert, skipping rows that already exist for (campaign_id, recipient_email)"""
        if not rows:
            return 0
        inserted = 0
        for start in range(0, len(rows), PAGE_SIZE):
            chunk = rows[start:start + PAGE_SIZE]
            result = self.client.from_(RECIPIENTS) \
                .upsert(chunk, on_conflict="campaign_id,recipient_email", ignore_duplicates=True) \
                .execute()
            inserted += len(result.data or [])
        return inserted

    def get_recipient(self, recipient_id: str) -> Optional[EmailRecipient]:
        result = self.client.from_(RECIPIENTS).select("*").eq("id", recipient_id).execute()
        return EmailRecipient.model_validate(result.data[0]) if result.data else None

    def fetch_pending_recipients(self, campaign_id: str, limit: int) -> List[EmailRecipient]:
        result = self.client.from_(RECIPIENTS) \
            .select("*") \
            .eq("campaign_id", campaign_id) \
            .eq("status", RecipientStatus.PENDING.value) \
            .order("id") \
            .limit(limit) \
            .execute()
        return [EmailRecipient.model_validate(row) for row in result.data or []]

    def list_recipients(self, campaign_id: str, status: Optional[str] = None) -> List[EmailRecipient]:
        def query():
            q = self.client.from_(RECIPIENTS).select("*").eq("campaign_id", campaign_id)
            if status is not None:
                q = q.eq("status", status)
            return q.order("id")
        return [EmailRecipient.model_validate(row) for row in self._select_all(query)]

    def update_recipient(self, recipient_id: str, data: Dict[str, Any],
                         expected_status: Optional[str] = None) -> bool:
        return self._conditional_update(RECIPIENTS, recipient_id, data, expected_status)

    def count_recipients(self, campaign_id: str, status: Optional[str] = None) -> int:
        query = self.client.from_(RECIPIENTS) \
            .select("id", count="exact", head=True) \
            .eq("campaign_id", campaign_id)
        if status is not None:
            query = query.eq("status", status)
        return self._count(query)

    def count_sent_since(self, since: datetime) -> int:
        return self._count(
            self.client.from_(RECIPIENTS)
            .select("id", count="exact", head=True)
            .gte("sent_at", _iso(since))
        )

    def list_stuck_recipients(self, attempted_before: datetime) -> List[EmailRecipient]:
        result = self.client.from_(RECIPIENTS) \
            .select("*") \
            .eq("status", RecipientStatus.SENDING.value) \
            .lt("last_attempt_at", _iso(attempted_before)) \
            .execute()
        return [EmailRecipient.model_validate(row) for row in result.data or []]

    def find_recipient_by_token(self, token: str) -> Optional[EmailRecipient]:
        result = self.client.from_(RECIPIENTS) \
            .select("*") \
            .eq("unsubscribe_token", token) \
            .limit(1) \
            .execute()
        return EmailRecipient.model_validate(result.data[0]) if result.data else None

    def record_recipient_open(self, recipient_id: str, opened_at: datetime) -> Optional[EmailRecipient]:
        recipient = self.get_recipient(recipient_id)
        if recipient is None:
            return None
        self.client.from_(RECIPIENTS).update({
            "opened": True,
            "opened_at": _iso(opened_at),
            "open_count": recipient.open_count + 1,
        }).eq("id", recipient_id).execute()
        return recipient

    # --- unsubscribe -----------------------------------------------------

    def insert_unsubscribe_token(self, token: UnsubscribeToken) -> None:
        self.client.from_(UNSUBSCRIBE_TOKENS).insert(token.to_row()).execute()

    def get_unsubscribe_token(self, token: str) -> Optional[UnsubscribeToken]:
        result = self.client.from_(UNSUBSCRIBE_TOKENS).select("*").eq("token", token).execute()
        return UnsubscribeToken.model_validate(result.data[0]) if result.data else None

    def unsubscribed_among(self, emails: Iterable[str]) -> Set[str]:
        emails = list(emails)
        if not emails:
            return set()
        result = self.client.from_(UNSUBSCRIBED).select("email").in_("email", emails).execute()
        return {row["email"].lower() for row in result.data or [] if row.get("email")}

    def add_unsubscribed(self, email: str, user_id: Optional[str], unsubscribed_at: datetime) -> None:
        self.client.from_(UNSUBSCRIBED).upsert({
            "email": email,
            "user_id": user_id,
            "unsubscribed_at": _iso(unsubscribed_at),
        }, on_conflict="email").execute()

    # --- users -----------------------------------------------------------

    def list_users(self) -> List[Dict]:
        return self._select_all(
            lambda: self.client.from_(USERS).select("id, email, name").order("id")
        )

    def list_users_by_tags(self, tag_ids: List[str]) -> List[Dict]:
        rows = self._select_all(
            lambda: self.client.from_(USER_TAGS)
            .select("user_id, users(id, email, name)")
            .in_("tag_id", tag_ids)
            .order("user_id")
        )
        return [row["users"] for row in rows if row.get("users")]

    def get_user_names(self, user_ids: List[str]) -> Dict[str, str]:
        user_ids = [uid for uid in user_ids if uid]
        if not user_ids:
            return {}
        result = self.client.from_(USERS).select("id, name").in_("id", user_ids).execute()
        return {row["id"]: row["name"] for row in result.data or [] if row.get("name")}

    # --- misc ------------------------------------------------------------

    def get_system_settings(self) -> Optional[Dict]:
        result = self.client.from_(SYSTEM_SETTINGS).select("*").limit(1).execute()
        return result.data[0] if result.data else None

    def insert_link_click(self, row: Dict[str, Any]) -> None:
        self.client.from_(LINK_CLICKS).insert(row).execute()


_store: Optional[SupabaseStore] = None


def get_store() -> SupabaseStore:
    """Shared store, created on first use"""
    global _store
    if _store is None:
        _store = SupabaseStore()
    return _store
