# filename: recipient_resolver.py

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from .models.campaign import RecipientStatus
from .models.target import AllUsers, ByTag, External, parse_target_config

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    address = address.strip().lower()
    return address if EMAIL_RE.match(address) else None


class RecipientResolver:
    """
    Expands a campaign's target configuration into pending recipient rows.
    Inserts skip rows that already exist, so resolving the same campaign
    again only adds recipients that were not there before.
    """

    def __init__(self, store):
        self.store = store

    def _users_for(self, target: Union[AllUsers, ByTag, External]) -> List[Dict[str, Any]]:
        if isinstance(target, AllUsers):
            return self.store.list_users()
        if isinstance(target, ByTag):
            return self.store.list_users_by_tags(target.tag_ids)
        if isinstance(target, External):
            return [{'id': None, 'email': email} for email in target.external_emails]
        raise TypeError(f"Unsupported target {target!r}")

    def build_rows(self, campaign_id: str, users: Iterable[Dict[str, Any]],
                   batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = []
        seen = set()
        dropped = 0
        for user in users:
            email = normalize_email(user.get('email'))
            if email is None:
                dropped += 1
                continue
            if email in seen:
                continue
            seen.add(email)
            row = {
                'campaign_id': campaign_id,
                'recipient_id': user.get('id'),
                'recipient_email': email,
                'status': RecipientStatus.PENDING.value,
            }
            if batch_id:
                row['batch_id'] = batch_id
            rows.append(row)
        if dropped:
            logger.warning(f"Dropped {dropped} invalid addresses while resolving campaign {campaign_id}")
        return rows

    def resolve_recipients(self, campaign_id: str, target_config, batch_id: Optional[str] = None) -> int:
        """Insert recipients for the target; returns how many rows were new"""
        target = parse_target_config(target_config)
        users = self._users_for(target)
        rows = self.build_rows(campaign_id, users, batch_id)
        inserted = self.store.insert_recipients(rows)
        logger.info(f"Resolved {len(rows)} recipients ({target.segment_type}) for campaign "
                    f"{campaign_id}, {inserted} new")

        try:
            total = self.store.count_recipients(campaign_id)
            self.store.update_campaign(campaign_id, {'recipient_count': total})
        except Exception as e:
            logger.error(f"Error updating recipient count for campaign {campaign_id}: {str(e)}")
        return inserted
