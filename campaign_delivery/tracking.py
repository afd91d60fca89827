# filename: tracking.py

import base64
from datetime import datetime
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote

from .exceptions import NotFound
from .utils.time_utils import utc_now

logger = logging.getLogger(__name__)

TRANSPARENT_GIF = base64.b64decode('R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7')
UNSUBSCRIBED_MESSAGE = 'Sie wurden erfolgreich von unserem Newsletter abgemeldet'


class Tracker:
    """Open pixel, click redirect and unsubscribe handling for sent campaigns"""

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def record_open(self, recipient_id: Optional[str], campaign_id: Optional[str]) -> bytes:
        """Always answers with the pixel; tracking errors never reach the mail client"""
        if not recipient_id or not campaign_id:
            return TRANSPARENT_GIF
        try:
            recipient = self.store.record_recipient_open(recipient_id, self.clock())
            if recipient is not None:
                self.store.increment_campaign_opens(campaign_id)
        except Exception as e:
            logger.error(f"Error recording open for recipient {recipient_id}: {str(e)}")
        return TRANSPARENT_GIF

    def record_click(self, link_id: str, campaign_id: str, url: str,
                     recipient_id: Optional[str] = None, user_agent: str = '',
                     ip_address: str = '') -> str:
        """Store the click and return the URL to redirect to"""
        target = unquote(url)
        try:
            recipient = self.store.get_recipient(recipient_id) if recipient_id else None
            self.store.insert_link_click({
                'campaign_id': campaign_id,
                'recipient_id': recipient.recipient_id if recipient else None,
                'recipient_email': recipient.recipient_email if recipient else 'unknown',
                'link_url': target,
                'link_id': link_id,
                'user_agent': user_agent or '',
                'ip_address': ip_address or '',
            })
        except Exception as e:
            logger.error(f"Link tracking error for campaign {campaign_id}: {str(e)}")
        return target

    def unsubscribe(self, token: str) -> Dict[str, Any]:
        if not token:
            raise NotFound("Invalid unsubscribe token")

        now = self.clock()
        recipient = self.store.find_recipient_by_token(token)
        stored = self.store.get_unsubscribe_token(token)

        if stored is not None:
            if stored.is_expired(now):
                raise NotFound("Unsubscribe link has expired")
            email = stored.email
        elif recipient is not None:
            email = recipient.recipient_email
        else:
            raise NotFound("Invalid or expired unsubscribe link")

        email = email.strip().lower()
        user_id = recipient.recipient_id if recipient else None
        self.store.add_unsubscribed(email, user_id, now)
        logger.info(f"Unsubscribed {email}")
        return {'ok': True, 'message': UNSUBSCRIBED_MESSAGE, 'email': email}
