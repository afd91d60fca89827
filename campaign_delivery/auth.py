# filename: auth.py

import hmac
import logging
from typing import Mapping, Optional

from pydantic import BaseModel

from .config import DeliverySettings
from .exceptions import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

ADMIN_ROLES = {'admin', 'ADMIN'}
SECRET_HEADERS = ('authorization', 'x-internal-secret', 'x-cron-secret')


class Actor(BaseModel):
    """Whoever is asking for a campaign action"""
    user_id: Optional[str] = None
    role: Optional[str] = None
    internal: bool = False

    @property
    def is_admin(self) -> bool:
        return self.internal or self.role in ADMIN_ROLES


INTERNAL_ACTOR = Actor(internal=True)


def require_admin(actor: Optional[Actor]) -> Actor:
    if actor is None or (not actor.internal and not actor.user_id):
        raise Unauthorized("Unauthorized")
    if not actor.is_admin:
        logger.warning(f"User {actor.user_id} with role {actor.role!r} tried an admin action")
        raise Forbidden("Forbidden")
    return actor


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


def _bearer(value: str) -> str:
    value = value.strip()
    if value.startswith('Bearer '):
        return value[len('Bearer '):].strip()
    return value


def is_internal_request(headers: Mapping[str, str], settings: DeliverySettings) -> bool:
    """Cron secret (plain or Bearer) or the admin API token"""
    lowered = {key.lower(): value for key, value in headers.items() if value}
    secret = ''
    for name in SECRET_HEADERS:
        if lowered.get(name):
            secret = _bearer(lowered[name])
            break
    return _matches(secret, settings.cron_secret) \
        or _matches(lowered.get('x-admin-token', '').strip(), settings.admin_api_token)


def actor_from_headers(headers: Mapping[str, str], settings: DeliverySettings,
                       user_id: Optional[str] = None, role: Optional[str] = None) -> Actor:
    if is_internal_request(headers, settings):
        return INTERNAL_ACTOR
    return Actor(user_id=user_id, role=role)
