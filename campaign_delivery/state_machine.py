# filename: state_machine.py

from typing import Dict, FrozenSet

from .exceptions import InvalidTransition
from .models.campaign import BatchStatus, CampaignStatus, RecipientStatus

C = CampaignStatus
B = BatchStatus
R = RecipientStatus

CAMPAIGN_TRANSITIONS: Dict[CampaignStatus, FrozenSet[CampaignStatus]] = {
    C.DRAFT: frozenset({C.SCHEDULED, C.ACTIVE}),
    C.SCHEDULED: frozenset({C.ACTIVE, C.DRAFT, C.COMPLETED, C.PARTIAL, C.FAILED}),
    C.ACTIVE: frozenset({C.PAUSED, C.DRAFT, C.COMPLETED, C.PARTIAL, C.FAILED}),
    C.PAUSED: frozenset({C.ACTIVE, C.DRAFT, C.COMPLETED, C.PARTIAL, C.FAILED}),
    C.COMPLETED: frozenset(),
    C.PARTIAL: frozenset(),
    C.FAILED: frozenset(),
}

BATCH_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    B.PENDING: frozenset({B.PROCESSING, B.FAILED}),
    B.PROCESSING: frozenset({B.PENDING, B.COMPLETED, B.FAILED}),
    B.COMPLETED: frozenset(),
    B.FAILED: frozenset(),
}

RECIPIENT_TRANSITIONS: Dict[RecipientStatus, FrozenSet[RecipientStatus]] = {
    R.PENDING: frozenset({R.SENDING, R.SKIPPED, R.FAILED}),
    R.SENDING: frozenset({R.SENT, R.FAILED}),
    R.SENT: frozenset(),
    R.SKIPPED: frozenset(),
    R.FAILED: frozenset(),
}

# Admin actions and the states they may be issued from
CAMPAIGN_ACTIONS: Dict[str, Dict[CampaignStatus, CampaignStatus]] = {
    'schedule': {C.DRAFT: C.SCHEDULED},
    'start': {C.DRAFT: C.ACTIVE, C.SCHEDULED: C.ACTIVE, C.PAUSED: C.ACTIVE},
    'pause': {C.ACTIVE: C.PAUSED},
    'resume': {C.PAUSED: C.ACTIVE},
    'cancel': {C.SCHEDULED: C.DRAFT, C.ACTIVE: C.DRAFT, C.PAUSED: C.DRAFT},
}


def _check(entity: str, table, enum_cls, current, target):
    current = enum_cls(current)
    target = enum_cls(target)
    if target not in table[current]:
        raise InvalidTransition(entity, current.value, target.value)
    return target


def transition_campaign(current, target) -> CampaignStatus:
    return _check('campaign', CAMPAIGN_TRANSITIONS, CampaignStatus, current, target)


def transition_batch(current, target) -> BatchStatus:
    return _check('batch', BATCH_TRANSITIONS, BatchStatus, current, target)


def transition_recipient(current, target) -> RecipientStatus:
    return _check('recipient', RECIPIENT_TRANSITIONS, RecipientStatus, current, target)


def campaign_action_target(action: str, current) -> CampaignStatus:
    """
    Resolve the status an admin action leads to from the current status.
    Raises InvalidTransition when the action is not allowed from there.
    """
    current = CampaignStatus(current)
    allowed = CAMPAIGN_ACTIONS[action]
    if current not in allowed:
        raise InvalidTransition('campaign', current.value, action)
    return transition_campaign(current, allowed[current])


def final_campaign_status(sent: int, failed: int) -> CampaignStatus:
    """Terminal status once no recipient is pending"""
    if failed == 0:
        return C.COMPLETED
    if sent > 0:
        return C.PARTIAL
    return C.FAILED
