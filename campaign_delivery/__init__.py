# Location: campaign_delivery/__init__.py

from .campaign_manager import CampaignManager, StartResult, CampaignStats
from .campaign_scheduler import CampaignScheduler
from .delivery_worker import DeliveryWorker, BatchResult
from .quota_tracker import QuotaTracker, QuotaCheck, QuotaStatus
from .batch_scheduler import BatchScheduler, BatchPlan
from .recipient_resolver import RecipientResolver
from .tracking import Tracker
from .auth import Actor, require_admin

__all__ = [
    'CampaignManager',
    'StartResult',
    'CampaignStats',
    'CampaignScheduler',
    'DeliveryWorker',
    'BatchResult',
    'QuotaTracker',
    'QuotaCheck',
    'QuotaStatus',
    'BatchScheduler',
    'BatchPlan',
    'RecipientResolver',
    'Tracker',
    'Actor',
    'require_admin',
]

__version__ = '1.0.0'
