# Location: campaign_delivery/lib/__init__.py
from .smtp_based_functions import SmtpTransport
from .supabase_client import SupabaseStore, get_store

__all__ = ['SmtpTransport', 'SupabaseStore', 'get_store']
